"""Global configuration — loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings

from selforge.types import AIMode

_PACKAGE_DIR = Path(__file__).resolve().parent


class SelforgeSettings(BaseSettings):
    anthropic_api_key: str = ""
    ai_mode: AIMode = AIMode.FREE
    free_model: str = "claude-3-5-haiku-latest"
    paid_model: str = "claude-sonnet-4-20250514"
    free_max_tokens: int = 8192
    paid_max_tokens: int = 16384
    paid_thinking_budget: int = 0  # 0 disables extended thinking
    web_search: bool = True
    workspace_dir: Path = Path(".selforge")
    seed_dir: Path = _PACKAGE_DIR
    core_directive_path: Path | None = None
    log_level: str = "INFO"

    # Fetch proxy used by READ_URL_CONTENT
    fetch_proxy_url: str = "http://localhost:3001/proxy"
    fetch_timeout_seconds: float = 10.0
    fetch_max_chars: int = 5000

    # Quota ceilings (None = unbounded)
    free_rpm: int = 10
    free_rpd: int | None = 250
    free_tpm: int | None = 250_000
    paid_rpm: int = 5
    paid_rpd: int | None = None
    paid_tpm: int | None = 2_000_000

    # Orchestrator timing
    short_delay_seconds: float = 5.0
    long_delay_seconds: float = 15.0
    quota_backoff_seconds: float = 10.0

    # Orchestrator features
    critics_enabled: bool = True
    researcher_enabled: bool = True
    nudger_enabled: bool = True
    nudge_every: int = 5
    search_limit: int = 3
    history_limit: int = 100
    critic_veto_threshold: int | None = None
    max_research_steps: int | None = None

    model_config = {"env_prefix": "SELFORGE_"}


settings = SelforgeSettings()
