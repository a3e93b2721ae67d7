"""Fetch-proxy client used by READ_URL_CONTENT.

Remote pages are requested through a local relay (``GET <proxy>?url=...``)
so the agent never talks to arbitrary hosts directly. The returned HTML is
reduced to plain text and truncated before it reaches the activity log.
"""

from __future__ import annotations

import httpx
from bs4 import BeautifulSoup

from selforge.exceptions import FetchError

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

_HIDDEN_TAGS = ["script", "style", "noscript"]


def sanitize_html(raw: str) -> str:
    """Visible text of an HTML page, one text node per line."""
    soup = BeautifulSoup(raw, "html.parser")
    for tag in soup(_HIDDEN_TAGS):
        tag.decompose()
    return soup.get_text(separator="\n", strip=True)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n... [truncated, {len(text) - max_chars} more characters]"


class FetchProxyClient:
    def __init__(
        self,
        proxy_url: str = "http://localhost:3001/proxy",
        timeout: float = 10.0,
        max_chars: int = 5000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._proxy_url = proxy_url
        self._timeout = timeout
        self._max_chars = max_chars
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> FetchProxyClient:
        return cls(
            proxy_url=settings.fetch_proxy_url,
            timeout=settings.fetch_timeout_seconds,
            max_chars=settings.fetch_max_chars,
        )

    async def fetch(self, url: str) -> str:
        """Fetch ``url`` through the proxy and return sanitized, truncated text."""
        if not url.startswith(("http://", "https://")):
            raise FetchError(f"Unsupported URL: {url}")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"User-Agent": USER_AGENT},
            ) as client:
                resp = await client.get(self._proxy_url, params={"url": url})
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(
                f"Proxy returned HTTP {e.response.status_code} for {url}"
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Fetch proxy unavailable at {self._proxy_url}: {e}") from e

        return truncate(sanitize_html(resp.text), self._max_chars)
