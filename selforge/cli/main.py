"""selforge CLI — drive and inspect the self-modifying agent.

`selforge run` starts the cycle; everything else reads or edits the
persisted workspace.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from selforge.cli.context import SelforgeContext, run_async
from selforge.exceptions import CrossPathDiffError, StateFileError
from selforge.ledger.diff import DiffKind
from selforge.llm.anthropic import validate_api_key
from selforge.persistence import SLOTS
from selforge.types import AIMode, MemoryType

console = Console()

app = typer.Typer(
    name="selforge",
    help="selforge -- an agent that plans, reviews and rewrites its own source.",
    no_args_is_help=True,
)

_DIFF_STYLES = {
    DiffKind.ADDED: "green",
    DiffKind.REMOVED: "red",
    DiffKind.UNCHANGED: "dim",
}

_LEXERS = {".py": "python", ".ts": "typescript", ".tsx": "tsx", ".js": "javascript",
           ".jsx": "jsx", ".md": "markdown", ".json": "json", ".toml": "toml"}


def _ctx() -> SelforgeContext:
    ctx = SelforgeContext.get()
    ctx.ensure_loaded()
    return ctx


@app.command()
def init():
    """Initialize the workspace and seed the virtual filesystem."""
    ctx = SelforgeContext.get()
    loaded = ctx.ensure_loaded()
    ctx.store.save_all()
    state = "restored " + ", ".join(loaded) if loaded else "seeded a fresh workspace"
    console.print(
        Panel(
            f"[green]selforge workspace ready at {ctx.settings.workspace_dir}[/green] ({state})\n\n"
            f"Files:    {len(ctx.vfs)}\n"
            f"Versions: {len(ctx.ledger)}\n\n"
            "Set your API key:\n"
            "  [bold]export SELFORGE_ANTHROPIC_API_KEY=your-key[/bold]\n\n"
            "Then start the agent:\n"
            "  [bold]selforge run[/bold]",
            title="selforge",
            border_style="cyan",
        )
    )


@app.command()
def run(
    cycles: int = typer.Option(None, "--cycles", "-n", help="Stop after N completed cycles"),
    message: str = typer.Option(None, "--message", "-m", help="Give the agent a message first"),
):
    """Run the agent until it pauses, errs, or Ctrl-C."""
    ctx = _ctx()
    orch = ctx.orchestrator

    async def _run():
        try:
            if message:
                await orch.intervene(message)
            await orch.run_for(cycles)
        finally:
            orch.scheduler.cancel()
            ctx.store.save_all()

    console.print(f"[cyan]Starting agent with {orch.llm.model} ({orch.config.ai_mode.value} mode)[/cyan]")
    try:
        run_async(_run())
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted. State saved.[/yellow]")
    console.print(f"Status: [bold]{orch.status.value}[/bold]  Cycle: {orch.cycle}")


@app.command()
def status():
    """Show agent status, quota usage and state counts."""
    ctx = _ctx()
    orch = ctx.orchestrator
    identity = orch.identity
    if identity:
        usage = ctx.quota.get_usage_stats(identity)
        limits = ctx.quota.limits_for(identity)
        rpd_limit = limits.rpd if limits.rpd is not None else "∞"
        quota_line = f"{usage.rpm}/{limits.rpm} rpm, {usage.rpd}/{rpd_limit} rpd"
    else:
        quota_line = "[red]API key missing for paid mode[/red]"

    from selforge import __version__
    console.print(Panel(
        f"[bold]selforge v{__version__}[/bold]\n\n"
        f"Status:     {orch.status.value}\n"
        f"Cycle:      {orch.cycle}\n"
        f"Mode:       {orch.config.ai_mode.value} ({orch.llm.model})\n"
        f"API Key:    {'[green]set[/green]' if ctx.settings.anthropic_api_key else '[red]not set[/red]'}\n"
        f"Quota:      {quota_line}\n"
        f"Files:      {len(ctx.vfs)}\n"
        f"Versions:   {len(ctx.ledger)}\n"
        f"Memories:   {len(ctx.memory)}\n"
        f"Log:        {len(ctx.log)} entries",
        title="Agent Status",
        border_style="cyan",
    ))


@app.command()
def files():
    """List every path in the virtual filesystem."""
    ctx = _ctx()
    result = ctx.vfs.list_files()
    if not result.paths:
        console.print(f"[yellow]{result.message}[/yellow]")
        return
    for path in result.paths:
        marker = "[cyan]code[/cyan]" if ctx.vfs.is_code(path) else "[dim]doc [/dim]"
        console.print(f"{marker}  {path}")


@app.command()
def cat(path: str = typer.Argument(help="VFS path, e.g. /agent/plan.md")):
    """Print one file from the virtual filesystem."""
    ctx = _ctx()
    result = ctx.vfs.read(path)
    if not result.success:
        console.print(f"[red]{escape(result.message)}[/red]")
        raise typer.Exit(1)
    lexer = _LEXERS.get(Path(path).suffix, "text")
    console.print(Syntax(result.content or "", lexer, line_numbers=True))


@app.command()
def history():
    """Show the version ledger."""
    ctx = _ctx()
    if not len(ctx.ledger):
        console.print("[dim]No versions recorded yet.[/dim]")
        return
    table = Table(title="Version Ledger")
    table.add_column("Version", style="cyan")
    table.add_column("File")
    table.add_column("When")
    table.add_column("Thought")
    for node in reversed(ctx.ledger.nodes):
        thought = node.thought if len(node.thought) <= 60 else node.thought[:57] + "..."
        table.add_row(f"v{node.version}", node.file_path, node.timestamp.strftime("%Y-%m-%d %H:%M"), thought)
    console.print(table)


@app.command()
def diff(
    base: int = typer.Argument(help="Base version (or the version to compare with its prior)"),
    compare: int = typer.Argument(None, help="Compare version"),
):
    """Show a line diff between two versions of the same file."""
    ctx = _ctx()
    base_node = ctx.ledger.get(base)
    if base_node is None:
        console.print(f"[red]No version v{base}[/red]")
        raise typer.Exit(1)

    if compare is None:
        lines = ctx.ledger.diff_with_prior(base_node)
        if lines is None:
            console.print(
                f"[yellow]v{base} is the first recorded version of {base_node.file_path}. "
                "No prior version to compare.[/yellow]"
            )
            return
    else:
        compare_node = ctx.ledger.get(compare)
        if compare_node is None:
            console.print(f"[red]No version v{compare}[/red]")
            raise typer.Exit(1)
        try:
            lines = ctx.ledger.diff(base_node, compare_node)
        except CrossPathDiffError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            raise typer.Exit(1)

    for line in lines:
        old = str(line.old_line) if line.old_line is not None else ""
        new = str(line.new_line) if line.new_line is not None else ""
        console.print(
            f"{old:>5} {new:>5} {line.symbol} {line.content}",
            style=_DIFF_STYLES[line.kind],
            markup=False,
            highlight=False,
        )


@app.command()
def memories(
    type: MemoryType = typer.Option(None, "--type", "-t", help="Only SUCCESS, ERROR or INSIGHT"),
    newest: bool = typer.Option(True, "--newest/--oldest", help="Sort order"),
):
    """Show learned memories."""
    ctx = _ctx()
    results = ctx.memory.query(type=type, newest_first=newest)
    if not results:
        console.print("[dim]No learnings recorded yet.[/dim]")
        return
    colors = {MemoryType.SUCCESS: "green", MemoryType.ERROR: "red", MemoryType.INSIGHT: "cyan"}
    for m in results:
        color = colors[m.type]
        console.print(f"[{color}]{m.type.value}[/{color}] [dim]v{m.agent_version} {m.timestamp:%Y-%m-%d %H:%M}[/dim]")
        console.print(f"  Context:  {m.context}", markup=False)
        console.print(f"  Outcome:  {m.outcome}", markup=False)
        console.print(f"  Learning: {m.learning}", markup=False)


@app.command()
def log(limit: int = typer.Option(20, "--limit", "-n", help="Max entries")):
    """Show the most recent activity log entries."""
    ctx = _ctx()
    entries = ctx.log.recent(limit)
    if not entries:
        console.print("[dim]No history yet.[/dim]")
        return
    for entry in reversed(entries):
        console.print(f"[bold cyan][{entry.author.value}][/bold cyan] [dim]{entry.timestamp:%H:%M:%S}[/dim]")
        console.print(entry.content, markup=False, highlight=False)


@app.command("export")
def export_cmd(path: Path = typer.Argument(help="Destination JSON file")):
    """Export the full state (log, ledger, memories, VFS) as one JSON file."""
    ctx = _ctx()
    out = ctx.store.export_bundle(path)
    console.print(f"[green]State exported to {out}[/green]")


@app.command("import")
def import_cmd(path: Path = typer.Argument(help="State JSON file from `selforge export`")):
    """Replace the full state with an exported bundle."""
    ctx = _ctx()
    try:
        bundle = ctx.store.import_bundle(path)
    except StateFileError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    console.print(
        f"[green]Imported {len(bundle.vfs)} files, {len(bundle.ledger)} versions, "
        f"{len(bundle.memories)} memories and {len(bundle.log)} log entries.[/green]"
    )


@app.command()
def reset(
    slot: str = typer.Argument(help=f"One of: {', '.join(SLOTS)}"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Clear one persisted state slot."""
    if slot not in SLOTS:
        console.print(f"[red]Unknown slot '{escape(slot)}'. Expected one of: {', '.join(SLOTS)}[/red]")
        raise typer.Exit(1)
    if not yes:
        typer.confirm(f"Really clear {slot}?", abort=True)
    ctx = _ctx()
    ctx.store.reset(slot)
    console.print(f"[green]Cleared {slot}.[/green]")


@app.command("merge-memories")
def merge_memories(path: Path = typer.Argument(help="JSON list of learned memories")):
    """Merge shared learnings, skipping ids already present."""
    ctx = _ctx()
    try:
        added = ctx.store.merge_memories(path)
    except StateFileError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(1)
    ctx.store.save_all()
    console.print(f"[green]Merged {added} new learning(s).[/green]")


@app.command("check-key")
def check_key(
    mode: AIMode = typer.Option(AIMode.PAID, "--mode", help="Which tier's model to test"),
):
    """Validate the configured API key with one minimal call."""
    ctx = SelforgeContext.get()
    cfg = ctx.settings
    model = cfg.paid_model if mode == AIMode.PAID else cfg.free_model
    valid, error = run_async(validate_api_key(cfg.anthropic_api_key, model))
    if valid:
        console.print(f"[green]API key is valid for {model}.[/green]")
    else:
        console.print(f"[red]{escape(str(error))}[/red]")
        raise typer.Exit(1)


@app.command("version")
def version_cmd():
    """Show selforge version."""
    from selforge import __version__
    console.print(f"selforge v{__version__}")
