"""Recall CLI - encrypted team memory for AI coding tools."""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from recall import __version__
from recall.config import find_repo_root, read_config
from recall.errors import AccessDenied, DenialReason, RecallError

app = typer.Typer(
    name="recall",
    help="Encrypted team memory for AI coding tools, stored in your repo.",
    no_args_is_help=True,
)
mcp_app = typer.Typer(help="MCP server management.")

app.add_typer(mcp_app, name="mcp")

console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"recall {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Show progress logging")] = False,
) -> None:
    """Recall - your team's memory, encrypted in the repository."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _repo_root() -> Path:
    root = find_repo_root()
    if root is None:
        console.print("[red]Error:[/red] not inside a git repository")
        raise typer.Exit(1)
    return root


def _memory():
    from recall.memory import TeamMemory

    return TeamMemory(_repo_root())


def _run(coro):
    """Run a service coroutine, turning domain errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except AccessDenied as e:
        console.print(f"[red]Access denied:[/red] {e.message}")
        raise typer.Exit(1)
    except RecallError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


# ── Account commands ─────────────────────────────────────────────


@app.command()
def auth(
    token: Annotated[
        Optional[str], typer.Option("--token", "-t", help="API token from the Recall dashboard")
    ] = None,
    email: Annotated[Optional[str], typer.Option("--email", help="Identity for session records")] = None,
) -> None:
    """Store your API token and check team access."""
    from recall.config import update_config
    from recall.crypto.keys import AuthSession, KeyProvider

    token = token or typer.prompt("API token", hide_input=True)
    updates = {"api_token": token, **({"email": email} if email else {})}
    config = read_config().model_copy(update={"api_token": token})
    provider = KeyProvider(AuthSession.from_config(config))
    try:
        key = asyncio.run(provider.resolve_key())
    except AccessDenied as e:
        if e.reason is DenialReason.INVALID_CREDENTIAL:
            console.print(f"[red]Error:[/red] {e.message}")
            raise typer.Exit(1)
        update_config(**updates)
        console.print("[green]Token saved.[/green]")
        console.print(f"[yellow]No team key yet:[/yellow] {e.guidance}")
        return

    update_config(**updates)
    console.print(f"[green]Authenticated.[/green] Team {key.team_id or '(unnamed)'}, key v{key.version}")


@app.command()
def logout() -> None:
    """Forget the stored token."""
    from recall.config import clear_auth

    clear_auth()
    console.print("[green]Logged out.[/green]")


# ── Memory commands ──────────────────────────────────────────────


@app.command()
def init() -> None:
    """Create .recall/ in this repository."""
    from recall.config import recall_path
    from recall.context.store import MemoryStore

    root = _repo_root()
    store = MemoryStore(recall_path(root))
    if store.is_initialized():
        console.print(f"[yellow]Already initialized:[/yellow] {store.root}")
        return
    store.init()
    console.print(f"[green]Initialized[/green] {store.root}")
    console.print("Commit .recall/ so your team shares the same memory.")


@app.command()
def status() -> None:
    """Show authentication, encryption and memory status."""
    memory = _memory()

    table = Table(title="Recall Status", show_header=False)
    table.add_column("Item", style="cyan")
    table.add_column("Value")

    table.add_row("Repository", str(memory.repo_root))
    table.add_row("Authenticated", "yes" if memory.config.api_token else "no")
    try:
        key = asyncio.run(memory.key_provider.resolve_key())
    except AccessDenied as e:
        table.add_row("Encryption", f"[yellow]inactive[/yellow] ({e.reason.value})")
        guidance = e.guidance
    else:
        table.add_row("Encryption", f"[green]active[/green] (key v{key.version})")
        memory.store.use_key(key)
        guidance = None

    store = memory.store
    table.add_row("Memory", "initialized" if store.is_initialized() else "not initialized")
    table.add_row("Session files", str(len(store.session_paths())))
    table.add_row("Imported transcripts", str(len(memory.tracker.load().sessions)))
    for name in ("context", "history"):
        path = store.artifact_path(name)
        table.add_row(name.title(), path.name if path else "[dim]missing[/dim]")
    console.print(table)
    if guidance:
        console.print(guidance)


@app.command()
def save(
    file: Annotated[
        Optional[Path], typer.Argument(help="Markdown session summary to save")
    ] = None,
    summary: Annotated[Optional[str], typer.Option("--summary", "-s", help="One-line summary")] = None,
    next_steps: Annotated[Optional[str], typer.Option("--next", help="What should happen next")] = None,
    blocked_by: Annotated[Optional[str], typer.Option("--blocked-by", help="What is blocking progress")] = None,
    tool: Annotated[str, typer.Option("--tool", help="AI tool used in the session")] = "unknown",
) -> None:
    """Save a session summary and regenerate the team context."""
    if file:
        if not file.is_file():
            console.print(f"[red]Error:[/red] {file} is not a file")
            raise typer.Exit(1)
        content = file.read_text()
    elif summary:
        lines = [f"**Summary:** {summary}"]
        if next_steps:
            lines.append(f"**Next Steps:** {next_steps}")
        if blocked_by:
            lines += ["**Status:** blocked", f"**Blocked By:** {blocked_by}"]
        content = "\n".join(lines) + "\n"
    else:
        console.print("[red]Error:[/red] give a summary file or --summary")
        raise typer.Exit(1)

    result = _run(_memory().save_session(content, tool=tool))
    if result.session_path is None:
        console.print("[yellow]Nothing to save:[/yellow] no summary or tagged sections found.")
        raise typer.Exit(1)
    console.print(f"[green]Saved:[/green] {result.session_path}")


@app.command("import")
def import_sessions(
    path: Annotated[
        Optional[Path],
        typer.Argument(help="Transcript or directory; defaults to this repo's Claude Code, Codex and Gemini sessions"),
    ] = None,
    force: Annotated[bool, typer.Option("--force", help="Re-import even if unchanged")] = False,
    tool: Annotated[
        Optional[str], typer.Option("--tool", help="AI tool that wrote the transcripts (default: detected)")
    ] = None,
) -> None:
    """Import AI tool transcripts into team memory."""
    memory = _memory()
    if path and path.is_file():
        results = [_run(memory.import_transcript(path, tool=tool or "claude-code", force=force))]
    else:
        if path and not path.is_dir():
            console.print(f"[red]Error:[/red] {path} does not exist")
            raise typer.Exit(1)
        results = _run(memory.import_directory(path, tool=tool))

    if not results:
        console.print("[yellow]No transcripts found.[/yellow]")
        return
    imported = [r for r in results if r.imported]
    saved = [r for r in imported if r.session_path]
    skipped_lines = sum(r.skipped_lines for r in imported)
    console.print(
        f"[green]Imported {len(imported)}[/green] transcript(s), "
        f"{len(saved)} session record(s), {len(results) - len(imported)} already up to date."
    )
    if skipped_lines:
        console.print(f"[dim]{skipped_lines} corrupt line(s) were skipped.[/dim]")


@app.command()
def load(
    size: Annotated[str, typer.Argument(help="context or history")] = "context",
) -> None:
    """Print the team context (or full history) for an AI session."""
    if size not in ("context", "history"):
        console.print(f"[red]Error:[/red] unknown artifact {size!r}; use context or history")
        raise typer.Exit(1)
    result = _run(_memory().load_artifact(size))
    typer.echo(result.content)
    err_console.print(f"[dim]~{result.token_estimate} tokens[/dim]")


@app.command("log-decision")
def log_decision(
    decision: Annotated[str, typer.Argument(help="What was decided")],
    why: Annotated[str, typer.Option("--why", "-w", help="Why it was decided")] = "",
    alternative: Annotated[
        Optional[list[str]], typer.Option("--alternative", "-a", help="A rejected option (repeatable)")
    ] = None,
) -> None:
    """Record a single decision in team memory."""
    result = _run(_memory().log_decision(decision, why, alternatives=alternative, tool="cli"))
    console.print(f"[green]Decision logged:[/green] {result.session_path}")


@app.command()
def encrypt() -> None:
    """Encrypt memory written in plaintext before this repo had a team key."""
    memory = _memory()
    written = _run(memory.encrypt_plaintext())
    if not written:
        console.print("Nothing to encrypt: all memory files are already encrypted.")
        return
    console.print(f"[green]Encrypted {len(written)} file(s)[/green] with the team key.")
    console.print("Commit .recall/ to replace the plaintext files; earlier commits still contain them.")


# ── MCP commands ─────────────────────────────────────────────────


@mcp_app.command("serve")
def mcp_serve() -> None:
    """Start the MCP server (stdio transport)."""
    from recall.mcp.server import mcp

    mcp.run()


@mcp_app.command("init")
def mcp_init(
    project_path: Annotated[
        Path, typer.Option("--path", "-p", help="Project path")
    ] = Path("."),
    remove: Annotated[bool, typer.Option("--remove", help="Unregister instead")] = False,
) -> None:
    """Register the Recall MCP server in the project's .mcp.json."""
    from recall.mcp.installer import install_mcp_project, remove_mcp_project

    project_path = project_path.resolve()
    results = remove_mcp_project(project_path) if remove else install_mcp_project(project_path)
    for name, ok in results.items():
        mark = "[green]ok[/green]" if ok else "[red]failed[/red]"
        console.print(f"  {name}: {mark}")
    if not all(results.values()):
        raise typer.Exit(1)
