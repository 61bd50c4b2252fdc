"""MCP server exposing team memory to AI coding tools."""

import logging
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from recall.config import find_repo_root
from recall.context.models import Decision, StructuredSession
from recall.errors import AccessDenied, ArtifactNotFound, RecallError
from recall.memory import TeamMemory

logger = logging.getLogger(__name__)

mcp = FastMCP("recall")
memory = TeamMemory(find_repo_root() or Path.cwd())


async def _artifact(size: str, empty_message: str) -> str:
    try:
        result = await memory.load_artifact(size)
    except ArtifactNotFound:
        return empty_message
    except RecallError as e:
        return str(e)
    return result.content


@mcp.tool()
async def recall_get_context() -> str:
    """Get the team's current context: focus, blockers, recent decisions and things to avoid.

    Call this at the start of every session, before making changes.
    """
    return await _artifact(
        "context",
        "No team memory found for this repo yet. Use recall_save_session to start building it.",
    )


@mcp.tool()
async def recall_get_history() -> str:
    """Get the full team history: decision log, failure log, lessons and timeline.

    This carries the reasoning behind older work but uses more tokens than
    recall_get_context.
    """
    return await _artifact(
        "history",
        "No session history yet. Use recall_save_session to start building history.",
    )


@mcp.tool()
async def recall_save_session(
    summary: str,
    decisions: list[dict] | None = None,
    files_changed: list[str] | None = None,
    next_steps: str | None = None,
    blockers: str | None = None,
    tool: str = "mcp",
) -> str:
    """Save a summary of what was accomplished in this coding session.

    Args:
        summary: What was accomplished in this session
        decisions: Key decisions, each {"what": ..., "why": ...}
        files_changed: Files that were modified
        next_steps: What should be done next
        blockers: Anything blocking progress (marks the session as blocked)
        tool: Which AI tool is saving (e.g. "claude-code", "cursor")
    """
    session = StructuredSession(
        user=memory.user,
        tool=tool,
        title=summary.splitlines()[0][:80] if summary.strip() else "",
        short_summary=summary.strip(),
        files=files_changed or [],
        next_steps=next_steps or None,
        blocked_by=blockers or None,
        status="blocked" if blockers else "complete",
        decisions=[
            Decision(title=d.get("what", "")[:80], what=d.get("what", ""), why=d.get("why", ""))
            for d in decisions or []
            if d.get("what")
        ],
    )
    try:
        result = await memory.save_session(session)
    except RecallError as e:
        return str(e)
    if result.session_path is None:
        return "Nothing to save: the summary was empty."
    return f"Session saved to {result.session_path.relative_to(memory.repo_root)}. Your team will see it in their next session."


@mcp.tool()
async def recall_log_decision(decision: str, reasoning: str, alternatives: list[str] | None = None) -> str:
    """Log an important decision made during coding, with the reasoning behind it.

    Args:
        decision: What was decided
        reasoning: Why this decision was made
        alternatives: Options that were considered and rejected
    """
    try:
        await memory.log_decision(decision, reasoning, alternatives=alternatives, tool="mcp")
    except RecallError as e:
        return str(e)
    return f"Decision logged: {decision}"


@mcp.tool()
async def recall_import_session(path: str | None = None) -> str:
    """Import AI tool transcripts (JSONL) into team memory.

    Already imported transcripts are skipped unless they changed since.

    Args:
        path: A transcript file; defaults to the Claude Code, Codex and Gemini sessions kept for this repo
    """
    try:
        if path:
            results = [await memory.import_transcript(Path(path))]
        else:
            results = await memory.import_directory()
    except RecallError as e:
        return str(e)
    imported = [r for r in results if r.imported]
    saved = [r for r in imported if r.session_path]
    return (
        f"Imported {len(imported)} transcript(s), {len(saved)} session record(s) written, "
        f"{len(results) - len(imported)} already up to date."
    )


@mcp.tool()
async def recall_status() -> str:
    """Check Recall's encryption status and which memory files exist."""
    lines = ["**Recall Status**", ""]
    lines.append(f"Repo: {memory.repo_root.name}")
    lines.append(f"Memory: {'initialized' if memory.store.is_initialized() else 'not initialized'}")
    try:
        key = await memory.key_provider.resolve_key()
    except AccessDenied as e:
        lines.append("Encryption: inactive")
        lines.append("")
        lines.append(e.guidance)
    else:
        lines.append(f"Encryption: active (team key v{key.version})")
    for name in ("context", "history"):
        path = memory.store.artifact_path(name)
        lines.append(f"  - {name}: {path.name if path else 'missing'}")
    return "\n".join(lines)


@mcp.resource("recall://context")
async def context_resource() -> str:
    """The team's current context digest."""
    return await recall_get_context()
