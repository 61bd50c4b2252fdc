"""Find the transcripts each supported AI tool kept for a repository."""

import json
import logging
from pathlib import Path

from recall import config

logger = logging.getLogger(__name__)


def claude_transcripts(repo_root: Path) -> list[Path]:
    directory = config.claude_project_dir(repo_root)
    return sorted(directory.glob("*.jsonl")) if directory.is_dir() else []


def _rollout_cwd(path: Path) -> str | None:
    """Working directory recorded in a Codex rollout's session_meta line."""
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            first = f.readline()
        record = json.loads(first)
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(record, dict):
        return None
    payload = record.get("payload") if record.get("type") == "session_meta" else record
    cwd = payload.get("cwd") if isinstance(payload, dict) else None
    return cwd if isinstance(cwd, str) else None


def _inside(cwd: str, repo_root: Path) -> bool:
    try:
        return Path(cwd).resolve().is_relative_to(repo_root.resolve())
    except (OSError, ValueError):
        return False


def codex_transcripts(repo_root: Path) -> list[Path]:
    """Codex rollouts started inside repo_root.

    Codex shares one sessions tree across projects; rollouts that do not
    record a working directory are kept.
    """
    directory = config.codex_sessions_dir()
    if not directory.is_dir():
        return []
    paths = []
    for path in sorted(directory.glob("[0-9][0-9][0-9][0-9]/[0-9][0-9]/[0-9][0-9]/rollout-*.jsonl")):
        cwd = _rollout_cwd(path)
        if cwd is None or _inside(cwd, repo_root):
            paths.append(path)
        else:
            logger.debug("Skipping %s: started in %s", path.name, cwd)
    return paths


def gemini_transcripts(repo_root: Path) -> list[Path]:
    directory = config.gemini_chats_dir(repo_root)
    return sorted(directory.glob("*.json")) if directory.is_dir() else []


DISCOVERERS = {
    "claude-code": claude_transcripts,
    "codex": codex_transcripts,
    "gemini": gemini_transcripts,
}


def discover_transcripts(repo_root: Path) -> list[tuple[Path, str]]:
    """Every known transcript for repo_root with the tool that wrote it."""
    found = []
    for tool, discover in DISCOVERERS.items():
        paths = discover(repo_root)
        if paths:
            logger.info("Found %d %s transcript(s)", len(paths), tool)
        found += [(path, tool) for path in paths]
    return found
