"""Register the Recall MCP server and agent instructions in a project."""

import json
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

SERVER_NAME = "recall"
MCP_CONFIG_FILE = ".mcp.json"
AGENT_RULES_FILE = "CLAUDE.md"


def _resolve_executable() -> str:
    """Full path to the recall executable, or its bare name as a last resort."""
    path = shutil.which("recall")
    if path:
        return path
    for candidate in [
        Path.home() / ".local" / "bin" / "recall",
        Path("/usr/local/bin/recall"),
    ]:
        if candidate.exists():
            return str(candidate)
    return "recall"


def _read_json(config_path: Path) -> dict | None:
    try:
        config = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Cannot parse %s: %s", config_path, e)
        return None
    return config if isinstance(config, dict) else None


def _inject_json_config(config_path: Path, executable: str) -> bool:
    """Merge the recall server entry into an mcpServers JSON file."""
    config: dict = {}
    if config_path.exists() and config_path.read_text().strip():
        config = _read_json(config_path)
        if config is None:
            # never clobber a file we could not parse
            return False

    config.setdefault("mcpServers", {})[SERVER_NAME] = {
        "command": executable,
        "args": ["mcp", "serve"],
    }
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(config, indent=2) + "\n")
    return True


def _remove_json_config(config_path: Path) -> bool:
    if not config_path.exists():
        return True
    config = _read_json(config_path)
    if config is None:
        return False
    servers = config.get("mcpServers", {})
    if SERVER_NAME in servers:
        del servers[SERVER_NAME]
        config_path.write_text(json.dumps(config, indent=2) + "\n")
    return True


RULES_MARKER_START = "<!-- recall:start -->"
RULES_MARKER_END = "<!-- recall:end -->"

AGENT_INSTRUCTIONS = """\
## Recall - Team Memory

This repository keeps encrypted team memory in `.recall/`, served by the Recall MCP tools.

**On session start:** call `recall_get_context` and read it before changing code. \
Use `recall_get_history` when you need the reasoning behind an older decision.

**While working:** call `recall_log_decision` whenever you choose between alternatives.

**On session end:** call `recall_save_session` with a summary, the decisions made, \
files changed, next steps and any blockers.\
"""


def _inject_marker_block(file_path: Path, content: str) -> bool:
    """Append or replace the marker-delimited block in a file."""
    file_path.parent.mkdir(parents=True, exist_ok=True)
    block = f"{RULES_MARKER_START}\n{content}\n{RULES_MARKER_END}"
    if file_path.exists():
        text = file_path.read_text()
        start = text.find(RULES_MARKER_START)
        end = text.find(RULES_MARKER_END)
        if start != -1 and end != -1:
            file_path.write_text(text[:start] + block + text[end + len(RULES_MARKER_END) :])
            return True
        separator = "\n\n" if text.strip() else ""
        file_path.write_text(text.rstrip() + separator + block + "\n")
    else:
        file_path.write_text(block + "\n")
    return True


def _remove_marker_block(file_path: Path) -> bool:
    if not file_path.exists():
        return True
    text = file_path.read_text()
    start = text.find(RULES_MARKER_START)
    end = text.find(RULES_MARKER_END)
    if start == -1 or end == -1:
        return True
    before = text[:start].rstrip()
    after = text[end + len(RULES_MARKER_END) :].lstrip()
    separator = "\n\n" if before and after else "\n" if before or after else ""
    cleaned = before + separator + after
    if cleaned.strip():
        file_path.write_text(cleaned)
    else:
        file_path.unlink()
    return True


def install_mcp_project(project_path: Path) -> dict[str, bool]:
    """Register the server in .mcp.json and add agent instructions to CLAUDE.md."""
    executable = _resolve_executable()
    results: dict[str, bool] = {}
    results[MCP_CONFIG_FILE] = _inject_json_config(project_path / MCP_CONFIG_FILE, executable)
    try:
        results[AGENT_RULES_FILE] = _inject_marker_block(project_path / AGENT_RULES_FILE, AGENT_INSTRUCTIONS)
    except OSError as e:
        logger.warning("Cannot update %s: %s", AGENT_RULES_FILE, e)
        results[AGENT_RULES_FILE] = False
    return results


def remove_mcp_project(project_path: Path) -> dict[str, bool]:
    results: dict[str, bool] = {}
    results[MCP_CONFIG_FILE] = _remove_json_config(project_path / MCP_CONFIG_FILE)
    results[AGENT_RULES_FILE] = _remove_marker_block(project_path / AGENT_RULES_FILE)
    return results
