"""Configuration, credentials and directory management for Recall."""

import hashlib
import json
import logging
import os
import platform
import getpass
import socket
import subprocess
from pathlib import Path

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

RECALL_HOME = Path(os.environ.get("RECALL_HOME") or Path.home() / ".recall")
CONFIG_PATH = RECALL_HOME / "config.json"
DEFAULT_API_URL = "https://recall-api.stoodiohq.workers.dev"

# Repository-local layout
RECALL_DIR = ".recall"
CONTEXT_FILE = "context.md"
HISTORY_FILE = "history.md"
SESSIONS_DIR = "sessions"
EVENTS_FILE = "events.jsonl"
TRACKER_FILE = "imported-sessions.json"
ENCRYPTED_SUFFIX = ".enc"

ARTIFACTS = {
    "context": CONTEXT_FILE,
    "history": HISTORY_FILE,
}

# Where AI tools keep their raw transcripts
CLAUDE_PROJECTS_DIR = Path.home() / ".claude" / "projects"
CODEX_SESSIONS_DIR = Path.home() / ".codex" / "sessions"
GEMINI_TMP_DIR = Path.home() / ".gemini" / "tmp"

GITATTRIBUTES = """# Recall merge strategy
context.md merge=ours
context.md.enc merge=ours
history.md merge=ours
history.md.enc merge=ours
sessions/**/*.md merge=ours
sessions/**/*.md.enc merge=ours
"""


class RecallConfig(BaseModel):
    """User-level settings stored in ~/.recall/config.json."""

    api_token: str | None = None
    api_url: str = DEFAULT_API_URL
    email: str | None = None
    name: str | None = None
    context_budget: int = 3000
    history_budget: int = 30000


def read_config(path: Path | None = None) -> RecallConfig:
    """Read the config file, applying environment overrides.

    A missing or unreadable file yields the defaults.
    """
    path = path or CONFIG_PATH
    data: dict = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable config %s: %s", path, e)
            data = {}

    try:
        config = RecallConfig.model_validate(data)
    except ValidationError as e:
        logger.warning("Ignoring invalid config %s: %s", path, e)
        config = RecallConfig()

    env_token = os.environ.get("RECALL_API_TOKEN")
    if env_token:
        config.api_token = env_token
    env_url = os.environ.get("RECALL_API_URL")
    if env_url:
        config.api_url = env_url
    return config


def write_config(config: RecallConfig, path: Path | None = None) -> None:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.write_text(config.model_dump_json(indent=2, exclude_none=True) + "\n")
    path.chmod(0o600)


def update_config(path: Path | None = None, **updates) -> RecallConfig:
    """Merge updates into the stored config and write it back."""
    config = read_config(path).model_copy(update=updates)
    write_config(config, path)
    return config


def clear_auth(path: Path | None = None) -> RecallConfig:
    """Forget the stored token and identity (logout)."""
    return update_config(path, api_token=None, email=None, name=None)


def find_repo_root(start: Path | None = None) -> Path | None:
    """Walk up from start until a directory containing .git is found."""
    current = (start or Path.cwd()).resolve()
    for candidate in [current, *current.parents]:
        if (candidate / ".git").exists():
            return candidate
    return None


def recall_path(repo_root: Path) -> Path:
    return repo_root / RECALL_DIR


def machine_id() -> str:
    """Stable per-machine identifier used for seat activation."""
    data = f"{socket.gethostname()}:{getpass.getuser()}:{platform.system().lower()}"
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def git_user_email(repo_root: Path | None = None) -> str:
    """The committer identity for session records, falling back to the OS user."""
    try:
        result = subprocess.run(
            ["git", "config", "user.email"],
            cwd=repo_root,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return getpass.getuser()
    email = result.stdout.strip()
    return email or getpass.getuser()


def claude_project_dir(repo_root: Path) -> Path:
    """Claude Code stores transcripts under a dash-encoded copy of the path."""
    return CLAUDE_PROJECTS_DIR / str(repo_root.resolve()).replace("/", "-")


def codex_sessions_dir() -> Path:
    """Codex keeps every project's rollouts under YYYY/MM/DD/rollout-*.jsonl."""
    return CODEX_SESSIONS_DIR


def gemini_chats_dir(repo_root: Path) -> Path:
    """Gemini CLI keys its per-project state by a SHA-256 of the project path."""
    project_hash = hashlib.sha256(str(repo_root.resolve()).encode()).hexdigest()
    return GEMINI_TMP_DIR / project_hash / "chats"
