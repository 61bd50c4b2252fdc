"""Shared fixtures: an isolated config home, a stub key service, a repo."""

import base64

import httpx
import pytest

from recall.config import RecallConfig
from recall.crypto.keys import AuthSession, KeyProvider, TeamKey
from recall.memory import TeamMemory

KEY = bytes(range(32))
OTHER_KEY = bytes(range(32, 64))


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point every user-level path at a temp directory."""
    import recall.config as config

    home = tmp_path / "home"
    monkeypatch.setattr(config, "RECALL_HOME", home)
    monkeypatch.setattr(config, "CONFIG_PATH", home / "config.json")
    monkeypatch.setattr(config, "CLAUDE_PROJECTS_DIR", home / "claude-projects")
    monkeypatch.setattr(config, "CODEX_SESSIONS_DIR", home / "codex-sessions")
    monkeypatch.setattr(config, "GEMINI_TMP_DIR", home / "gemini-tmp")
    monkeypatch.delenv("RECALL_API_TOKEN", raising=False)
    monkeypatch.delenv("RECALL_API_URL", raising=False)
    return home


@pytest.fixture
def team_key():
    return TeamKey(key_material=KEY, version=1, team_id="team-1")


@pytest.fixture
def auth():
    return AuthSession(token="tok-123", api_url="https://api.test", machine_id="machine-1")


def grant(key: bytes = KEY, version: int = 1) -> dict:
    return {
        "hasAccess": True,
        "key": base64.b64encode(key).decode(),
        "keyVersion": version,
        "teamId": "team-1",
    }


@pytest.fixture
def key_service():
    """Factory for a MockTransport standing in for POST /keys/team.

    ``state`` may be mutated by a test to change what the service answers.
    """

    def factory(status: int = 200, body: dict | None = None, calls: list | None = None):
        state = {"status": status, "body": body if body is not None else grant()}

        def handler(request: httpx.Request) -> httpx.Response:
            if calls is not None:
                calls.append(request)
            return httpx.Response(state["status"], json=state["body"])

        transport = httpx.MockTransport(handler)
        transport.state = state
        return transport

    return factory


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    (root / ".git").mkdir(parents=True)
    return root


@pytest.fixture
def config():
    return RecallConfig(email="dev@example.com")


@pytest.fixture
def memory(repo, auth, key_service, config):
    """A TeamMemory wired to a granting key service and no remote summarizer."""
    provider = KeyProvider(auth, transport=key_service())
    return TeamMemory(repo, key_provider=provider, config=config)


@pytest.fixture
def key_grant():
    """Build a successful key-service body for a given key and version."""
    return grant
