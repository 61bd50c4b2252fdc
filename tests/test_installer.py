"""Tests for the project MCP installer."""

import json

from recall.mcp.installer import (
    AGENT_INSTRUCTIONS,
    RULES_MARKER_END,
    RULES_MARKER_START,
    _inject_json_config,
    _inject_marker_block,
    _remove_json_config,
    _remove_marker_block,
    install_mcp_project,
    remove_mcp_project,
)


class TestInjectJsonConfig:
    def test_creates_new_config(self, tmp_path):
        config_path = tmp_path / ".mcp.json"
        assert _inject_json_config(config_path, "/usr/bin/recall")

        config = json.loads(config_path.read_text())
        assert config["mcpServers"]["recall"] == {"command": "/usr/bin/recall", "args": ["mcp", "serve"]}

    def test_merges_existing_config(self, tmp_path):
        config_path = tmp_path / ".mcp.json"
        config_path.write_text(json.dumps({"mcpServers": {"other": {"command": "other"}}, "extra": 1}))
        _inject_json_config(config_path, "recall")

        config = json.loads(config_path.read_text())
        assert set(config["mcpServers"]) == {"other", "recall"}
        assert config["extra"] == 1

    def test_handles_empty_file(self, tmp_path):
        config_path = tmp_path / ".mcp.json"
        config_path.write_text("")
        assert _inject_json_config(config_path, "recall")
        assert "recall" in json.loads(config_path.read_text())["mcpServers"]

    def test_refuses_to_clobber_invalid_json(self, tmp_path):
        config_path = tmp_path / ".mcp.json"
        config_path.write_text("{ not json")
        assert not _inject_json_config(config_path, "recall")
        assert config_path.read_text() == "{ not json"

    def test_remove(self, tmp_path):
        config_path = tmp_path / ".mcp.json"
        config_path.write_text(json.dumps({"mcpServers": {"other": {}, "recall": {}}}))
        assert _remove_json_config(config_path)
        assert json.loads(config_path.read_text())["mcpServers"] == {"other": {}}

    def test_remove_missing_file(self, tmp_path):
        assert _remove_json_config(tmp_path / ".mcp.json")


class TestMarkerBlock:
    def test_creates_new_file(self, tmp_path):
        path = tmp_path / "CLAUDE.md"
        _inject_marker_block(path, "test content")
        text = path.read_text()
        assert text.startswith(RULES_MARKER_START)
        assert "test content" in text

    def test_appends_to_existing_file(self, tmp_path):
        path = tmp_path / "CLAUDE.md"
        path.write_text("# Project rules\n")
        _inject_marker_block(path, "test content")
        assert path.read_text().startswith("# Project rules\n\n" + RULES_MARKER_START)

    def test_idempotent_replaces_existing_block(self, tmp_path):
        path = tmp_path / "CLAUDE.md"
        _inject_marker_block(path, "first version")
        _inject_marker_block(path, "second version")
        text = path.read_text()
        assert "first version" not in text
        assert text.count(RULES_MARKER_START) == 1

    def test_remove_preserves_surrounding_content(self, tmp_path):
        path = tmp_path / "CLAUDE.md"
        path.write_text(f"before\n\n{RULES_MARKER_START}\nx\n{RULES_MARKER_END}\n\nafter\n")
        _remove_marker_block(path)
        assert path.read_text() == "before\n\nafter\n"

    def test_remove_deletes_file_left_empty(self, tmp_path):
        path = tmp_path / "CLAUDE.md"
        _inject_marker_block(path, "only this")
        _remove_marker_block(path)
        assert not path.exists()


class TestProjectInstall:
    def test_install_and_remove(self, tmp_path, monkeypatch):
        monkeypatch.setattr("recall.mcp.installer.shutil.which", lambda name: "/opt/bin/recall")

        results = install_mcp_project(tmp_path)
        assert results == {".mcp.json": True, "CLAUDE.md": True}
        config = json.loads((tmp_path / ".mcp.json").read_text())
        assert config["mcpServers"]["recall"]["command"] == "/opt/bin/recall"
        assert AGENT_INSTRUCTIONS in (tmp_path / "CLAUDE.md").read_text()

        assert remove_mcp_project(tmp_path) == {".mcp.json": True, "CLAUDE.md": True}
        assert json.loads((tmp_path / ".mcp.json").read_text())["mcpServers"] == {}
        assert not (tmp_path / "CLAUDE.md").exists()
