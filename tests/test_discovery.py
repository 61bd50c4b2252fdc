"""Tests for finding each tool's transcripts for a repository."""

import json

from recall.config import claude_project_dir, gemini_chats_dir
from recall.transcripts.discovery import codex_transcripts, discover_transcripts, gemini_transcripts


def rollout(path, cwd=None):
    path.parent.mkdir(parents=True, exist_ok=True)
    meta = {"type": "session_meta", "payload": {"id": path.stem, **({"cwd": cwd} if cwd else {})}}
    path.write_text(json.dumps(meta) + "\n")
    return path


class TestCodex:
    def test_filters_by_working_directory(self, repo, isolated_home):
        day = isolated_home / "codex-sessions" / "2026" / "03" / "01"
        inside = rollout(day / "rollout-1.jsonl", cwd=str(repo))
        nested = rollout(day / "rollout-2.jsonl", cwd=str(repo / "src" / "api"))
        rollout(day / "rollout-3.jsonl", cwd=str(repo.parent / "other-repo"))
        unknown = rollout(day / "rollout-4.jsonl")

        assert codex_transcripts(repo) == [inside, nested, unknown]

    def test_ignores_files_outside_the_dated_tree(self, repo, isolated_home):
        rollout(isolated_home / "codex-sessions" / "rollout-loose.jsonl", cwd=str(repo))
        rollout(isolated_home / "codex-sessions" / "2026" / "03" / "01" / "notes.jsonl", cwd=str(repo))
        assert codex_transcripts(repo) == []

    def test_missing_sessions_dir(self, repo):
        assert codex_transcripts(repo) == []


class TestGemini:
    def test_chats_for_this_repo_only(self, repo, tmp_path):
        chats = gemini_chats_dir(repo)
        chats.mkdir(parents=True)
        (chats / "session-1.json").write_text("{}")
        other = gemini_chats_dir(tmp_path / "elsewhere")
        other.mkdir(parents=True)
        (other / "session-2.json").write_text("{}")

        assert gemini_transcripts(repo) == [chats / "session-1.json"]
        assert chats.parent.parent.name == "gemini-tmp"


def test_discover_attributes_each_tool(repo, isolated_home):
    claude = claude_project_dir(repo)
    claude.mkdir(parents=True)
    (claude / "a.jsonl").write_text("")
    codex = rollout(isolated_home / "codex-sessions" / "2026" / "03" / "01" / "rollout-1.jsonl", cwd=str(repo))
    chats = gemini_chats_dir(repo)
    chats.mkdir(parents=True)
    (chats / "session-1.json").write_text("{}")

    assert discover_transcripts(repo) == [
        (claude / "a.jsonl", "claude-code"),
        (codex, "codex"),
        (chats / "session-1.json", "gemini"),
    ]


def test_nothing_found(repo):
    assert discover_transcripts(repo) == []
