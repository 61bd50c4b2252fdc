"""Tests for the on-disk memory store."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from recall.context.extractor import extract_session
from recall.context.models import Event, StructuredSession
from recall.context.store import MemoryStore, user_slug
from recall.crypto.envelope import is_encrypted
from recall.crypto.keys import TeamKey
from recall.errors import CorruptArtifact, EnvelopeError, StaleKey

from conftest import OTHER_KEY

TS = datetime(2026, 4, 2, 9, 5, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path, team_key):
    return MemoryStore(tmp_path / ".recall", key=team_key)


@pytest.fixture
def plain_store(tmp_path):
    return MemoryStore(tmp_path / ".recall")


def session(**overrides) -> StructuredSession:
    data = {"id": "s1", "timestamp": TS, "user": "carol@example.com", "short_summary": "Did a thing"}
    data.update(overrides)
    return StructuredSession(**data)


class TestInit:
    def test_creates_layout(self, plain_store):
        plain_store.init()
        assert plain_store.sessions_dir.is_dir()
        assert plain_store.read_artifact("context").startswith("# Team Context")
        assert "merge=ours" in (plain_store.root / ".gitattributes").read_text()
        assert plain_store.is_initialized()

    def test_init_keeps_existing_artifacts(self, plain_store):
        plain_store.write_artifact("context", "# Mine\n")
        plain_store.init()
        assert plain_store.read_artifact("context") == "# Mine\n"


class TestArtifacts:
    def test_encrypted_write(self, store):
        path = store.write_artifact("context", "# Team Context\n")
        assert path.name == "context.md.enc"
        assert is_encrypted(path.read_text())
        assert store.read_artifact("context") == "# Team Context\n"

    def test_encrypting_replaces_plaintext_copy(self, tmp_path, team_key):
        root = tmp_path / ".recall"
        MemoryStore(root).write_artifact("history", "old plaintext")
        MemoryStore(root, key=team_key).write_artifact("history", "new")
        assert not (root / "history.md").exists()
        assert (root / "history.md.enc").exists()

    def test_legacy_plaintext_is_readable_with_key(self, tmp_path, team_key):
        root = tmp_path / ".recall"
        root.mkdir()
        (root / "context.md").write_text("# Legacy\n")
        assert MemoryStore(root, key=team_key).read_artifact("context") == "# Legacy\n"

    def test_missing_artifact(self, store):
        assert store.read_artifact("history") is None

    def test_corrupt_artifact(self, store):
        store.write_artifact("context", "fine")
        path = store.artifact_path("context")
        path.write_text(path.read_text()[:-8] + "AAAAAAA=")
        with pytest.raises(CorruptArtifact) as exc:
            store.read_artifact("context")
        assert exc.value.name == "context.md.enc"

    def test_wrong_key_is_corrupt(self, tmp_path, store):
        store.write_artifact("context", "secret")
        other = MemoryStore(store.root, key=TeamKey(OTHER_KEY, 1, "team-1"))
        with pytest.raises(CorruptArtifact):
            other.read_artifact("context")


class TestSessions:
    def test_layout(self, store):
        path = store.write_session(session())
        assert path == store.root / "sessions" / "2026-04" / "carol" / "02-0905.md.enc"
        assert extract_session(store.read_session(path)).id == "s1"

    def test_plaintext_layout(self, plain_store):
        path = plain_store.write_session(session())
        assert path.name == "02-0905.md"
        assert "Did a thing" in path.read_text()

    def test_same_minute_different_session_gets_suffix(self, store):
        first = store.write_session(session(id="s1"))
        second = store.write_session(session(id="s2"))
        third = store.write_session(session(id="s3"))
        assert first.name == "02-0905.md.enc"
        assert second.name == "02-0905-2.md.enc"
        assert third.name == "02-0905-3.md.enc"

    def test_same_session_overwrites(self, store):
        first = store.write_session(session(short_summary="v1"))
        second = store.write_session(session(short_summary="v2"))
        assert first == second
        assert len(store.session_paths()) == 1
        assert extract_session(store.read_session(second)).short_summary == "v2"

    def test_empty_session_refused(self, store):
        with pytest.raises(ValueError):
            store.write_session(StructuredSession())

    def test_listing_is_newest_first(self, store):
        older = store.write_session(session(id="a", timestamp=TS))
        newer = store.write_session(session(id="b", timestamp=TS + timedelta(days=1)))
        os.utime(older, (1_000, 1_000))
        os.utime(newer, (2_000, 2_000))
        assert store.session_paths() == [newer, older]

    def test_unreadable_sessions_are_skipped(self, store):
        good = store.write_session(session(id="good"))
        bad = store.write_session(session(id="bad", timestamp=TS + timedelta(hours=1)))
        bad.write_text("RECALL_ENCRYPTED:v1:garbage")

        loaded = store.load_sessions()
        assert [s.id for s in loaded] == ["good"]
        assert store.unreadable == [bad]
        assert good.exists()

    def test_iteration_is_lazy_and_restartable(self, store):
        store.write_session(session(id="a"))
        iterator = store.iter_sessions()
        assert next(iterator).content
        assert len(list(store.iter_sessions())) == 1

    def test_has_encrypted_files(self, store, plain_store):
        assert not plain_store.has_encrypted_files()
        store.write_session(session())
        assert store.has_encrypted_files()

    def test_user_slug(self):
        assert user_slug("dev.one@example.com") == "dev.one"
        assert user_slug("We!rd Name") == "We-rd-Name"
        assert user_slug("") == "unknown"


class TestEvents:
    def test_one_envelope_per_line(self, store):
        store.append_events([Event(kind="session", tool="t", user="u", summary="hello")])
        store.append_events([Event(kind="decision", tool="t", user="u", summary="chose x")])
        lines = store.events_path.read_text().splitlines()
        assert len(lines) == 2
        assert all(is_encrypted(line) for line in lines)
        assert [e.summary for e in store.read_events()] == ["hello", "chose x"]

    def test_timestamps_never_go_backwards(self, store):
        store.append_events([Event(kind="session", tool="t", user="u", summary="late", timestamp=TS)])
        appended = store.append_events(
            [Event(kind="session", tool="t", user="u", summary="early", timestamp=TS - timedelta(hours=1))]
        )
        assert appended[0].timestamp == TS
        timestamps = [e.timestamp for e in store.read_events()]
        assert timestamps == sorted(timestamps)

    def test_bad_lines_are_skipped(self, store):
        store.append_events([Event(kind="session", tool="t", user="u", summary="ok")])
        with store.events_path.open("a") as f:
            f.write("RECALL_ENCRYPTED:v1:broken\n{not json}\n")
        assert [e.summary for e in store.read_events()] == ["ok"]


class TestRotation:
    def test_stale_key_blocks_writes(self, store):
        store.rotate_awareness(2)
        with pytest.raises(StaleKey):
            store.write_artifact("context", "x")
        with pytest.raises(StaleKey):
            store.write_session(session())

    def test_rotation_to_same_version_is_ignored(self, store):
        store.rotate_awareness(1)
        store.write_artifact("context", "still fine")

    def test_reencrypt(self, store, team_key):
        store.write_artifact("context", "ctx")
        path = store.write_session(session())
        store.append_events([Event(kind="session", tool="t", user="u", summary="evt")])

        new_key = TeamKey(OTHER_KEY, 2, "team-1")
        store.rotate_awareness(2)
        store.use_key(new_key)
        assert not store.stale

        rewritten = store.reencrypt(team_key)
        assert rewritten == 3

        fresh = MemoryStore(store.root, key=new_key)
        assert fresh.read_artifact("context") == "ctx"
        assert extract_session(fresh.read_session(path)).id == "s1"
        assert [e.summary for e in fresh.read_events()] == ["evt"]

        assert store.reencrypt(team_key) == 0


class TestEncryptPlaintext:
    def test_seals_free_tier_files(self, tmp_path, team_key):
        root = tmp_path / ".recall"
        plain = MemoryStore(root)
        plain.write_artifact("context", "# Team Context\n")
        plain_path = plain.write_session(session())
        plain.append_events([Event(kind="session", tool="t", user="u", summary="before the key")])

        store = MemoryStore(root, key=team_key)
        written = store.encrypt_plaintext()

        assert {p.name for p in written} == {"context.md.enc", "02-0905.md.enc", "events.jsonl"}
        assert not plain_path.exists()
        assert not (root / "context.md").exists()
        assert store.read_artifact("context") == "# Team Context\n"
        assert extract_session(store.read_session(store.session_paths()[0])).id == "s1"
        assert all(is_encrypted(line) for line in store.events_path.read_text().splitlines())
        assert [e.summary for e in store.read_events()] == ["before the key"]

        assert store.encrypt_plaintext() == []

    def test_plaintext_beside_encrypted_copy_is_dropped(self, store):
        store.write_artifact("history", "sealed")
        (store.root / "history.md").write_text("stale plaintext")
        assert store.encrypt_plaintext() == []
        assert not (store.root / "history.md").exists()
        assert store.read_artifact("history") == "sealed"

    def test_needs_a_key(self, plain_store):
        plain_store.write_artifact("context", "plain")
        with pytest.raises(EnvelopeError):
            plain_store.encrypt_plaintext()
        assert plain_store.read_artifact("context") == "plain"
