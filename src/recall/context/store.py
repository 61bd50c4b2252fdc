"""On-disk team memory under <repo>/.recall, encrypted with the team key."""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from recall.config import (
    ARTIFACTS,
    ENCRYPTED_SUFFIX,
    EVENTS_FILE,
    GITATTRIBUTES,
    SESSIONS_DIR,
    TRACKER_FILE,
)
from recall.context.extractor import extract_session, render_session
from recall.context.models import Event, StructuredSession
from recall.crypto.envelope import decrypt, encrypt, is_encrypted
from recall.crypto.keys import TeamKey
from recall.errors import CorruptArtifact, EnvelopeError, StaleKey

logger = logging.getLogger(__name__)

PLACEHOLDERS = {
    "context": "# Team Context\n\n_No sessions captured yet. Run `recall save` after your first AI coding session._\n",
    "history": "# Team History\n\n_No sessions captured yet. This will contain decision logs, failure logs, and prompt patterns._\n",
}


@dataclass
class SessionFile:
    path: Path
    content: str


def user_slug(user: str) -> str:
    handle = user.split("@")[0] or "unknown"
    return re.sub(r"[^A-Za-z0-9._-]+", "-", handle).strip("-.") or "unknown"


class MemoryStore:
    """Reads and writes artifacts, session records and the event log.

    With a key every write is an envelope; without one (free tier) files are
    plaintext. Reads accept both, whichever is on disk.
    """

    def __init__(self, root: Path, key: TeamKey | None = None):
        self.root = root
        self.key = key
        self.unreadable: list[Path] = []
        self._stale_from: int | None = None

    # ── Codec ────────────────────────────────────────────────────────

    @property
    def stale(self) -> bool:
        return self._stale_from is not None

    def _seal(self, text: str) -> str:
        if self.key is None:
            return text
        if self.stale:
            raise StaleKey(
                f"Team key v{self.key.version} was rotated to v{self._stale_from}; "
                "load the new key before writing."
            )
        return encrypt(text, self.key.key_material)

    def _open(self, raw: str) -> str:
        if not is_encrypted(raw):
            return raw
        if self.key is None:
            raise EnvelopeError("file is encrypted and no team key is loaded")
        return decrypt(raw, self.key.key_material)

    @property
    def _suffix(self) -> str:
        return ".md" + ENCRYPTED_SUFFIX if self.key else ".md"

    @staticmethod
    def _atomic_write(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    def is_encrypted(self, raw: str) -> bool:
        return is_encrypted(raw)

    # ── Layout ───────────────────────────────────────────────────────

    @property
    def sessions_dir(self) -> Path:
        return self.root / SESSIONS_DIR

    @property
    def tracker_path(self) -> Path:
        return self.root / TRACKER_FILE

    def is_initialized(self) -> bool:
        return any(self.artifact_path(name) for name in ARTIFACTS)

    def init(self) -> None:
        """Create the directory structure, placeholder artifacts and merge rules."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        for name, content in PLACEHOLDERS.items():
            if not self.artifact_path(name):
                self.write_artifact(name, content)
        gitattributes = self.root / ".gitattributes"
        if not gitattributes.exists():
            gitattributes.write_text(GITATTRIBUTES)

    def has_encrypted_files(self) -> bool:
        if any((self.root / (f + ENCRYPTED_SUFFIX)).exists() for f in ARTIFACTS.values()):
            return True
        if self.sessions_dir.exists():
            return next(self.sessions_dir.rglob("*" + ENCRYPTED_SUFFIX), None) is not None
        return False

    # ── Artifacts ────────────────────────────────────────────────────

    def artifact_path(self, name: str) -> Path | None:
        """The file currently holding artifact name, encrypted copy first."""
        filename = ARTIFACTS[name]
        for candidate in (self.root / (filename + ENCRYPTED_SUFFIX), self.root / filename):
            if candidate.exists():
                return candidate
        return None

    def read_artifact(self, name: str) -> str | None:
        """Return the artifact's content, or None if it was never written.

        Raises:
            CorruptArtifact: if the file exists but cannot be opened.
        """
        path = self.artifact_path(name)
        if path is None:
            return None
        try:
            return self._open(path.read_text(encoding="utf-8"))
        except (EnvelopeError, UnicodeDecodeError) as e:
            raise CorruptArtifact(path.name, e) from e

    def write_artifact(self, name: str, content: str) -> Path:
        """Replace the artifact in full."""
        filename = ARTIFACTS[name]
        target = self.root / (filename + ENCRYPTED_SUFFIX if self.key else filename)
        self._atomic_write(target, self._seal(content))
        sibling = self.root / (filename if self.key else filename + ENCRYPTED_SUFFIX)
        sibling.unlink(missing_ok=True)
        return target

    # ── Sessions ─────────────────────────────────────────────────────

    def _session_stem(self, session: StructuredSession) -> Path:
        ts = session.timestamp
        return (
            self.sessions_dir
            / f"{ts:%Y-%m}"
            / user_slug(session.user)
            / f"{ts:%d-%H%M}"
        )

    def _existing_variant(self, stem: Path) -> Path | None:
        for suffix in (".md" + ENCRYPTED_SUFFIX, ".md"):
            candidate = stem.with_name(stem.name + suffix)
            if candidate.exists():
                return candidate
        return None

    def _owner_of(self, path: Path) -> str | None:
        try:
            found = extract_session(self.read_session(path))
        except (EnvelopeError, UnicodeDecodeError):
            return None
        return found.id if found else None

    def session_path(self, session: StructuredSession) -> Path:
        """Where session belongs: its minute slot, or the next free -N variant.

        A slot already holding the same session id is reused so rewriting a
        session never duplicates it.
        """
        stem = self._session_stem(session)
        n = 1
        while True:
            candidate = stem if n == 1 else stem.with_name(f"{stem.name}-{n}")
            existing = self._existing_variant(candidate)
            if existing is None or self._owner_of(existing) == session.id:
                return candidate.with_name(candidate.name + self._suffix)
            n += 1

    def write_session(self, session: StructuredSession) -> Path:
        if session.is_empty():
            raise ValueError("refusing to persist an empty session")
        path = self.session_path(session)
        self._atomic_write(path, self._seal(render_session(session)))
        if self.key:
            path.with_name(path.name[: -len(ENCRYPTED_SUFFIX)]).unlink(missing_ok=True)
        else:
            path.with_name(path.name + ENCRYPTED_SUFFIX).unlink(missing_ok=True)
        logger.info("Wrote session %s to %s", session.id, path)
        return path

    def read_session(self, path: Path) -> str:
        if not path.is_absolute():
            path = self.root / path
        return self._open(path.read_text(encoding="utf-8"))

    def session_paths(self) -> list[Path]:
        """All session files, newest first by modification time."""
        if not self.sessions_dir.exists():
            return []
        paths = [
            p
            for p in self.sessions_dir.rglob("*")
            if p.is_file() and (p.name.endswith(".md") or p.name.endswith(".md" + ENCRYPTED_SUFFIX))
        ]
        return sorted(paths, key=lambda p: (p.stat().st_mtime, str(p)), reverse=True)

    def iter_sessions(self) -> Iterator[SessionFile]:
        """Lazily yield readable session files, newest first.

        Files that fail to decrypt are logged, recorded in ``unreadable`` and
        skipped; enumeration continues.
        """
        self.unreadable = []
        for path in self.session_paths():
            try:
                content = self.read_session(path)
            except (EnvelopeError, UnicodeDecodeError, OSError) as e:
                logger.warning("Skipping unreadable session %s: %s", path, e)
                self.unreadable.append(path)
                continue
            yield SessionFile(path=path, content=content)

    def list_sessions(self) -> list[SessionFile]:
        return list(self.iter_sessions())

    def load_sessions(self) -> list[StructuredSession]:
        """Every readable session record, parsed."""
        sessions = []
        for item in self.iter_sessions():
            session = extract_session(item.content)
            if session:
                sessions.append(session)
        return sessions

    # ── Event log ────────────────────────────────────────────────────

    @property
    def events_path(self) -> Path:
        return self.root / EVENTS_FILE

    def read_events(self) -> list[Event]:
        """All readable events in log order; undecodable lines are skipped."""
        if not self.events_path.exists():
            return []
        events = []
        for line in self.events_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(Event.model_validate_json(self._open(line)))
            except (EnvelopeError, ValidationError, ValueError) as e:
                logger.warning("Skipping unreadable event line: %s", e)
        return events

    def append_events(self, events: list[Event]) -> list[Event]:
        """Append events, keeping timestamps non-decreasing within the log."""
        if not events:
            return []
        existing = self.read_events()
        tail = existing[-1].timestamp if existing else None

        appended = []
        lines = []
        for event in sorted(events, key=lambda e: e.timestamp):
            if tail and event.timestamp < tail:
                event = event.model_copy(update={"timestamp": tail})
            tail = event.timestamp
            appended.append(event)
            lines.append(self._seal(event.model_dump_json()))

        self.root.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")
        return appended

    # ── Key rotation ─────────────────────────────────────────────────

    def rotate_awareness(self, new_version: int) -> None:
        """Record that the team key moved on; writes under the old key stop."""
        if self.key and new_version > self.key.version:
            logger.warning(
                "Key v%d is stale (team is on v%d); writes are blocked until re-keyed",
                self.key.version,
                new_version,
            )
            self._stale_from = new_version

    def use_key(self, key: TeamKey) -> None:
        self.key = key
        if self._stale_from is not None and key.version >= self._stale_from:
            self._stale_from = None

    def _encrypted_files(self) -> list[Path]:
        files = [self.root / (f + ENCRYPTED_SUFFIX) for f in ARTIFACTS.values()]
        files = [f for f in files if f.exists()]
        if self.sessions_dir.exists():
            files += sorted(self.sessions_dir.rglob("*" + ENCRYPTED_SUFFIX))
        return files

    def _plaintext_files(self) -> list[Path]:
        files = [self.root / f for f in ARTIFACTS.values()]
        files = [f for f in files if f.exists()]
        if self.sessions_dir.exists():
            files += sorted(p for p in self.sessions_dir.rglob("*.md") if p.is_file())
        return files

    def encrypt_plaintext(self) -> list[Path]:
        """Seal plaintext memory (free tier or legacy) under the current key.

        Each ``.md`` file becomes its ``.md.enc`` sibling, or is dropped when an
        encrypted copy already exists, since reads prefer that copy. Plaintext
        event lines are sealed in place. Returns the encrypted paths written.
        """
        if self.key is None:
            raise EnvelopeError("no team key to encrypt with")
        written = []
        for path in self._plaintext_files():
            target = path.with_name(path.name + ENCRYPTED_SUFFIX)
            if not target.exists():
                raw = path.read_text(encoding="utf-8")
                self._atomic_write(target, raw if is_encrypted(raw) else self._seal(raw))
                written.append(target)
            path.unlink()

        if self.events_path.exists():
            lines = self.events_path.read_text(encoding="utf-8").splitlines()
            sealed = [line if not line.strip() or is_encrypted(line) else self._seal(line) for line in lines]
            if sealed != lines:
                self._atomic_write(self.events_path, "\n".join(sealed) + "\n")
                written.append(self.events_path)

        if written:
            logger.info("Encrypted %d plaintext file(s) with key v%d", len(written), self.key.version)
        return written

    def reencrypt(self, old_key: TeamKey) -> int:
        """Re-encrypt every envelope written under old_key with the current key.

        Envelopes that old_key cannot open are left alone (already migrated or
        foreign). Returns the number of files rewritten.
        """
        if self.key is None:
            raise EnvelopeError("no current team key to re-encrypt with")
        rewritten = 0
        for path in self._encrypted_files():
            try:
                plaintext = decrypt(path.read_text(encoding="utf-8"), old_key.key_material)
            except EnvelopeError:
                continue
            self._atomic_write(path, self._seal(plaintext))
            rewritten += 1

        if self.events_path.exists():
            lines = []
            changed = False
            for line in self.events_path.read_text(encoding="utf-8").splitlines():
                if not is_encrypted(line):
                    lines.append(line)
                    continue
                try:
                    plaintext = decrypt(line, old_key.key_material)
                except EnvelopeError:
                    lines.append(line)
                    continue
                lines.append(self._seal(plaintext))
                changed = True
            if changed:
                self._atomic_write(self.events_path, "\n".join(lines) + "\n")
                rewritten += 1

        logger.info("Re-encrypted %d file(s) from key v%d to v%d", rewritten, old_key.version, self.key.version)
        return rewritten
