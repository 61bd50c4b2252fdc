"""The team-memory service: the one seam the CLI and the MCP server call into.

It owns key resolution (lazily, only when a file actually needs it), writes
session records, keeps the event log and the import tracker, and regenerates
the derived artifacts after every change.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from recall.config import (
    ENCRYPTED_SUFFIX,
    RecallConfig,
    git_user_email,
    read_config,
    recall_path,
)
from recall.context.extractor import extract_session, summarize_locally
from recall.context.models import Decision, StructuredSession
from recall.context.snapshots import estimate_tokens, generate
from recall.context.store import MemoryStore
from recall.context.tracker import TrackerFile, record_import, should_import
from recall.crypto.keys import AuthSession, KeyProvider, TeamKey
from recall.errors import AccessDenied, ArtifactNotFound, DenialReason
from recall.transcripts.discovery import discover_transcripts
from recall.transcripts.parser import Transcript, parse_transcript_file
from recall.transcripts.summarize import Summarizer

logger = logging.getLogger(__name__)

# Denials that mean "this user has no team", as opposed to "this team is broken"
FREE_TIER_REASONS = {DenialReason.NO_CREDENTIAL, DenialReason.NO_TEAM_MEMBERSHIP}


@dataclass
class LoadResult:
    content: str
    token_estimate: int


@dataclass
class SaveResult:
    session_path: Path | None
    session: StructuredSession | None = None


@dataclass
class ImportResult:
    message_count: int
    skipped_lines: int
    session_path: Path | None
    imported: bool


def source_session_id(filename: str) -> str:
    """Deterministic session id for an imported transcript."""
    return hashlib.sha256(filename.encode()).hexdigest()[:16]


def _modified(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


class TeamMemory:
    def __init__(
        self,
        repo_root: Path,
        key_provider: KeyProvider | None = None,
        summarizer: Summarizer | None = None,
        config: RecallConfig | None = None,
    ):
        self.repo_root = repo_root
        self.config = config or read_config()
        auth = AuthSession.from_config(self.config)
        self.key_provider = key_provider or KeyProvider(auth)
        if summarizer is None and auth.token:
            summarizer = Summarizer(auth)
        self.summarizer = summarizer
        self.store = MemoryStore(recall_path(repo_root))
        self.tracker = TrackerFile(self.store.tracker_path)
        self.plaintext = False
        self._sealed = False
        self._user: str | None = None

    @property
    def user(self) -> str:
        if self._user is None:
            self._user = self.config.email or git_user_email(self.repo_root)
        return self._user

    @property
    def project_name(self) -> str:
        return self.repo_root.name

    # ── Keys ─────────────────────────────────────────────────────────

    async def _ensure_read_key(self) -> None:
        """Load the team key if anything on disk is encrypted and none is loaded."""
        if self.store.key is None and self.store.has_encrypted_files():
            self.store.use_key(await self.key_provider.resolve_key())

    async def _ensure_write_key(self) -> None:
        """Load the key writes are sealed with, or settle on plaintext.

        Only a user with no team writes plaintext, and only into a store that
        holds no encrypted files yet. Every other denial propagates. The first
        keyed write also seals whatever plaintext the free tier left behind.
        """
        if self.plaintext:
            return
        if self.store.key is None:
            try:
                key = await self.key_provider.resolve_key()
            except AccessDenied as e:
                if e.reason in FREE_TIER_REASONS and not self.store.has_encrypted_files():
                    logger.info("No team key (%s); writing plaintext memory", e.reason.value)
                    self.plaintext = True
                    return
                raise
            self.store.use_key(key)
        if not self._sealed:
            self.store.encrypt_plaintext()
            self._sealed = True

    async def encrypt_plaintext(self) -> list[Path]:
        """Seal every plaintext memory file with the team key."""
        if self.store.key is None:
            self.store.use_key(await self.key_provider.resolve_key())
        written = self.store.encrypt_plaintext()
        self._sealed = True
        return written

    def rotate_awareness(self, new_version: int) -> None:
        """The team key moved to new_version; block writes under the old key."""
        self.store.rotate_awareness(new_version)
        self.key_provider.invalidate_cache()

    async def reencrypt(self, old_key: TeamKey | None = None) -> int:
        """Fetch the current key and re-seal everything written under old_key."""
        old_key = old_key or self.store.key
        if old_key is None:
            raise ValueError("no previous team key to migrate from")
        current = await self.key_provider.resolve_key(refresh=True)
        self.store.use_key(current)
        return self.store.reencrypt(old_key)

    # ── Reading ──────────────────────────────────────────────────────

    async def load_artifact(self, size: str = "context") -> LoadResult:
        """Return one derived artifact ("context" or "history").

        Raises:
            ArtifactNotFound: if it has never been generated.
            AccessDenied: if it is encrypted and the key cannot be obtained.
            CorruptArtifact: if it exists but cannot be opened.
        """
        path = self.store.artifact_path(size)
        if path is None:
            raise ArtifactNotFound(f"No {size} has been generated yet. Run `recall save` or `recall import` first.")
        if path.name.endswith(ENCRYPTED_SUFFIX) and self.store.key is None:
            self.store.use_key(await self.key_provider.resolve_key())
        content = self.store.read_artifact(size)
        return LoadResult(content=content, token_estimate=estimate_tokens(content))

    async def sessions(self) -> list[StructuredSession]:
        await self._ensure_read_key()
        return self.store.load_sessions()

    # ── Writing ──────────────────────────────────────────────────────

    async def regenerate(self) -> None:
        """Rebuild context and history from every readable session record."""
        await self._ensure_write_key()
        sessions = await self.sessions()
        existing = None
        if self.store.artifact_path("context"):
            existing = self.store.read_artifact("context")
        snapshots = generate(sessions, existing, context_budget=self.config.context_budget)
        self.store.write_artifact("context", snapshots.current_context)
        self.store.write_artifact("history", snapshots.full_history)
        if self.store.unreadable:
            logger.warning("%d session file(s) could not be read and were left out", len(self.store.unreadable))

    async def _persist(self, session: StructuredSession) -> Path:
        path = self.store.write_session(session)
        self.store.append_events(session.to_events())
        await self.regenerate()
        return path

    async def save_session(
        self,
        content: str | StructuredSession,
        *,
        user: str | None = None,
        tool: str = "unknown",
        timestamp: datetime | None = None,
    ) -> SaveResult:
        """Persist one session from markdown or an already structured record.

        ``session_path`` is None when the markdown held nothing extractable.
        """
        await self._ensure_write_key()
        if isinstance(content, StructuredSession):
            session = content
        else:
            defaults = {"user": user or self.user, "tool": tool}
            if timestamp:
                defaults["timestamp"] = timestamp
            session = extract_session(content, **defaults)
        if session is None or session.is_empty():
            logger.info("Nothing to save: no summary or tagged sections found")
            return SaveResult(session_path=None)
        return SaveResult(session_path=await self._persist(session), session=session)

    async def log_decision(
        self,
        decision: str,
        reasoning: str = "",
        *,
        alternatives: list[str] | None = None,
        confidence: str = "medium",
        user: str | None = None,
        tool: str = "unknown",
    ) -> SaveResult:
        """Record a single decision as its own small session."""
        session = StructuredSession(
            user=user or self.user,
            tool=tool,
            title=f"Decision: {decision}",
            short_summary=f"Decided: {decision}",
            decisions=[
                Decision(
                    title=decision,
                    what=decision,
                    why=reasoning,
                    alternatives=alternatives or [],
                    confidence=confidence,
                )
            ],
        )
        return await self.save_session(session)

    # ── Importing ────────────────────────────────────────────────────

    async def _summarize(self, transcript: Transcript, **defaults) -> StructuredSession | None:
        if self.summarizer and transcript.messages:
            session = await self.summarizer.summarize(transcript, self.project_name, **defaults)
            if session:
                return session
        return summarize_locally(transcript, **defaults)

    async def _import(
        self, sources: list[tuple[Path, str]], *, user: str | None, force: bool
    ) -> list[ImportResult]:
        results = []
        written = False
        known: dict[str, StructuredSession] | None = None

        async with self.tracker.alock():
            tracker = self.tracker.load()
            for path, tool in sources:
                modified = _modified(path)
                if not force and not should_import(path.name, modified, tracker):
                    logger.info("Skipping %s: already imported and unchanged", path.name)
                    results.append(ImportResult(0, 0, None, imported=False))
                    continue

                await self._ensure_write_key()
                if known is None:
                    known = {s.id: s for s in await self.sessions()}

                transcript = parse_transcript_file(path)
                session_id = source_session_id(path.name)
                previous = known.get(session_id)
                # a re-import keeps its original slot (author and minute) in the layout
                if previous:
                    slot = {"timestamp": previous.timestamp, "user": previous.user}
                else:
                    slot = {"timestamp": transcript.started_at or modified, "user": user or self.user}
                session = await self._summarize(
                    transcript,
                    id=session_id,
                    tool=tool,
                    source=path.name,
                    **slot,
                )

                session_path = None
                if session is not None and not session.is_empty():
                    session_path = self.store.write_session(session)
                    if previous is None:
                        self.store.append_events(session.to_events())
                    known[session.id] = session
                    written = True

                tracker = record_import(path.name, modified, tracker)
                self.tracker.save(tracker)
                results.append(
                    ImportResult(transcript.message_count, transcript.skipped, session_path, imported=True)
                )

            if written:
                await self.regenerate()
        return results

    async def import_transcript(
        self,
        path: Path,
        *,
        user: str | None = None,
        tool: str = "claude-code",
        force: bool = False,
    ) -> ImportResult:
        """Import one transcript unless it was already imported and is unchanged."""
        results = await self._import([(Path(path), tool)], user=user, force=force)
        return results[0]

    async def import_directory(
        self,
        directory: Path | None = None,
        *,
        user: str | None = None,
        tool: str | None = None,
    ) -> list[ImportResult]:
        """Import transcripts oldest first.

        With a directory, every *.jsonl and *.json file in it is imported as
        ``tool`` (default claude-code). Without one, the transcripts Claude
        Code, Codex and Gemini CLI kept for this repository are discovered and
        each is attributed to the tool that wrote it.
        """
        if directory is None:
            sources = discover_transcripts(self.repo_root)
        elif directory.is_dir():
            paths = [p for p in directory.iterdir() if p.is_file() and p.suffix in (".jsonl", ".json")]
            sources = [(p, tool or "claude-code") for p in paths]
        else:
            logger.info("No transcript directory at %s", directory)
            return []
        if not sources:
            return []
        sources.sort(key=lambda item: (item[0].stat().st_mtime, item[0].name))
        return await self._import(sources, user=user, force=False)
