"""Import deduplication: which source transcripts have already been imported."""

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Iterator

from pydantic import ValidationError

from recall.context.models import ImportRecord, ImportTracker, utcnow
from recall.errors import ImportInProgress

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
STALE_LOCK_SECONDS = 600


def _millis(modified_at: datetime | float | int) -> int:
    if isinstance(modified_at, datetime):
        return int(modified_at.timestamp() * 1000)
    return int(modified_at)


def should_import(filename: str, modified_at: datetime | int, tracker: ImportTracker) -> bool:
    """True if the file was never imported or has changed since it was."""
    record = tracker.get(filename)
    return record is None or record.mtime < _millis(modified_at)


def record_import(
    filename: str,
    modified_at: datetime | int,
    tracker: ImportTracker,
    imported_at: datetime | None = None,
) -> ImportTracker:
    """Return a new tracker with the record for filename inserted or replaced."""
    record = ImportRecord(
        filename=filename,
        imported_at=imported_at or utcnow(),
        mtime=_millis(modified_at),
    )
    sessions = [r for r in tracker.sessions if r.filename != filename]
    sessions.append(record)
    return ImportTracker(version=tracker.version, sessions=sessions)


class TrackerFile:
    """imported-sessions.json plus the sentinel lock that serializes updates."""

    def __init__(self, path: Path, retries: int = 5, retry_delay: float = 0.2):
        self.path = path
        self.lock_path = path.with_name(path.name + LOCK_SUFFIX)
        self.retries = retries
        self.retry_delay = retry_delay

    def load(self) -> ImportTracker:
        """Read the tracker. Malformed content is logged and skipped, never fatal."""
        if not self.path.exists():
            return ImportTracker()
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Tracker %s is unreadable, starting fresh: %s", self.path, e)
            return ImportTracker()
        if not isinstance(data, dict):
            logger.warning("Tracker %s is not an object, starting fresh", self.path)
            return ImportTracker()

        records = []
        for entry in data.get("sessions") or []:
            try:
                records.append(ImportRecord.model_validate(entry))
            except ValidationError:
                logger.warning("Skipping malformed tracker entry: %r", entry)
        version = data.get("version") if isinstance(data.get("version"), int) else 1
        return ImportTracker(version=version, sessions=records)

    def save(self, tracker: ImportTracker) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = tracker.model_dump(mode="json", by_alias=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(payload, indent=2) + "\n")
        os.replace(tmp, self.path)

    def _try_acquire(self) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return True

    def _break_stale_lock(self) -> None:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > STALE_LOCK_SECONDS:
            logger.warning("Removing stale import lock %s (%.0fs old)", self.lock_path, age)
            self.lock_path.unlink(missing_ok=True)

    def _delay(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    def _held(self) -> ImportInProgress:
        return ImportInProgress(f"Another import is in progress ({self.lock_path} is held)")

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the tracker lock for the duration of the block.

        Raises:
            ImportInProgress: if the lock is still held after the bounded retry.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self.retries + 1):
            if self._try_acquire():
                break
            self._break_stale_lock()
            if attempt < self.retries:
                time.sleep(self._delay(attempt))
        else:
            raise self._held()

        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)

    @asynccontextmanager
    async def alock(self) -> AsyncIterator[None]:
        """Like lock(), but waits between attempts without blocking the event loop."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self.retries + 1):
            if self._try_acquire():
                break
            self._break_stale_lock()
            if attempt < self.retries:
                await asyncio.sleep(self._delay(attempt))
        else:
            raise self._held()

        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)
