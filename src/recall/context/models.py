"""Data models for team memory: events, structured sessions, import records."""

import os
import time
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

EventKind = Literal["session", "decision", "error_resolved"]
SessionStatus = Literal["complete", "in-progress", "blocked"]
Confidence = Literal["high", "medium", "low"]


def new_id() -> str:
    """Sortable id: millisecond clock prefix plus random suffix."""
    return f"{time.time_ns() // 1_000_000:012x}{os.urandom(4).hex()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def display_name(user: str) -> str:
    """@handle derived from an email or account name."""
    return "@" + user.split("@")[0] if user else "@unknown"


class Event(BaseModel):
    """Durable record of one observed happening."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    kind: EventKind
    tool: str
    user: str
    summary: str
    files: list[str] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Decision(BaseModel):
    title: str
    what: str = ""
    why: str = ""
    alternatives: list[str] = Field(default_factory=list)
    confidence: Confidence = "medium"


class Failure(BaseModel):
    title: str
    what_tried: str = ""
    what_happened: str = ""
    root_cause: str = ""
    minutes_lost: int = 0
    resolution: str = ""


class Lesson(BaseModel):
    title: str
    derived_from_failure: str = ""
    lesson: str = ""
    when_applies: str = ""


class PromptPattern(BaseModel):
    title: str
    prompt: str = ""
    why_effective: str = ""
    when_to_use: str = ""


class StructuredSession(BaseModel):
    """One session's narrative decomposed into typed records."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    user: str = "unknown"
    tool: str = "unknown"
    source: str = ""
    files: list[str] = Field(default_factory=list)

    title: str = ""
    short_summary: str = ""
    long_summary: str = ""
    status: SessionStatus = "complete"
    next_steps: str | None = None
    blocked_by: str | None = None

    decisions: list[Decision] = Field(default_factory=list)
    failures: list[Failure] = Field(default_factory=list)
    lessons: list[Lesson] = Field(default_factory=list)
    prompt_patterns: list[PromptPattern] = Field(default_factory=list)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def is_empty(self) -> bool:
        return not (
            self.short_summary
            or self.long_summary
            or self.decisions
            or self.failures
            or self.lessons
            or self.prompt_patterns
        )

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        for line in self.short_summary.splitlines():
            if line.strip():
                return line.strip()[:80]
        return "Untitled session"

    @property
    def headline(self) -> str:
        """One-line description for digests."""
        if self.short_summary:
            return self.short_summary
        for line in self.long_summary.splitlines():
            if line.strip():
                return line.strip()
        return self.display_title

    def to_events(self) -> list[Event]:
        """The ledger entries this session contributes to the event log."""
        base = {"timestamp": self.timestamp, "tool": self.tool, "user": self.user}
        events = [
            Event(kind="session", summary=self.headline, files=self.files, **base)
        ]
        for decision in self.decisions:
            summary = decision.title if not decision.what else f"{decision.title}: {decision.what}"
            events.append(Event(kind="decision", summary=summary, **base))
        for failure in self.failures:
            if failure.resolution:
                events.append(
                    Event(kind="error_resolved", summary=f"{failure.title}: {failure.resolution}", **base)
                )
        return events


class ImportRecord(BaseModel):
    """One source transcript that has been turned into a session record."""

    model_config = ConfigDict(populate_by_name=True)

    filename: str
    imported_at: datetime = Field(alias="importedAt")
    mtime: int = Field(description="Source modification time, epoch milliseconds")


class ImportTracker(BaseModel):
    version: int = 1
    sessions: list[ImportRecord] = Field(default_factory=list)

    def get(self, filename: str) -> ImportRecord | None:
        for record in self.sessions:
            if record.filename == filename:
                return record
        return None
