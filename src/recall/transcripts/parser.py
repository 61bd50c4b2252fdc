"""Parse AI tool session logs into a normalized message sequence.

JSONL logs are parsed line by line. A corrupt line is counted and skipped so
one bad write never costs the rest of the transcript. Gemini CLI chats are
single JSON documents and are read whole.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ROLE_ALIASES = {
    "user": "user",
    "human": "user",
    "assistant": "assistant",
    "model": "assistant",
    "ai": "assistant",
    "gemini": "assistant",
    "system": "system",
}

TEXT_BLOCK_TYPES = {"text", "input_text", "output_text"}

ROLE_LABELS = {"user": "User", "assistant": "Assistant", "system": "System"}


@dataclass
class Message:
    role: str
    text: str


@dataclass
class Transcript:
    """Normalized view of one session log."""

    messages: list[Message] = field(default_factory=list)
    skipped: int = 0
    summary: str = ""
    source: str = ""
    started_at: datetime | None = None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def first_user_message(self) -> str:
        for message in self.messages:
            if message.role == "user":
                return message.text
        return ""

    def texts(self, role: str) -> list[str]:
        return [m.text for m in self.messages if m.role == role]

    def render(self) -> str:
        """Role-labeled paragraphs, one per message."""
        return "\n\n".join(
            f"**{ROLE_LABELS.get(m.role, m.role.title())}:** {m.text}" for m in self.messages
        )


def _block_text(content: Any) -> str:
    """Flatten string or block-list content into one text block."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, dict):
        content = [content]
    if not isinstance(content, list):
        return ""

    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict):
            block_type = block.get("type")
            text = block.get("text")
            if isinstance(text, str) and (block_type is None or block_type in TEXT_BLOCK_TYPES):
                parts.append(text)
    return "\n".join(p.strip() for p in parts if p and p.strip())


def _normalize_role(raw: Any) -> str | None:
    if not isinstance(raw, str):
        return None
    return ROLE_ALIASES.get(raw.lower())


def normalize_record(record: dict) -> Message | None:
    """Map one vendor-specific record onto a message, or None if it isn't one."""
    # Codex rollouts wrap the message in a payload
    if record.get("type") == "response_item" and isinstance(record.get("payload"), dict):
        record = record["payload"]
        if record.get("type") not in (None, "message"):
            return None

    # Claude Code: {"type": "user", "message": {"role": ..., "content": ...}}
    message = record.get("message")
    if isinstance(message, dict):
        role = _normalize_role(message.get("role")) or _normalize_role(record.get("type"))
        text = _block_text(message.get("content"))
    # Gemini: {"role" | "author": "model", "parts": [{"text": ...}]}
    elif "parts" in record:
        role = _normalize_role(record.get("role") or record.get("author"))
        text = _block_text(record.get("parts"))
    # Generic / Codex: {"role": ..., "content": ...}
    else:
        role = _normalize_role(record.get("role"))
        text = _block_text(record.get("content"))

    if not role or not text:
        return None
    return Message(role=role, text=text)


def _record_time(record: dict) -> datetime | None:
    """The record's ISO-8601 timestamp as UTC, if it carries a usable one."""
    raw = record.get("timestamp")
    if not isinstance(raw, str):
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_transcript(text: str, source: str = "") -> Transcript:
    """Parse newline-delimited JSON into a transcript."""
    transcript = Transcript(source=source)
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            transcript.skipped += 1
            continue
        if not isinstance(record, dict):
            transcript.skipped += 1
            continue

        if record.get("type") == "summary" and isinstance(record.get("summary"), str):
            transcript.summary = record["summary"].strip()
            continue

        if transcript.started_at is None:
            transcript.started_at = _record_time(record)

        message = normalize_record(record)
        if message:
            transcript.messages.append(message)

    if transcript.skipped:
        logger.info("Skipped %d unparseable line(s) in %s", transcript.skipped, source or "transcript")
    return transcript


def parse_chat_document(text: str, source: str = "") -> Transcript:
    """Parse a whole-file JSON chat (Gemini CLI) into a transcript.

    The document holds its messages under ``messages`` or ``conversation``;
    each carries its speaker in ``role`` or ``type``. An unreadable document
    counts as one skipped record.
    """
    transcript = Transcript(source=source)
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.info("Skipping unparseable chat %s", source or "document")
        transcript.skipped = 1
        return transcript
    if isinstance(data, dict):
        records = data.get("messages") or data.get("conversation") or []
        transcript.started_at = _record_time({"timestamp": data.get("startTime")})
    else:
        records = data
    if not isinstance(records, list):
        transcript.skipped = 1
        return transcript

    for record in records:
        if not isinstance(record, dict):
            transcript.skipped += 1
            continue
        if transcript.started_at is None:
            transcript.started_at = _record_time(record)
        if "role" not in record and "type" in record:
            record = {**record, "role": record["type"]}
        message = normalize_record(record)
        if message:
            transcript.messages.append(message)
    return transcript


def parse_transcript_file(path: Path) -> Transcript:
    text = path.read_text(encoding="utf-8", errors="replace")
    if path.suffix == ".json":
        return parse_chat_document(text, source=path.name)
    return parse_transcript(text, source=path.name)
