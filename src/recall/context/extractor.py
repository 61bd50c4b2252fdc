"""Best-effort extraction of structured records from session markdown.

Sections start with a marker such as ``[DECISION] Use Postgres`` and carry
``**Field:** value`` lines until the next marker, heading or end of document.
This is a heuristic reader for loosely written markdown, not a grammar: it may
return partial records and silently ignores text it does not recognize.
"""

import re
from datetime import datetime

from recall.context.models import (
    Decision,
    Failure,
    Lesson,
    PromptPattern,
    StructuredSession,
)
from recall.transcripts.parser import Transcript

MARKER_RE = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:[-*]\s+)?\[(DECISION|FAILURE|LESSON|PROMPT_PATTERN)\]\s*:?\s*(.*?)\s*$"
)
FIELD_RE = re.compile(r"^\s*(?:[-*]\s+)?\*\*([^*]+?)\*\*\s*:?\s*(.*?)\s*$")
HEADING_RE = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
# indent for the second and later lines of a rendered value
CONTINUATION = "  "
FILE_RE = [
    re.compile(r"(?:Read|Edit|Write|file_path)[:\s]+[\"'`]?([\w./-]+\.\w+)[\"'`]?", re.IGNORECASE),
    re.compile(r"```\w*\s*(?://|#)\s*([\w./-]+\.\w+)", re.MULTILINE),
]

SECTION_FIELDS = {
    "DECISION": {
        "what": "what",
        "decision": "what",
        "why": "why",
        "rationale": "why",
        "reasoning": "why",
        "alternatives": "alternatives",
        "alternativesconsidered": "alternatives",
        "confidence": "confidence",
    },
    "FAILURE": {
        "whattried": "what_tried",
        "tried": "what_tried",
        "attempted": "what_tried",
        "whathappened": "what_happened",
        "happened": "what_happened",
        "result": "what_happened",
        "rootcause": "root_cause",
        "cause": "root_cause",
        "minuteslost": "minutes_lost",
        "timelost": "minutes_lost",
        "resolution": "resolution",
        "fix": "resolution",
    },
    "LESSON": {
        "derivedfromfailure": "derived_from_failure",
        "derivedfrom": "derived_from_failure",
        "lesson": "lesson",
        "whenapplies": "when_applies",
        "appliesto": "when_applies",
    },
    "PROMPT_PATTERN": {
        "prompt": "prompt",
        "whyeffective": "why_effective",
        "whyitworks": "why_effective",
        "whentouse": "when_to_use",
    },
}

SESSION_FIELDS = {
    "status": "status",
    "summary": "short_summary",
    "shortsummary": "short_summary",
    "nextsteps": "next_steps",
    "next": "next_steps",
    "blockedby": "blocked_by",
    "blockers": "blocked_by",
    "blocker": "blocked_by",
    "date": "timestamp",
    "timestamp": "timestamp",
    "author": "user",
    "user": "user",
    "tool": "tool",
    "files": "files",
    "fileschanged": "files",
    "sessionid": "id",
    "source": "source",
}

# session fields whose values may run over several lines
TEXT_FIELDS = {"short_summary", "next_steps", "blocked_by"}

STATUS_ALIASES = {
    "complete": "complete",
    "completed": "complete",
    "done": "complete",
    "in-progress": "in-progress",
    "inprogress": "in-progress",
    "wip": "in-progress",
    "ongoing": "in-progress",
    "blocked": "blocked",
    "stuck": "blocked",
}


def _label(raw: str) -> str:
    return re.sub(r"[^a-z0-9]", "", raw.lower())


class _Section:
    def __init__(self, kind: str, title: str):
        self.kind = kind
        self.title = title
        self.fields: dict[str, str] = {}
        self.last: str | None = None

    def set(self, label: str, value: str) -> None:
        key = SECTION_FIELDS[self.kind].get(_label(label))
        self.last = key
        if key:
            self.fields[key] = value

    def extend(self, line: str) -> None:
        if self.last:
            current = self.fields.get(self.last, "")
            self.fields[self.last] = f"{current}\n{line}" if current else line

    def build(self) -> Decision | Failure | Lesson | PromptPattern:
        f = self.fields
        if self.kind == "DECISION":
            return Decision(
                title=self.title,
                what=f.get("what", ""),
                why=f.get("why", ""),
                alternatives=_split_list(f.get("alternatives", "")),
                confidence=_confidence(f.get("confidence", "")),
            )
        if self.kind == "FAILURE":
            return Failure(
                title=self.title,
                what_tried=f.get("what_tried", ""),
                what_happened=f.get("what_happened", ""),
                root_cause=f.get("root_cause", ""),
                minutes_lost=_minutes(f.get("minutes_lost", "")),
                resolution=f.get("resolution", ""),
            )
        if self.kind == "LESSON":
            return Lesson(
                title=self.title,
                derived_from_failure=f.get("derived_from_failure", ""),
                lesson=f.get("lesson", ""),
                when_applies=f.get("when_applies", ""),
            )
        return PromptPattern(
            title=self.title,
            prompt=f.get("prompt", ""),
            why_effective=f.get("why_effective", ""),
            when_to_use=f.get("when_to_use", ""),
        )


def _split_list(value: str) -> list[str]:
    if not value:
        return []
    pieces = re.split(r"[;\n]", value)
    if len(pieces) == 1 and "," in value:
        pieces = value.split(",")
    items = [p.strip().lstrip("-*").strip() for p in pieces]
    return [i for i in items if i]


def _confidence(value: str) -> str:
    value = value.strip().lower()
    return value if value in ("high", "medium", "low") else "medium"


def _minutes(value: str) -> int:
    match = re.search(r"\d+", value)
    return int(match.group()) if match else 0


def _status(value: str) -> str | None:
    return STATUS_ALIASES.get(re.sub(r"[\s_]+", "-", value.strip().lower()))


def _timestamp(value: str) -> datetime | None:
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class _Collector:
    """Accumulates what one pass over the document finds."""

    def __init__(self):
        self.title = ""
        self.meta: dict[str, str] = {}
        self.summary_lines: list[str] = []
        self.sections: list[_Section] = []

    def extend(self, key: str, line: str) -> None:
        current = self.meta[key]
        self.meta[key] = f"{current}\n{line}" if current else line


def _structural(line: str) -> bool:
    """True if the line would be read as a marker, heading or field."""
    return bool(MARKER_RE.match(line) or HEADING_RE.match(line) or FIELD_RE.match(line))


def _needs_escape(line: str) -> bool:
    """True if a summary line must be indented to be read back as text."""
    indented = line.startswith(CONTINUATION) and _structural(line[len(CONTINUATION) :])
    return _structural(line) or indented


def _scan(markdown: str) -> _Collector:
    found = _Collector()
    section: _Section | None = None
    in_summary = False
    # text field that following lines currently continue
    meta_key: str | None = None

    for line in markdown.splitlines():
        if line.startswith(CONTINUATION):
            text = line[len(CONTINUATION) :].rstrip()
            if meta_key:
                found.extend(meta_key, text)
                continue
            if section and section.last:
                section.extend(text)
                continue
            if in_summary and _needs_escape(text):
                found.summary_lines.append(text)
                continue

        marker = MARKER_RE.match(line)
        if marker:
            section = _Section(marker.group(1), marker.group(2))
            found.sections.append(section)
            in_summary = False
            meta_key = None
            continue

        heading = HEADING_RE.match(line)
        if heading:
            section = None
            meta_key = None
            level, text = len(heading.group(1)), heading.group(2)
            in_summary = level == 2 and _label(text) == "summary"
            if level == 1 and not found.title:
                found.title = text[1:] if text.startswith("\\[") else text
            continue

        field = FIELD_RE.match(line)
        if field:
            meta_key = None
            if section:
                section.set(field.group(1), field.group(2))
                continue
            key = SESSION_FIELDS.get(_label(field.group(1)))
            if key and key not in found.meta:
                found.meta[key] = field.group(2)
                meta_key = key if key in TEXT_FIELDS else None
                continue
            if in_summary:
                found.summary_lines.append(line.rstrip())
            continue

        if not line.strip():
            meta_key = None
            if in_summary and found.summary_lines:
                found.summary_lines.append("")
            continue

        if meta_key:
            found.extend(meta_key, line.strip())
        elif section:
            section.extend(line.strip())
        elif in_summary:
            found.summary_lines.append(line.rstrip())

    return found


def extract_session(markdown: str, **defaults) -> StructuredSession | None:
    """Extract a StructuredSession from one session's markdown.

    Returns None when the document has neither tagged sections nor a summary;
    callers treat that as "nothing to extract". ``defaults`` supply provenance
    (id, timestamp, user, tool, source, files) the document does not state.
    """
    found = _scan(markdown)
    long_summary = "\n".join(found.summary_lines).strip()
    short_summary = found.meta.get("short_summary", "").strip()

    if not found.sections and not long_summary and not short_summary:
        return None

    data = dict(defaults)
    meta = found.meta
    if meta.get("id"):
        data["id"] = meta["id"].strip()
    if meta.get("user"):
        data["user"] = meta["user"].strip().lstrip("@")
    if meta.get("tool"):
        data["tool"] = meta["tool"].strip()
    if meta.get("source"):
        data["source"] = meta["source"].strip()
    if meta.get("files"):
        data["files"] = [f.strip("` ") for f in meta["files"].split(",") if f.strip("` ")]
    if meta.get("timestamp"):
        parsed = _timestamp(meta["timestamp"])
        if parsed:
            data["timestamp"] = parsed

    blocked_by = meta.get("blocked_by", "").strip() or None
    status = _status(meta.get("status", "")) or ("blocked" if blocked_by else "complete")

    session = StructuredSession(
        **data,
        title=found.title,
        short_summary=short_summary,
        long_summary=long_summary,
        status=status,
        next_steps=meta.get("next_steps", "").strip() or None,
        blocked_by=blocked_by,
    )
    for section in found.sections:
        record = section.build()
        if isinstance(record, Decision):
            session.decisions.append(record)
        elif isinstance(record, Failure):
            session.failures.append(record)
        elif isinstance(record, Lesson):
            session.lessons.append(record)
        else:
            session.prompt_patterns.append(record)

    return None if session.is_empty() else session


def _field(label: str, value: str | int | None) -> list[str]:
    if value in (None, ""):
        return []
    first, *rest = str(value).splitlines() or [""]
    return [f"**{label}:** {first}"] + [CONTINUATION + line for line in rest]


def _one_line(text: str) -> str:
    return " ".join(text.split())


def _escape(line: str) -> str:
    """Indent a summary line that the reader would otherwise take as structure."""
    return CONTINUATION + line if _needs_escape(line) else line


def render_session(session: StructuredSession) -> str:
    """Render a session as markdown that extract_session reads back."""
    title = _one_line(session.display_title)
    if title.startswith("["):
        title = "\\" + title
    lines = [f"# {title}", ""]
    lines += _field("Session ID", session.id)
    lines += _field("Date", session.timestamp.isoformat())
    lines += _field("Author", session.user)
    lines += _field("Tool", session.tool)
    lines += _field("Source", session.source)
    lines += _field("Status", session.status)
    lines += _field("Summary", session.short_summary)
    lines += _field("Files", ", ".join(session.files))
    lines += _field("Next Steps", session.next_steps)
    lines += _field("Blocked By", session.blocked_by)

    if session.long_summary:
        lines += ["", "## Summary", ""] + [_escape(line) for line in session.long_summary.splitlines()]

    if session.decisions:
        lines += ["", "## Decisions"]
        for d in session.decisions:
            lines += ["", f"[DECISION] {_one_line(d.title)}"]
            lines += _field("What", d.what)
            lines += _field("Why", d.why)
            lines += _field("Alternatives", "; ".join(d.alternatives))
            lines += _field("Confidence", d.confidence)

    if session.failures:
        lines += ["", "## Failures"]
        for f in session.failures:
            lines += ["", f"[FAILURE] {_one_line(f.title)}"]
            lines += _field("What Tried", f.what_tried)
            lines += _field("What Happened", f.what_happened)
            lines += _field("Root Cause", f.root_cause)
            lines += _field("Minutes Lost", f.minutes_lost)
            lines += _field("Resolution", f.resolution)

    if session.lessons:
        lines += ["", "## Lessons"]
        for lesson in session.lessons:
            lines += ["", f"[LESSON] {_one_line(lesson.title)}"]
            lines += _field("Derived From Failure", lesson.derived_from_failure)
            lines += _field("Lesson", lesson.lesson)
            lines += _field("When Applies", lesson.when_applies)

    if session.prompt_patterns:
        lines += ["", "## Prompt Patterns"]
        for p in session.prompt_patterns:
            lines += ["", f"[PROMPT_PATTERN] {_one_line(p.title)}"]
            lines += _field("Prompt", p.prompt)
            lines += _field("Why Effective", p.why_effective)
            lines += _field("When To Use", p.when_to_use)

    return "\n".join(lines) + "\n"


def truncate(text: str, limit: int) -> str:
    """Cut at a word boundary when one is reasonably close to the limit."""
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit]
    space = cut.rfind(" ")
    return (cut[:space] if space > limit // 2 else cut) + "..."


def files_mentioned(text: str, limit: int = 10) -> list[str]:
    files: list[str] = []
    for pattern in FILE_RE:
        for match in pattern.finditer(text):
            path = match.group(1)
            if path not in files and len(path) < 200:
                files.append(path)
    return files[:limit]


def summarize_locally(transcript: Transcript, **defaults) -> StructuredSession | None:
    """Template summary of a transcript, used when no remote summary is available."""
    requests = transcript.texts("user")
    if not requests and not transcript.summary:
        return None

    headline = transcript.summary or requests[0]
    long_summary = ""
    if requests:
        long_summary = "Requests:\n" + "\n".join(f"- {truncate(r, 300)}" for r in requests[:5])

    defaults.setdefault("files", files_mentioned("\n".join(m.text for m in transcript.messages)))
    session = StructuredSession(
        **defaults,
        title=truncate(headline, 80),
        short_summary=truncate(headline, 200),
        long_summary=long_summary,
    )

    tagged = extract_session("\n\n".join(transcript.texts("assistant")))
    if tagged:
        session.decisions = tagged.decisions
        session.failures = tagged.failures
        session.lessons = tagged.lessons
        session.prompt_patterns = tagged.prompt_patterns
        if tagged.status != "complete":
            session.status = tagged.status
            session.blocked_by = tagged.blocked_by
        session.next_steps = tagged.next_steps
    return session
