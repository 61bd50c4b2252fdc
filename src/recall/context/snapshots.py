"""Regenerate the derived artifacts (context.md, history.md) from session records.

``generate`` is a pure function of its inputs. The only wall-clock dependency
is the "Last synced" stamp, and callers may pin it with ``synced_at``.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime

from recall.context.models import StructuredSession, display_name, utcnow

logger = logging.getLogger(__name__)

MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

CURRENT_FOCUS = "Current Focus"
NEEDS_ATTENTION = "Needs Attention"
RECENT_DECISIONS = "Recent Decisions"
THINGS_TO_AVOID = "Things to Avoid"
LESSONS_LEARNED = "Lessons Learned"

SECTION_LIMITS = {
    CURRENT_FOCUS: 3,
    NEEDS_ATTENTION: 5,
    RECENT_DECISIONS: 5,
    THINGS_TO_AVOID: 5,
    LESSONS_LEARNED: 5,
}

# Sections whose hand-written bullets survive regeneration
MERGED_SECTIONS = (THINGS_TO_AVOID, LESSONS_LEARNED)

TIMELINE_MONTHS = 6
TIMELINE_ENTRIES_PER_MONTH = 5

_SECTION_RE = re.compile(r"^##\s+(.+?)\s*$")
_BOLD_TITLE_RE = re.compile(r"^-\s+\*\*(.+?)\*\*")


def estimate_tokens(text: str) -> int:
    """Rough size estimate (~4 characters per token). Advisory only."""
    return math.ceil(len(text) / 4)


@dataclass
class Snapshots:
    current_context: str
    full_history: str


@dataclass
class _Bullet:
    text: str
    timestamp: datetime | None = None

    @property
    def manual(self) -> bool:
        return self.timestamp is None


@dataclass
class _Section:
    header: str
    bullets: list[_Bullet] = field(default_factory=list)
    raw: list[str] = field(default_factory=list)

    def render(self) -> str:
        body = [b.text for b in self.bullets] if self.bullets else self.raw
        return f"## {self.header}\n\n" + "\n".join(body) + "\n"


def _one_line(text: str) -> str:
    return " ".join(text.split())


def _date(session: StructuredSession) -> str:
    return f"{session.timestamp:%Y-%m-%d}"


def _byline(session: StructuredSession) -> str:
    return f"({display_name(session.user)}, {_date(session)})"


# ── Bullet builders ──────────────────────────────────────────────────


def _focus_bullets(sessions: list[StructuredSession]) -> list[_Bullet]:
    return [_Bullet(f"- {_one_line(s.headline)} {_byline(s)}", s.timestamp) for s in sessions]


def _attention_bullets(sessions: list[StructuredSession]) -> list[_Bullet]:
    bullets = []
    for s in sessions:
        if s.status == "blocked":
            detail = f"blocked by {_one_line(s.blocked_by)}" if s.blocked_by else "blocked"
        elif s.status == "in-progress":
            detail = "in progress"
        else:
            continue
        if s.next_steps:
            detail += f"; next: {_one_line(s.next_steps)}"
        bullets.append(_Bullet(f"- **{_one_line(s.display_title)}** {_byline(s)}: {detail}", s.timestamp))
    return bullets


def _decision_bullets(sessions: list[StructuredSession]) -> list[_Bullet]:
    bullets = []
    for s in sessions:
        for d in s.decisions:
            text = f"- **{_one_line(d.title)}**: {_one_line(d.what)}".rstrip(": ")
            if d.why:
                text += f" Why: {_one_line(d.why)}"
            bullets.append(_Bullet(f"{text} {_byline(s)}", s.timestamp))
    return bullets


def _avoid_bullets(sessions: list[StructuredSession]) -> list[_Bullet]:
    bullets = []
    for s in sessions:
        for f in s.failures:
            cause = f.root_cause or f.what_happened or f.what_tried
            text = f"- **{_one_line(f.title)}**: {_one_line(cause)}".rstrip(": ")
            if f.resolution:
                text += f" Fix: {_one_line(f.resolution)}"
            bullets.append(_Bullet(text, s.timestamp))
    return bullets


def _lesson_bullets(sessions: list[StructuredSession]) -> list[_Bullet]:
    bullets = []
    for s in sessions:
        for lesson in s.lessons:
            text = f"- **{_one_line(lesson.title)}**: {_one_line(lesson.lesson)}".rstrip(": ")
            if lesson.when_applies:
                text += f" (applies: {_one_line(lesson.when_applies)})"
            bullets.append(_Bullet(text, s.timestamp))
    return bullets


BUILDERS = {
    CURRENT_FOCUS: _focus_bullets,
    NEEDS_ATTENTION: _attention_bullets,
    RECENT_DECISIONS: _decision_bullets,
    THINGS_TO_AVOID: _avoid_bullets,
    LESSONS_LEARNED: _lesson_bullets,
}


# ── Current context ──────────────────────────────────────────────────


def parse_sections(markdown: str) -> list[tuple[str, list[str]]]:
    """Split markdown into (## header, body lines) pairs, in document order."""
    sections: list[tuple[str, list[str]]] = []
    for line in markdown.splitlines():
        match = _SECTION_RE.match(line)
        if match:
            sections.append((match.group(1), []))
        elif sections:
            sections[-1][1].append(line)
    return [(header, _trim_blank(body)) for header, body in sections]


def _trim_blank(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _manual_bullets(body: list[str], generated: list[_Bullet]) -> list[_Bullet]:
    """Bullets from a previous context that the generator would not produce."""
    known_text = {b.text for b in generated}
    known_titles = set()
    for b in generated:
        match = _BOLD_TITLE_RE.match(b.text)
        if match:
            known_titles.add(match.group(1))

    manual = []
    for line in body:
        if not line.startswith("- ") or line in known_text:
            continue
        match = _BOLD_TITLE_RE.match(line)
        if match and match.group(1) in known_titles:
            continue
        manual.append(_Bullet(line))
    return manual


def _render_context(stamp: str, sections: list[_Section], empty: bool) -> str:
    parts = [f"# Team Context\n\n_Last synced: {stamp}_\n"]
    if empty:
        parts.append("_No sessions captured yet._\n")
    for section in sections:
        if section.bullets or section.raw:
            parts.append(section.render())
    return "\n".join(parts)


def _trim_oldest(sections: list[_Section]) -> bool:
    """Drop the oldest generated bullet anywhere. False when nothing is left."""
    oldest: tuple[_Section, int] | None = None
    for section in sections:
        for i, bullet in enumerate(section.bullets):
            if bullet.manual:
                continue
            if oldest is None or bullet.timestamp <= oldest[0].bullets[oldest[1]].timestamp:
                oldest = (section, i)
    if oldest is None:
        return False
    section, i = oldest
    del section.bullets[i]
    return True


def generate_context(
    sessions: list[StructuredSession],
    existing_context: str | None,
    stamp: str,
    budget: int,
) -> str:
    """The small digest. ``sessions`` must be ordered newest first."""
    previous = dict(parse_sections(existing_context or ""))

    sections = []
    for header, build in BUILDERS.items():
        candidates = build(sessions)
        bullets = candidates[: SECTION_LIMITS[header]]
        if header in MERGED_SECTIONS and header in previous:
            bullets = bullets + _manual_bullets(previous[header], candidates)
        sections.append(_Section(header, bullets))

    # Hand-written sections the generator does not own are carried over as-is
    for header, body in parse_sections(existing_context or ""):
        if header not in BUILDERS and body:
            sections.append(_Section(header, raw=body))

    content = _render_context(stamp, sections, not sessions)
    while estimate_tokens(content) > budget and _trim_oldest(sections):
        content = _render_context(stamp, sections, not sessions)
    if estimate_tokens(content) > budget:
        # only hand-written bullets and sections are left, and those are never trimmed
        logger.warning(
            "Context is ~%d tokens, over the %d token budget; shorten the hand-written entries in context.md",
            estimate_tokens(content),
            budget,
        )
    return content


# ── Full history ─────────────────────────────────────────────────────


def _field(label: str, value: str) -> list[str]:
    return [f"**{label}:** {value}"] if value else []


def _decision_log(sessions: list[StructuredSession]) -> list[str]:
    lines = []
    for s in sessions:
        for d in s.decisions:
            lines += ["", f"### {_one_line(d.title)}", "",
                      f"_{_date(s)} | {display_name(s.user)} | confidence: {d.confidence}_", ""]
            lines += _field("What", d.what)
            lines += _field("Why", d.why)
            lines += _field("Alternatives", "; ".join(d.alternatives))
    return lines


def _failure_log(sessions: list[StructuredSession]) -> list[str]:
    lines = []
    for s in sessions:
        for f in s.failures:
            lines += ["", f"### {_one_line(f.title)}", "",
                      f"_{_date(s)} | {display_name(s.user)} | {f.minutes_lost} min lost_", ""]
            lines += _field("What was tried", f.what_tried)
            lines += _field("What happened", f.what_happened)
            lines += _field("Root cause", f.root_cause)
            lines += _field("Resolution", f.resolution)
    return lines


def _lessons(sessions: list[StructuredSession]) -> list[str]:
    lines = []
    for s in sessions:
        for lesson in s.lessons:
            lines += ["", f"### {_one_line(lesson.title)}", "",
                      f"_{_date(s)} | {display_name(s.user)}_", ""]
            if lesson.lesson:
                lines.append(lesson.lesson)
            lines += _field("From failure", lesson.derived_from_failure)
            lines += _field("When it applies", lesson.when_applies)
    return lines


def _prompt_patterns(sessions: list[StructuredSession]) -> list[str]:
    lines = []
    for s in sessions:
        for p in s.prompt_patterns:
            lines += ["", f"### {_one_line(p.title)}", ""]
            lines += [f"> {line}" for line in p.prompt.splitlines() if line.strip()]
            if p.prompt:
                lines.append("")
            lines += _field("Why it works", p.why_effective)
            lines += _field("When to use", p.when_to_use)
    return lines


def month_heading(ts: datetime) -> str:
    return f"{MONTHS[ts.month - 1]} {ts.year}"


def _timeline(sessions: list[StructuredSession]) -> list[str]:
    months: dict[tuple[int, int], list[StructuredSession]] = {}
    for s in sessions:
        months.setdefault((s.timestamp.year, s.timestamp.month), []).append(s)

    lines = []
    for key in sorted(months, reverse=True)[:TIMELINE_MONTHS]:
        entries = months[key][:TIMELINE_ENTRIES_PER_MONTH]
        lines += ["", f"### {month_heading(entries[0].timestamp)}", ""]
        for s in entries:
            flag = f" [{s.status}]" if s.status != "complete" else ""
            lines.append(
                f"- {s.timestamp:%d} {display_name(s.user)}: **{_one_line(s.display_title)}**"
                f" {_one_line(s.headline)}{flag}"
            )
    return lines


def generate_history(sessions: list[StructuredSession], stamp: str) -> str:
    """The full encyclopedia. ``sessions`` must be ordered newest first."""
    header = f"# Team History\n\n_Last synced: {stamp}_\n"
    if not sessions:
        return header + "\n_No sessions captured yet._\n"

    counts = {
        "sessions": len(sessions),
        "decisions": sum(len(s.decisions) for s in sessions),
        "failures": sum(len(s.failures) for s in sessions),
        "lessons": sum(len(s.lessons) for s in sessions),
        "prompt patterns": sum(len(s.prompt_patterns) for s in sessions),
    }
    lines = [header, " | ".join(f"{n} {label}" for label, n in counts.items())]

    for title, build in (
        ("Decision Log", _decision_log),
        ("Failure Log", _failure_log),
        ("Lessons", _lessons),
        ("Prompt Patterns", _prompt_patterns),
        ("Timeline", _timeline),
    ):
        body = build(sessions)
        if body:
            lines += ["", f"## {title}", *body]
    return "\n".join(lines) + "\n"


def generate(
    sessions: list[StructuredSession],
    existing_context: str | None = None,
    *,
    synced_at: datetime | None = None,
    context_budget: int = 3000,
) -> Snapshots:
    """Regenerate both artifacts from the complete set of session records."""
    newest_first = sorted(sessions, key=lambda s: (s.timestamp, s.id), reverse=True)
    stamp = f"{synced_at or utcnow():%Y-%m-%d %H:%M} UTC"
    return Snapshots(
        current_context=generate_context(newest_first, existing_context, stamp, context_budget),
        full_history=generate_history(newest_first, stamp),
    )
