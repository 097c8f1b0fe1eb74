"""Parse and render the markdown story ledger.

The ledger is both the durable store and a human-edited document:

    ## BACKLOG
    ### Milestone 2.0: Advanced Features
    - [ ] **[STORY-011]** Sub-workflows support | 13 points
    ## IN PROGRESS
    - [ ] **[STORY-013]** Agent composition | 21 points | @alice | Started: 2025-10-25
    ## DONE
    - [x] **[STORY-007]** Basic setup | 5 points | Completed: 2025-10-20

Both functions here are pure text transforms. Reading and writing the file is
the state machine's job.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date

from storyflow.stories.models import (
    STORY_ID_RE,
    Story,
    StoryState,
    canonical_story_id,
)

logger = logging.getLogger(__name__)

DEFAULT_PREAMBLE = "# Workflow Status\n"

SECTION_TITLES: dict[StoryState, str] = {
    StoryState.BACKLOG: "BACKLOG",
    StoryState.TODO: "TODO",
    StoryState.IN_PROGRESS: "IN PROGRESS",
    StoryState.DONE: "DONE",
}

_SECTION_RE = re.compile(r"^##\s+(.+?)\s*$")
_MILESTONE_RE = re.compile(r"^###\s+(Milestone\b.*?)\s*$")
_ITEM_RE = re.compile(r"^-\s+\[(?P<mark>[ xX])\]\s+(?P<rest>.*)$")
_ID_RE = re.compile(r"^(?:\*\*)?\[(?P<id>[^\]]*)\](?:\*\*)?(?P<body>.*)$")
_POINTS_RE = re.compile(r"^(\d+)(?:\s*(?:points?|pts?))?$", re.IGNORECASE)
_ASSIGNEE_RE = re.compile(r"^@([\w.-]+)$")
_DATE_FIELD_RE = re.compile(r"^(due|started|completed):\s*(.*)$", re.IGNORECASE)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class LedgerLineError(ValueError):
    """A single ledger line could not be turned into a story."""


@dataclass(frozen=True, slots=True)
class ParseResult:
    stories: list[Story]
    errors: list[str]
    # Everything before the first `## ` header, re-emitted verbatim by render().
    preamble: str = ""
    # Rejected item lines per section. render() carries them through unchanged
    # so rewriting the ledger never deletes a line someone still has to fix.
    rejected: dict[StoryState, list[str]] = field(default_factory=dict)
    # Sections under an unrecognised `## ` header, header included, kept verbatim.
    extra_sections: str = ""


def _section_for(title: str) -> StoryState | None:
    for state, section_title in SECTION_TITLES.items():
        if title == section_title or title.startswith(section_title + " "):
            return state
    return None


def _parse_date(label: str, value: str) -> date:
    if not _ISO_DATE_RE.match(value):
        raise LedgerLineError(f"Invalid {label} date {value!r} (expected YYYY-MM-DD)")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise LedgerLineError(f"Invalid {label} date {value!r}") from None


def parse_story_line(line: str, state: StoryState, milestone: str | None) -> Story:
    """Parse one checklist item.

    Raises:
        LedgerLineError: If the line is a checklist item but not a valid story.
    """

    item = _ITEM_RE.match(line)
    if item is None:
        raise LedgerLineError("Expected a checklist marker '[ ]' or '[x]'")

    id_match = _ID_RE.match(item.group("rest"))
    if id_match is None:
        raise LedgerLineError("Missing bracketed story id")

    raw_id = id_match.group("id").strip()
    if not STORY_ID_RE.match(raw_id):
        raise LedgerLineError(f"Invalid story id {raw_id!r} (expected PREFIX-123)")

    parts = id_match.group("body").split("|")
    title = parts[0].strip()
    if not title:
        raise LedgerLineError(f"Story {canonical_story_id(raw_id)} has no title")

    points: int | None = None
    assignee: str | None = None
    dates: dict[str, date] = {}
    extra: list[str] = []

    for raw_field in parts[1:]:
        text = raw_field.strip()
        if not text:
            continue

        points_match = _POINTS_RE.match(text)
        if points_match:
            # A zero estimate is the ledger's way of saying "not estimated".
            value = int(points_match.group(1))
            points = value or None
            continue

        assignee_match = _ASSIGNEE_RE.match(text)
        if assignee_match:
            assignee = assignee_match.group(1)
            continue

        date_match = _DATE_FIELD_RE.match(text)
        if date_match:
            label = date_match.group(1).lower()
            dates[label] = _parse_date(label, date_match.group(2).strip())
            continue

        extra.append(text)

    return Story(
        id=canonical_story_id(raw_id),
        title=title,
        state=state,
        points=points,
        assignee=assignee,
        due_date=dates.get("due"),
        started_date=dates.get("started"),
        completed_date=dates.get("completed"),
        milestone=milestone,
        completed=item.group("mark").lower() == "x",
        extra_fields=tuple(extra),
    )


def parse(text: str) -> ParseResult:
    """Parse ledger text into stories.

    Never raises for a malformed line: the line is skipped and a message of the
    form ``"Line N: ..."`` (1-based) is collected in ``errors``.
    """

    stories: list[Story] = []
    errors: list[str] = []
    rejected: dict[StoryState, list[str]] = {}
    seen: dict[str, int] = {}
    preamble_lines: list[str] = []
    extra_lines: list[str] = []
    in_preamble = True

    current_state: StoryState | None = None
    current_milestone: str | None = None

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        stripped = raw_line.strip()

        section = _SECTION_RE.match(stripped)
        if section:
            in_preamble = False
            current_state = _section_for(section.group(1))
            current_milestone = None
            if current_state is None:
                extra_lines.append(raw_line)
            continue

        if in_preamble:
            if stripped.startswith("- ["):
                errors.append(f"Line {lineno}: Story line outside of a status section")
            preamble_lines.append(raw_line)
            continue

        if current_state is None:
            if stripped.startswith("- ["):
                errors.append(f"Line {lineno}: Story line outside of a status section")
            extra_lines.append(raw_line)
            continue

        milestone = _MILESTONE_RE.match(stripped)
        if milestone:
            current_milestone = milestone.group(1)
            continue

        if not stripped.startswith("- ["):
            continue

        try:
            story = parse_story_line(stripped, current_state, current_milestone)
        except LedgerLineError as e:
            errors.append(f"Line {lineno}: {e}")
            rejected.setdefault(current_state, []).append(stripped)
            continue

        if story.id in seen:
            errors.append(
                f"Line {lineno}: Duplicate story id {story.id} (first defined on line {seen[story.id]})"
            )
            rejected.setdefault(current_state, []).append(stripped)
            continue

        seen[story.id] = lineno
        stories.append(story)

    if errors:
        logger.warning("Ledger lines skipped", extra={"count": len(errors)})

    preamble = "\n".join(preamble_lines).strip("\n")
    extra_sections = "\n".join(extra_lines).strip("\n")
    return ParseResult(
        stories=stories,
        errors=errors,
        preamble=preamble + "\n" if preamble else "",
        rejected=rejected,
        extra_sections=extra_sections + "\n" if extra_sections else "",
    )


def format_story_line(story: Story) -> str:
    marker = "x" if story.completed else " "
    parts = [f"- [{marker}] **[{story.id}]** {story.title}"]
    if story.points is not None:
        parts.append(f"{story.points} point" if story.points == 1 else f"{story.points} points")
    if story.assignee:
        parts.append(f"@{story.assignee}")
    if story.due_date:
        parts.append(f"Due: {story.due_date.isoformat()}")
    if story.started_date:
        parts.append(f"Started: {story.started_date.isoformat()}")
    if story.completed_date:
        parts.append(f"Completed: {story.completed_date.isoformat()}")
    parts.extend(story.extra_fields)
    return " | ".join(parts)


def _group_by_milestone(stories: Iterable[Story]) -> dict[str | None, list[Story]]:
    grouped: dict[str | None, list[Story]] = {None: []}
    for story in stories:
        grouped.setdefault(story.milestone, []).append(story)
    return grouped


def render(
    stories: Iterable[Story],
    *,
    preamble: str | None = None,
    rejected: Mapping[StoryState, list[str]] | None = None,
    extra_sections: str = "",
) -> str:
    """Render stories back into ledger text.

    Sections are always emitted in lifecycle order. Within a section, stories
    without a milestone come first, then one `### <milestone>` group per
    milestone in order of first appearance. Rejected lines from a previous
    parse are appended verbatim at the end of their section, and sections with
    unrecognised headers follow DONE unchanged.
    """

    stories = list(stories)
    rejected = rejected or {}
    head = DEFAULT_PREAMBLE if preamble is None else preamble
    lines: list[str] = []
    if head.strip():
        lines.extend(head.rstrip("\n").splitlines())
        lines.append("")

    for state, title in SECTION_TITLES.items():
        lines.append(f"## {title}")
        lines.append("")
        in_section = [s for s in stories if s.state is state]
        for milestone, group in _group_by_milestone(in_section).items():
            if not group:
                continue
            if milestone is not None:
                lines.append(f"### {milestone}")
                lines.append("")
            lines.extend(format_story_line(s) for s in group)
            lines.append("")
        if rejected.get(state):
            lines.extend(rejected[state])
            lines.append("")

    if extra_sections.strip():
        lines.extend(extra_sections.rstrip("\n").splitlines())

    return "\n".join(lines).rstrip("\n") + "\n"
