from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum


class StoryState(str, Enum):
    BACKLOG = "BACKLOG"
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"

    @classmethod
    def parse(cls, value: str | StoryState) -> StoryState:
        """Accept `in progress`, `in-progress`, `IN_PROGRESS` and the like."""

        if isinstance(value, StoryState):
            return value
        normalized = re.sub(r"[\s-]+", "_", value.strip()).upper()
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown story state: {value!r}") from None


ALLOWED_TRANSITIONS: dict[StoryState, set[StoryState]] = {
    StoryState.BACKLOG: {StoryState.TODO},
    StoryState.TODO: {StoryState.IN_PROGRESS, StoryState.BACKLOG},
    StoryState.IN_PROGRESS: {StoryState.DONE, StoryState.TODO},
    StoryState.DONE: set(),
}

# Work-in-progress limits. Exceeding them is reported, not blocked, unless the
# state machine is created with hard enforcement.
WIP_LIMITS: dict[StoryState, int] = {
    StoryState.TODO: 1,
    StoryState.IN_PROGRESS: 1,
}

STORY_ID_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*-\d+$")


def is_story_id(value: str) -> bool:
    return bool(STORY_ID_RE.match(value.strip()))


def canonical_story_id(value: str) -> str:
    return value.strip().upper()


@dataclass(frozen=True, slots=True)
class Story:
    """A single ledger item.

    Stories are immutable; the state machine swaps in updated copies so that a
    failed transition can never leave a half-applied change behind.
    """

    id: str
    title: str
    state: StoryState
    points: int | None = None
    assignee: str | None = None
    due_date: date | None = None
    started_date: date | None = None
    completed_date: date | None = None
    milestone: str | None = None
    completed: bool = False
    # Metadata fields the parser does not interpret, kept so rendering is lossless.
    extra_fields: tuple[str, ...] = field(default=())

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.value,
            "points": self.points,
            "assignee": self.assignee,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "startedDate": self.started_date.isoformat() if self.started_date else None,
            "completedDate": self.completed_date.isoformat() if self.completed_date else None,
            "milestone": self.milestone,
            "completed": self.completed,
        }


@dataclass(frozen=True, slots=True)
class StoryStatus:
    """Stories grouped by lifecycle state, in ledger order."""

    backlog: tuple[Story, ...] = ()
    todo: tuple[Story, ...] = ()
    in_progress: tuple[Story, ...] = ()
    done: tuple[Story, ...] = ()

    @staticmethod
    def from_stories(stories: list[Story] | tuple[Story, ...]) -> StoryStatus:
        return StoryStatus(
            backlog=tuple(s for s in stories if s.state is StoryState.BACKLOG),
            todo=tuple(s for s in stories if s.state is StoryState.TODO),
            in_progress=tuple(s for s in stories if s.state is StoryState.IN_PROGRESS),
            done=tuple(s for s in stories if s.state is StoryState.DONE),
        )

    def by_state(self, state: StoryState) -> tuple[Story, ...]:
        return {
            StoryState.BACKLOG: self.backlog,
            StoryState.TODO: self.todo,
            StoryState.IN_PROGRESS: self.in_progress,
            StoryState.DONE: self.done,
        }[state]

    def counts(self) -> dict[str, int]:
        return {
            "backlog": len(self.backlog),
            "todo": len(self.todo),
            "inProgress": len(self.in_progress),
            "done": len(self.done),
            "total": len(self.backlog) + len(self.todo) + len(self.in_progress) + len(self.done),
            "todoLimit": WIP_LIMITS[StoryState.TODO],
            "inProgressLimit": WIP_LIMITS[StoryState.IN_PROGRESS],
        }

    def to_json(self) -> dict[str, object]:
        return {
            "backlog": [s.to_json() for s in self.backlog],
            "todo": [s.to_json() for s in self.todo],
            "inProgress": [s.to_json() for s in self.in_progress],
            "done": [s.to_json() for s in self.done],
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    valid: bool
    errors: list[str]
