"""Story lifecycle state machine backed by the markdown ledger.

Legal moves:

    BACKLOG -> TODO -> IN_PROGRESS -> DONE
               TODO -> BACKLOG
                       IN_PROGRESS -> TODO

DONE is terminal. Every successful transition re-reads the ledger, applies the
change and writes the whole ledger back before returning.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import date
from pathlib import Path

from storyflow.core import errors
from storyflow.core.files import atomic_write_text
from storyflow.stories.ledger import ParseResult, parse, render
from storyflow.stories.models import (
    ALLOWED_TRANSITIONS,
    WIP_LIMITS,
    Story,
    StoryState,
    StoryStatus,
    ValidationResult,
    canonical_story_id,
)

logger = logging.getLogger(__name__)

_SECTION_LABELS: dict[StoryState, str] = {
    StoryState.TODO: "TODO",
    StoryState.IN_PROGRESS: "IN PROGRESS",
}


def apply_transition(story: Story, to: StoryState, *, today: date) -> Story:
    """Return a copy of ``story`` moved to ``to`` with its bookkeeping updated.

    Does not check legality; see :func:`is_legal_transition`.
    """

    if to is StoryState.DONE:
        return dataclasses.replace(story, state=to, completed=True, completed_date=today)

    started = story.started_date
    if to is StoryState.IN_PROGRESS and started is None:
        started = today
    return dataclasses.replace(
        story,
        state=to,
        completed=False,
        completed_date=None,
        started_date=started,
    )


def is_legal_transition(current: StoryState, to: StoryState) -> bool:
    return to in ALLOWED_TRANSITIONS.get(current, set())


class StoryStateMachine:
    """Owns the story set of one ledger file.

    One instance is assumed to be the only writer of its ledger for the
    duration of a command. There is no locking across processes.
    """

    def __init__(
        self,
        ledger_path: Path,
        *,
        enforce_wip_limits: bool = False,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.ledger_path = Path(ledger_path)
        self.enforce_wip_limits = enforce_wip_limits
        self._today = today
        self._stories: list[Story] = []
        self._parsed = ParseResult(stories=[], errors=[])
        self._loaded = False

    def load(self) -> StoryStatus:
        """Read and parse the ledger.

        Raises:
            LedgerNotFoundError: If the ledger file does not exist.
            LoadError: If the ledger cannot be read or decoded.
        """

        if not self.ledger_path.exists():
            raise errors.LedgerNotFoundError(f"Ledger file not found: {self.ledger_path}")

        try:
            text = self.ledger_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise errors.LoadError(f"Failed to load ledger {self.ledger_path}: {e}") from e

        self._parsed = parse(text)
        self._stories = list(self._parsed.stories)
        self._loaded = True

        for message in self._parsed.errors:
            logger.warning(message, extra={"ledger": str(self.ledger_path)})

        logger.debug(
            "Ledger loaded",
            extra={"ledger": str(self.ledger_path), "stories": len(self._stories)},
        )
        return self.get_status()

    @property
    def parse_errors(self) -> list[str]:
        return list(self._parsed.errors)

    def get_status(self) -> StoryStatus:
        self._ensure_loaded()
        return StoryStatus.from_stories(self._stories)

    def get_story(self, story_id: str) -> Story | None:
        self._ensure_loaded()
        wanted = canonical_story_id(story_id)
        for story in self._stories:
            if story.id == wanted:
                return story
        return None

    def current_todo(self) -> Story | None:
        todo = self.get_status().todo
        return todo[0] if todo else None

    def current_in_progress(self) -> Story | None:
        in_progress = self.get_status().in_progress
        return in_progress[0] if in_progress else None

    def can_transition(self, story_id: str, to: StoryState | str) -> bool:
        try:
            target = StoryState.parse(to)
        except ValueError:
            return False
        story = self.get_story(story_id)
        if story is None:
            return False
        return is_legal_transition(story.state, target)

    def transition(self, story_id: str, to: StoryState | str) -> Story:
        """Move a story to ``to`` and persist the ledger.

        Nothing is changed, in memory or on disk, if any check or the write fails.

        Raises:
            StoryNotFoundError: Unknown story id.
            IllegalTransitionError: The edge is not in the lifecycle graph.
            WipLimitError: Hard enforcement is on and the target state is full.
            PersistenceError: The ledger could not be written.
        """

        try:
            target = StoryState.parse(to)
        except ValueError as e:
            raise errors.IllegalTransitionError(str(e)) from None

        # Always start from what is on disk, never from a stale cache.
        self.load()

        story = self.get_story(story_id)
        if story is None:
            raise errors.StoryNotFoundError(canonical_story_id(story_id))

        if not is_legal_transition(story.state, target):
            raise errors.IllegalTransitionError(
                f"Illegal transition: {story.state.value} -> {target.value} for story {story.id}"
            )

        if self.enforce_wip_limits and target in WIP_LIMITS:
            occupants = self.get_status().by_state(target)
            if len(occupants) >= WIP_LIMITS[target]:
                raise errors.WipLimitError(
                    f"Cannot move {story.id} to {_SECTION_LABELS[target]}: "
                    f"already has {len(occupants)} story (limit {WIP_LIMITS[target]})"
                )

        updated = apply_transition(story, target, today=self._today())
        stories = [s for s in self._stories if s.id != story.id]
        stories.append(updated)

        text = render(
            stories,
            preamble=self._parsed.preamble,
            rejected=self._parsed.rejected,
            extra_sections=self._parsed.extra_sections,
        )
        atomic_write_text(self.ledger_path, text)
        self._stories = stories

        logger.info(
            "Story transitioned",
            extra={"story_id": story.id, "from_state": story.state.value, "to_state": target.value},
        )

        result = self.validate()
        if not result.valid:
            logger.warning(
                "Ledger violates work-in-progress rules",
                extra={"story_id": story.id, "violations": result.errors},
            )
        return updated

    def validate(self) -> ValidationResult:
        """Report WIP-limit and per-story consistency violations without raising."""

        self._ensure_loaded()
        status = StoryStatus.from_stories(self._stories)
        problems: list[str] = []

        for state, limit in WIP_LIMITS.items():
            count = len(status.by_state(state))
            if count > limit:
                problems.append(
                    f"Too many stories in {_SECTION_LABELS[state]}: {count} (expected {limit})"
                )

        for story in self._stories:
            if story.completed and story.state is not StoryState.DONE:
                problems.append(
                    f"Story {story.id} is checked off but is in {story.state.value}, not DONE"
                )
            elif not story.completed and story.state is StoryState.DONE:
                problems.append(f"Story {story.id} is in DONE but is not checked off")

        return ValidationResult(valid=not problems, errors=problems)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()
