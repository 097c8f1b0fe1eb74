"""Story lifecycle: ledger parsing/rendering and the state machine over it."""

from storyflow.stories.ledger import ParseResult, parse, render
from storyflow.stories.models import Story, StoryState, StoryStatus, ValidationResult
from storyflow.stories.state_machine import StoryStateMachine

__all__ = [
    "ParseResult",
    "Story",
    "StoryState",
    "StoryStateMachine",
    "StoryStatus",
    "ValidationResult",
    "parse",
    "render",
]
