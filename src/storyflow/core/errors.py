"""Error taxonomy shared by the story and workflow engines.

Callers usually catch one of the four broad categories:
- :class:`NotFoundError`
- :class:`ValidationError`
- :class:`PersistenceError`
- :class:`StoryflowError` (everything)

The concrete classes below multiply-inherit so that, for example, an illegal
story transition is both a :class:`StateMachineError` and a
:class:`ValidationError`.
"""

from __future__ import annotations


class StoryflowError(Exception):
    pass


class NotFoundError(StoryflowError):
    pass


class ValidationError(StoryflowError):
    pass


class PersistenceError(StoryflowError):
    pass


class StateMachineError(StoryflowError):
    pass


class LoadError(StateMachineError):
    pass


class LedgerNotFoundError(LoadError, NotFoundError):
    pass


class StoryNotFoundError(StateMachineError, NotFoundError):
    def __init__(self, story_id: str) -> None:
        super().__init__(f"Story not found: {story_id}")
        self.story_id = story_id


class IllegalTransitionError(StateMachineError, ValidationError):
    pass


class WipLimitError(StateMachineError, ValidationError):
    pass


class WorkflowLoadError(ValidationError):
    def __init__(self, message: str, path: object = None) -> None:
        super().__init__(message)
        self.path = path


class WorkflowNotFoundError(WorkflowLoadError, NotFoundError):
    pass


class CheckpointError(PersistenceError):
    pass


class CheckpointMismatchError(ValidationError):
    pass


class UnknownActionError(ValidationError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Unknown action: {action}")
        self.action = action


class CircularWorkflowError(ValidationError):
    pass


class WorkflowNotInitializedError(StoryflowError):
    pass
