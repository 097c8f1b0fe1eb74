"""Storyflow.

Two independent, file-backed engines:
- a story lifecycle state machine over a markdown checklist ledger
- a resumable workflow step executor with JSON checkpoints
"""

__version__ = "0.1.0"

from storyflow.core.config import StoryflowSettings

__all__ = ["__version__", "StoryflowSettings"]
