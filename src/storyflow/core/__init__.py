"""Ambient infrastructure: settings, logging, errors and file helpers."""

from storyflow.core.config import StoryflowSettings

__all__ = ["StoryflowSettings"]
