"""FastAPI server adapter for storyflow.

This module exposes a REST API over the story state machine and the workflow
executor.

Design intent:
- Keep business logic in `storyflow.stories` and `storyflow.workflow`
- Keep server-specific concerns (routing, status codes, request models) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from storyflow.server.app import create_app
