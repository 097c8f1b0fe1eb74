"""JSON-lines logging for the CLI and the HTTP app.

Log calls pass their context through ``extra``::

    logger.info("Story transitioned", extra={"story_id": "STORY-011", "to_state": "TODO"})

The fields that identify what a line is about (``workflow``, ``step``,
``story_id``, ``ledger``) are lifted to the top level of the JSON object so a
run or a story can be followed with a plain ``jq`` filter; any other ``extra``
keys are nested under ``"extra"``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

# Attributes every LogRecord carries; anything else on a record came from `extra`.
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

CONTEXT_FIELDS = ("workflow", "step", "story_id", "ledger")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        fields = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        for key in CONTEXT_FIELDS:
            if key in fields:
                entry[key] = fields.pop(key)
        if fields:
            entry["extra"] = fields

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        # Paths, dates and enums in `extra` are written with str().
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: IO[str] | None = None) -> None:
    """Send all storyflow logging to ``stream`` (stderr by default) as JSON lines.

    stdout is left to command output, which is itself JSON for several CLI
    commands. Handlers already on the root logger are replaced.
    """

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream=stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(level.upper())
