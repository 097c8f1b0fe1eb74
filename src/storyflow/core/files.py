"""Atomic file replacement for ledger and checkpoint writes."""

from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path

from storyflow.core.errors import PersistenceError


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` so readers never observe a partial file.

    The content goes to a temporary file in the same directory first and is
    then moved into place with ``os.replace``. Permission bits of an existing
    ``path`` are carried over to the replacement.

    Raises:
        PersistenceError: If the directory cannot be created or the write fails.
    """

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        # mkstemp creates the file 0600; a replaced file keeps its own mode.
        if path.exists():
            os.chmod(tmp_path, stat.S_IMODE(path.stat().st_mode))
        os.replace(tmp_path, str(path))
    except OSError as e:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise PersistenceError(f"Failed to write {path}: {e}") from e
