from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from storyflow.core.errors import PersistenceError
from storyflow.core.files import atomic_write_text


@pytest.mark.parametrize("mode", [0o644, 0o640, 0o664])
def test_rewrite_keeps_existing_permissions(tmp_path: Path, mode: int) -> None:
    path = tmp_path / "workflow-status.md"
    path.write_text("old\n", encoding="utf-8")
    os.chmod(path, mode)

    atomic_write_text(path, "new\n")

    assert path.read_text(encoding="utf-8") == "new\n"
    assert stat.S_IMODE(path.stat().st_mode) == mode


def test_write_creates_parent_directories_and_leaves_no_temp_files(tmp_path: Path) -> None:
    path = tmp_path / "state" / "nested" / ".run.state.json"

    atomic_write_text(path, "{}\n")

    assert path.read_text(encoding="utf-8") == "{}\n"
    assert [p.name for p in path.parent.iterdir()] == [path.name]


def test_write_into_a_file_path_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")

    with pytest.raises(PersistenceError, match="Failed to write"):
        atomic_write_text(blocker / "ledger.md", "x\n")
