"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import yaml

from storyflow.workflow.checkpoint import StateCheckpointStore

SAMPLE_LEDGER = """\
# Workflow Status

## BACKLOG

### Milestone 2.0: Advanced Features

- [ ] **[STORY-011]** Sub-workflows support | 13 points
- [ ] **[STORY-012]** Nested templates | 8 points | @bob

## TODO

## IN PROGRESS

- [ ] **[STORY-013]** Agent composition | 21 points | @alice | Started: 2025-10-25

## DONE

- [x] **[STORY-007]** Basic setup | 5 points | Completed: 2025-10-20
"""

FIXED_TODAY = date(2025, 11, 1)


@pytest.fixture
def sample_ledger() -> str:
    return SAMPLE_LEDGER


@pytest.fixture
def ledger_path(tmp_path: Path) -> Path:
    """Provide a ledger file seeded with the sample stories."""
    path = tmp_path / "docs" / "workflow-status.md"
    path.parent.mkdir(parents=True)
    path.write_text(SAMPLE_LEDGER, encoding="utf-8")
    return path


@pytest.fixture
def today() -> Callable[[], date]:
    return lambda: FIXED_TODAY


@pytest.fixture
def clock() -> Callable[[], datetime]:
    """A monotonically increasing fake UTC clock."""
    start = datetime(2025, 11, 1, 9, 0, tzinfo=UTC)
    ticks = iter(range(1_000_000))
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide a temporary checkpoint directory."""
    path = tmp_path / "state" / "workflows"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def store(state_dir: Path) -> StateCheckpointStore:
    return StateCheckpointStore(state_dir)


@pytest.fixture
def workflows_dir(tmp_path: Path) -> Path:
    path = tmp_path / "workflows"
    path.mkdir()
    return path


@pytest.fixture
def write_workflow(workflows_dir: Path) -> Callable[..., Path]:
    """Write a workflow definition as YAML and return its path."""

    def _write(name: str, steps: list[dict[str, Any]], **fields: Any) -> Path:
        body = {"name": name, "description": f"{name} workflow", **fields, "steps": steps}
        path = workflows_dir / f"{name}.yaml"
        path.write_text(yaml.safe_dump({"workflow": body}, sort_keys=False), encoding="utf-8")
        return path

    return _write
