"""Durable per-workflow checkpoints.

One JSON file per workflow name, ``.<name>.state.json``, holding everything
needed to resume a run:

    {
      "workflow": "pm-planning",
      "currentStep": 3,
      "totalSteps": 5,
      "status": "in_progress",
      "startedAt": "...", "lastUpdated": "...",
      "steps": [{"id": "...", "status": "completed", ...}],
      "context": {...},
      "parentWorkflow": null,
      "childWorkflows": []
    }

The file is the only source of truth for resume; executors rebuild their state
from it on every ``initialize()``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote, unquote

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator
from pydantic import ValidationError as PydanticValidationError

from storyflow.core.errors import CheckpointError, PersistenceError, ValidationError
from storyflow.core.files import atomic_write_text

logger = logging.getLogger(__name__)

_PREFIX = "."
_SUFFIX = ".state.json"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RunStatus(str, Enum):
    NOT_STARTED = "pending"
    RUNNING = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


StepStatus = Literal["pending", "in_progress", "completed", "failed", "skipped"]
ChildStatus = Literal["running", "completed", "error"]


class StepRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: StepStatus = "pending"
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    error: str | None = None


class ChildWorkflowRef(BaseModel):
    """Parent-side record of a sub-workflow run."""

    model_config = ConfigDict(populate_by_name=True)

    workflow_path: str = Field(alias="workflowPath")
    workflow_name: str = Field(alias="workflowName")
    status: ChildStatus = "running"
    started_at: datetime = Field(alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    error: str | None = None


class WorkflowRun(BaseModel):
    """Persisted state of one workflow run."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=False)

    workflow_name: str = Field(alias="workflow", min_length=1)
    current_step_index: int = Field(default=0, ge=0, alias="currentStep")
    total_steps: int = Field(ge=0, alias="totalSteps")
    status: RunStatus = RunStatus.NOT_STARTED
    started_at: datetime = Field(default_factory=utc_now, alias="startedAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="lastUpdated")
    steps: list[StepRecord] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict, alias="context")

    # Diagnostic back-reference only; a child never consults it.
    parent_workflow: str | None = Field(default=None, alias="parentWorkflow")
    child_workflows: list[ChildWorkflowRef] = Field(default_factory=list, alias="childWorkflows")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completed(self) -> bool:
        return self.status is RunStatus.COMPLETED

    @model_validator(mode="before")
    @classmethod
    def _drop_derived(cls, data: Any) -> Any:
        if isinstance(data, dict) and "completed" in data:
            data = {k: v for k, v in data.items() if k != "completed"}
        return data

    @model_validator(mode="after")
    def _check_bounds(self) -> WorkflowRun:
        if self.current_step_index > self.total_steps:
            raise ValueError(
                f"currentStep {self.current_step_index} is beyond totalSteps {self.total_steps}"
            )
        if self.status is RunStatus.COMPLETED and self.current_step_index != self.total_steps:
            raise ValueError("a completed run must have currentStep == totalSteps")
        return self

    @classmethod
    def fresh(
        cls,
        *,
        workflow_name: str,
        step_ids: list[str],
        variables: dict[str, Any] | None = None,
        parent_workflow: str | None = None,
    ) -> WorkflowRun:
        now = utc_now()
        return cls(
            workflow_name=workflow_name,
            current_step_index=0,
            total_steps=len(step_ids),
            # An empty workflow is complete as soon as it exists.
            status=RunStatus.COMPLETED if not step_ids else RunStatus.NOT_STARTED,
            started_at=now,
            updated_at=now,
            steps=[StepRecord(id=step_id) for step_id in step_ids],
            variables=dict(variables or {}),
            parent_workflow=parent_workflow,
        )

    def child(self, workflow_path: str) -> ChildWorkflowRef | None:
        for ref in reversed(self.child_workflows):
            if ref.workflow_path == workflow_path:
                return ref
        return None

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StateCheckpointStore:
    """Read/write/delete checkpoints in one directory.

    Writes go through an atomic replace so a concurrent reader sees either the
    previous or the new checkpoint, never a partial one. Concurrent writers are
    not coordinated: the last write wins.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, run_id: str) -> Path:
        if not run_id:
            raise ValidationError("Checkpoint key must not be empty")
        # Percent-encoding with no safe characters is injective, so distinct
        # workflow names never share a file.
        return self.directory / f"{_PREFIX}{quote(run_id, safe='')}{_SUFFIX}"

    def exists(self, run_id: str) -> bool:
        return self.path_for(run_id).is_file()

    def read(self, run_id: str) -> WorkflowRun | None:
        """Return the checkpoint for ``run_id``, or None if there is none.

        Raises:
            CheckpointError: If the file exists but cannot be read or validated.
        """

        path = self.path_for(run_id)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return WorkflowRun.model_validate(raw)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Failed to read checkpoint {path}: {e}") from e
        except PydanticValidationError as e:
            raise CheckpointError(f"Invalid checkpoint {path}: {e.error_count()} error(s)") from e

    def write(self, run_id: str, run: WorkflowRun) -> Path:
        path = self.path_for(run_id)
        payload = json.dumps(run.to_json(), indent=2, ensure_ascii=False) + "\n"
        atomic_write_text(path, payload)
        logger.debug(
            "Checkpoint written",
            extra={"workflow": run_id, "current_step": run.current_step_index},
        )
        return path

    def delete(self, run_id: str) -> bool:
        """Remove the checkpoint. Returns False if there was nothing to remove."""

        path = self.path_for(run_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Failed to delete checkpoint {path}: {e}") from e
        logger.info("Checkpoint deleted", extra={"workflow": run_id})
        return True

    def list_run_ids(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        ids = []
        for entry in sorted(self.directory.iterdir(), key=lambda p: p.name):
            name = entry.name
            if entry.is_file() and name.startswith(_PREFIX) and name.endswith(_SUFFIX):
                ids.append(unquote(name[len(_PREFIX) : -len(_SUFFIX)]))
        return ids

    def list_runs(self) -> list[WorkflowRun]:
        """All readable checkpoints. Unreadable ones are logged and skipped."""

        runs: list[WorkflowRun] = []
        for run_id in self.list_run_ids():
            try:
                run = self.read(run_id)
            except CheckpointError as e:
                logger.warning(str(e), extra={"workflow": run_id})
                continue
            if run is not None:
                runs.append(run)
        return runs
