"""Declarative workflow definitions loaded from YAML.

A definition file looks like::

    workflow:
      name: pm-planning
      description: Plan the next milestone
      steps:
        - name: Load stories
          action: load_state_machine
          status_file: docs/workflow-status.md
        - name: Ask for scope
          action: elicit
          prompt: What is in scope?
          variable: scope

Step keys other than ``name``, ``action``, ``condition`` and ``parameters`` are
folded into ``parameters``. Step order is kept exactly as written.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from storyflow.core.errors import WorkflowLoadError, WorkflowNotFoundError

WORKFLOW_SUFFIXES: tuple[str, ...] = (".yaml", ".yml", ".workflow.yaml")

_STEP_RESERVED_KEYS = {"name", "action", "condition", "parameters"}


class WorkflowStep(BaseModel):
    """One step: what to run (``action``) and with which ``parameters``."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    action: str = Field(min_length=1)
    condition: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_parameters(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        parameters = dict(data.get("parameters") or {})
        for key, value in data.items():
            if key not in _STEP_RESERVED_KEYS:
                parameters.setdefault(key, value)
        folded = {k: v for k, v in data.items() if k in _STEP_RESERVED_KEYS}
        folded["parameters"] = parameters
        return folded

    def param(self, key: str, default: Any = None) -> Any:
        return self.parameters.get(key, default)


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    agent: str | None = None
    phase: int | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    steps: tuple[WorkflowStep, ...]

    # Where the definition was read from; relative sub-workflow paths resolve
    # against its directory.
    source_path: Path | None = Field(default=None, exclude=True)

    @property
    def base_dir(self) -> Path:
        return self.source_path.parent if self.source_path is not None else Path.cwd()


def _describe(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "; ".join(parts)


def parse_workflow(raw: object, *, source_path: Path | None = None) -> WorkflowDefinition:
    """Validate an already-decoded definition mapping.

    Raises:
        WorkflowLoadError: If the structure is invalid or a step lacks ``name``/``action``.
    """

    if not isinstance(raw, dict):
        raise WorkflowLoadError("Invalid workflow structure: expected a mapping", source_path)

    body = raw.get("workflow", raw)
    if not isinstance(body, dict):
        raise WorkflowLoadError("Invalid workflow structure: 'workflow' must be a mapping", source_path)

    steps = body.get("steps")
    if not isinstance(steps, list):
        raise WorkflowLoadError("Invalid workflow: steps must be a list", source_path)

    for index, step in enumerate(steps):
        if not isinstance(step, dict):
            raise WorkflowLoadError(f"Invalid step #{index + 1}: expected a mapping", source_path)
        missing = [key for key in ("name", "action") if not step.get(key)]
        if missing:
            label = step.get("name") or f"#{index + 1}"
            raise WorkflowLoadError(
                f"Invalid step {label}: missing {' and '.join(missing)}", source_path
            )
        if step.get("parameters") is not None and not isinstance(step["parameters"], dict):
            raise WorkflowLoadError(
                f"Invalid step {step['name']}: parameters must be a mapping", source_path
            )

    try:
        return WorkflowDefinition.model_validate({**body, "source_path": source_path})
    except PydanticValidationError as e:
        raise WorkflowLoadError(f"Invalid workflow: {_describe(e)}", source_path) from e


def load_workflow(path: Path | str) -> WorkflowDefinition:
    """Load and validate a workflow definition file.

    Raises:
        WorkflowNotFoundError: If the file does not exist.
        WorkflowLoadError: If the file cannot be read, is not valid YAML, or
            fails validation.
    """

    path = Path(path).resolve()
    if not path.is_file():
        raise WorkflowNotFoundError(f"Workflow file not found: {path}", path)

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as e:
        raise WorkflowLoadError(f"Failed to read workflow {path}: {e}", path) from e
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"Failed to parse workflow {path}: {e}", path) from e

    return parse_workflow(raw, source_path=path)


def find_workflow(directory: Path, name: str) -> Path:
    """Resolve a workflow name to a definition file inside ``directory``.

    Raises:
        WorkflowNotFoundError: If no candidate file exists.
    """

    for suffix in WORKFLOW_SUFFIXES:
        candidate = directory / f"{name}{suffix}"
        if candidate.is_file():
            return candidate
    raise WorkflowNotFoundError(f"Workflow not found: {name} (searched {directory})", directory / name)


def resolve_workflow(reference: str, directory: Path) -> Path:
    """Accept either a path to a definition file or a bare workflow name."""

    candidate = Path(reference)
    if candidate.suffix in {".yaml", ".yml", ".json"} or candidate.is_file():
        return candidate
    return find_workflow(directory, reference)


def list_workflow_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        p for p in directory.iterdir() if p.is_file() and p.name.endswith(WORKFLOW_SUFFIXES)
    )
