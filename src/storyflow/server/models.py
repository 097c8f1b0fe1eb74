"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class TransitionRequest(BaseModel):
    state: str = Field(min_length=1, description="BACKLOG | TODO | IN_PROGRESS | DONE")


class ExecuteRequest(BaseModel):
    mode: Literal["step", "all"] = "all"
    max_steps: int | None = Field(default=None, gt=0)
    variables: dict[str, Any] = Field(default_factory=dict)


class InputRequest(BaseModel):
    values: dict[str, Any] = Field(min_length=1)


class WorkflowSummary(BaseModel):
    name: str
    description: str
    path: str
    steps: int
    status: str | None = None
    current_step: int | None = None
