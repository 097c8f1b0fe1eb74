"""Declarative workflows executed one checkpointed step at a time."""

from storyflow.workflow.actions import ActionRegistry, ActionResult, StepContext, default_registry
from storyflow.workflow.checkpoint import RunStatus, StateCheckpointStore, WorkflowRun
from storyflow.workflow.definition import WorkflowDefinition, WorkflowStep, load_workflow
from storyflow.workflow.executor import ExecutionResult, WorkflowExecutor

__all__ = [
    "ActionRegistry",
    "ActionResult",
    "ExecutionResult",
    "RunStatus",
    "StateCheckpointStore",
    "StepContext",
    "WorkflowDefinition",
    "WorkflowExecutor",
    "WorkflowRun",
    "WorkflowStep",
    "default_registry",
    "load_workflow",
]
