"""Resumable, step-at-a-time workflow execution.

Run lifecycle:

    NOT_STARTED -> RUNNING -> COMPLETED
                      |  ^
                      v  |
                     FAILED   (a retry re-runs the failed step)

Each call to ``execute_next_step()`` runs exactly one step and persists the
checkpoint before returning, so a crash loses at most the step in flight. A run
is "paused" whenever it is not completed and nobody is driving it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from storyflow.core.errors import (
    CheckpointMismatchError,
    CircularWorkflowError,
    StoryflowError,
    UnknownActionError,
    WorkflowNotInitializedError,
)
from storyflow.workflow.actions import ActionRegistry, ActionResult, StepContext, default_registry
from storyflow.workflow.checkpoint import (
    ChildWorkflowRef,
    RunStatus,
    StateCheckpointStore,
    StepRecord,
    WorkflowRun,
    utc_now,
)
from storyflow.workflow.conditions import ConditionEvaluationError, evaluate_condition, resolve_variables
from storyflow.workflow.definition import WorkflowDefinition, WorkflowStep, load_workflow

logger = logging.getLogger(__name__)

PARENT_WORKFLOW_VAR = "PARENT_WORKFLOW"
WORKFLOW_DEPTH_VAR = "WORKFLOW_DEPTH"


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    success: bool
    message: str
    state: WorkflowRun | None = None
    error: Exception | None = None
    awaiting_input: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "state": self.state.to_json() if self.state is not None else None,
            "error": str(self.error) if self.error is not None else None,
            "awaitingInput": self.awaiting_input,
        }


def _workflow_key(workflow: WorkflowDefinition) -> str:
    if workflow.source_path is not None:
        return str(workflow.source_path.resolve())
    return workflow.name


class WorkflowExecutor:
    """Drives one workflow run against its checkpoint.

    The checkpoint file is the source of truth: ``initialize()`` always rebuilds
    the in-memory run from it, so a fresh executor in a new process picks up
    exactly where the last one stopped.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        store: StateCheckpointStore,
        actions: ActionRegistry | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        ancestry: tuple[str, ...] = (),
    ) -> None:
        self.workflow = workflow
        self.store = store
        self.actions = actions if actions is not None else default_registry()
        self._clock = clock
        # Workflows currently executing above this one, outermost first.
        self._ancestry = ancestry
        self._run: WorkflowRun | None = None

    @property
    def run_id(self) -> str:
        return self.workflow.name

    @property
    def state(self) -> WorkflowRun | None:
        return self._run

    @property
    def is_initialized(self) -> bool:
        return self._run is not None

    def initialize(self) -> WorkflowRun:
        """Load the checkpoint, or create a fresh one at step 0.

        Idempotent: once a checkpoint exists every call simply reloads it.

        Raises:
            CheckpointError: The checkpoint exists but is unreadable.
            CheckpointMismatchError: The checkpoint belongs to a different
                workflow or a different number of steps.
        """

        existing = self.store.read(self.run_id)
        if existing is not None:
            self._check_matches(existing)
            self._run = existing
            logger.debug(
                "Checkpoint loaded",
                extra={"workflow": self.run_id, "current_step": existing.current_step_index},
            )
            return existing
        return self._start_fresh(dict(self.workflow.variables))

    def execute_next_step(self) -> ExecutionResult:
        """Run the step at ``currentStep`` and persist the outcome.

        Raises:
            WorkflowNotInitializedError: ``initialize()`` has not been called.
            PersistenceError: The checkpoint could not be written.
        """

        run = self._require_run()

        if run.status is RunStatus.COMPLETED:
            return ExecutionResult(
                success=True, message="Workflow already completed", state=self._snapshot()
            )

        index = run.current_step_index
        step = self.workflow.steps[index]
        record = run.steps[index]

        started = self._clock()
        record.status = "in_progress"
        record.started_at = started
        record.completed_at = None
        record.error = None
        run.status = RunStatus.RUNNING
        run.updated_at = started
        self._save()

        extra = {"workflow": self.run_id, "step": step.name, "step_index": index}

        if step.condition and not self._should_run(step.condition, step.name):
            logger.info("Step skipped", extra=extra)
            record.status = "skipped"
            self._advance(record)
            return ExecutionResult(
                success=True, message=f'Step "{step.name}" skipped', state=self._snapshot()
            )

        result, error = self._dispatch(step, run)

        if not result.ok:
            record.status = "failed"
            record.error = result.message
            record.completed_at = self._clock()
            run.status = RunStatus.FAILED
            run.updated_at = record.completed_at
            self._save()
            logger.warning("Step failed", extra={**extra, "error": result.message})
            return ExecutionResult(
                success=False,
                message=f'Step "{step.name}" failed: {result.message}',
                state=self._snapshot(),
                error=error,
                awaiting_input=result.awaiting_input,
            )

        run.variables.update(result.variables)
        record.status = "completed"
        self._advance(record)
        logger.info("Step completed", extra=extra)
        return ExecutionResult(
            success=True, message=f'Step "{step.name}" completed', state=self._snapshot()
        )

    def resume(self) -> ExecutionResult:
        """Reload the checkpoint and run the next pending (or last failed) step."""

        self.initialize()
        return self.execute_next_step()

    def run_to_completion(self, max_steps: int | None = None) -> ExecutionResult:
        """Call ``execute_next_step()`` until the run completes or a step fails.

        Args:
            max_steps: Stop after this many steps even if the run is not done.
        """

        run = self._require_run()
        if run.status is RunStatus.COMPLETED:
            return ExecutionResult(
                success=True, message="Workflow already completed", state=self._snapshot()
            )

        executed = 0
        while True:
            result = self.execute_next_step()
            executed += 1
            if not result.success or result.state is None or result.state.completed:
                return result
            if max_steps is not None and executed >= max_steps:
                return result

    def reset(self) -> bool:
        """Delete the checkpoint. The next ``initialize()`` starts at step 0."""

        self._run = None
        removed = self.store.delete(self.run_id)
        logger.info("Workflow reset", extra={"workflow": self.run_id, "removed": removed})
        return removed

    def provide_input(self, **values: Any) -> WorkflowRun:
        """Record caller-supplied variables (e.g. answers to an ``elicit`` step)."""

        run = self._require_run()
        run.variables.update(values)
        run.updated_at = self._clock()
        self._save()
        logger.info("Input provided", extra={"workflow": self.run_id, "variables": sorted(values)})
        return run

    def run_child(self, workflow_path: str, context_vars: dict[str, Any]) -> ActionResult:
        """Run a sub-workflow to completion on behalf of the current step.

        The child starts from the parent's variables plus ``context_vars``. If
        the parent already recorded this child as running or failed and the
        child's checkpoint is not complete, the child resumes instead.

        Raises:
            CircularWorkflowError: The child is already executing further up.
            WorkflowLoadError: The child definition cannot be loaded.
        """

        run = self._require_run()
        child_def = load_workflow(self._resolve_path(workflow_path))
        child_key = _workflow_key(child_def)
        chain = (*self._ancestry, _workflow_key(self.workflow))
        if child_key in chain:
            names = [Path(key).name for key in (*chain, child_key)]
            raise CircularWorkflowError(f"Circular workflow detected: {' -> '.join(names)}")

        child = WorkflowExecutor(
            child_def,
            self.store,
            self.actions,
            clock=self._clock,
            ancestry=chain,
        )

        inherited = dict(run.variables)
        inherited.update(context_vars)
        inherited[PARENT_WORKFLOW_VAR] = self.workflow.name
        inherited[WORKFLOW_DEPTH_VAR] = int(run.variables.get(WORKFLOW_DEPTH_VAR) or 0) + 1

        previous = run.child(workflow_path)
        child_run = self.store.read(child.run_id) if previous is not None else None
        if (
            previous is not None
            and previous.status in ("running", "error")
            and child_run is not None
            and not child_run.completed
        ):
            child.initialize()
            # Anything the caller supplied to the parent since the child stopped.
            missing = {k: v for k, v in inherited.items() if k not in child_run.variables}
            if missing:
                child.provide_input(**missing)
            ref = previous
            ref.status = "running"
            ref.error = None
            ref.completed_at = None
            logger.info("Resuming sub-workflow", extra={"workflow": self.run_id, "child": child.run_id})
        else:
            self.store.delete(child.run_id)
            child._start_fresh(inherited, parent_workflow=self.workflow.name)
            ref = ChildWorkflowRef(
                workflow_path=workflow_path,
                workflow_name=child_def.name,
                status="running",
                started_at=self._clock(),
            )
            run.child_workflows.append(ref)
            logger.info("Starting sub-workflow", extra={"workflow": self.run_id, "child": child.run_id})
        run.updated_at = self._clock()
        self._save()

        result = child.run_to_completion()

        ref.completed_at = self._clock()
        run.updated_at = ref.completed_at
        if not result.success:
            ref.status = "error"
            ref.error = result.message
            self._save()
            return ActionResult(
                ok=False,
                message=f"Sub-workflow {child_def.name} failed: {result.message}",
                awaiting_input=result.awaiting_input,
            )

        ref.status = "completed"
        self._save()
        return ActionResult(ok=True, message=f"Sub-workflow {child_def.name} completed")

    def hierarchy(self) -> dict[str, Any]:
        """Tree of this run and its recorded sub-workflows, read from checkpoints."""

        run = self._require_run()
        return self._hierarchy_node(self.workflow, run, visited={_workflow_key(self.workflow)})

    def _hierarchy_node(
        self, workflow: WorkflowDefinition, run: WorkflowRun, *, visited: set[str]
    ) -> dict[str, Any]:
        children: list[dict[str, Any]] = []
        for ref in run.child_workflows:
            try:
                child_def = load_workflow(_resolve_against(workflow, ref.workflow_path))
            except StoryflowError as e:
                logger.warning(
                    "Failed to load sub-workflow for hierarchy",
                    extra={"workflow": workflow.name, "child": ref.workflow_path, "error": str(e)},
                )
                continue
            key = _workflow_key(child_def)
            if key in visited:
                continue
            try:
                child_run = self.store.read(child_def.name)
            except StoryflowError as e:
                logger.warning(
                    "Failed to read sub-workflow checkpoint",
                    extra={"workflow": workflow.name, "child": child_def.name, "error": str(e)},
                )
                child_run = None
            if child_run is None:
                children.append(_hierarchy_leaf(child_def, ref))
                continue
            children.append(self._hierarchy_node(child_def, child_run, visited=visited | {key}))

        return {
            "workflow": workflow.name,
            "status": run.status.value,
            "currentStep": run.current_step_index,
            "totalSteps": run.total_steps,
            "depth": int(run.variables.get(WORKFLOW_DEPTH_VAR) or 0),
            "children": children,
        }

    def _start_fresh(
        self, variables: dict[str, Any], *, parent_workflow: str | None = None
    ) -> WorkflowRun:
        run = WorkflowRun.fresh(
            workflow_name=self.workflow.name,
            step_ids=[step.name for step in self.workflow.steps],
            variables=variables,
            parent_workflow=parent_workflow,
        )
        now = self._clock()
        run.started_at = now
        run.updated_at = now
        self._run = run
        self._save()
        logger.info(
            "Workflow initialized",
            extra={"workflow": self.run_id, "total_steps": run.total_steps},
        )
        return run

    def _check_matches(self, run: WorkflowRun) -> None:
        if run.workflow_name != self.workflow.name:
            raise CheckpointMismatchError(
                f"Checkpoint belongs to workflow {run.workflow_name!r}, not {self.workflow.name!r}"
            )
        if run.total_steps != len(self.workflow.steps) or len(run.steps) != run.total_steps:
            raise CheckpointMismatchError(
                f"Checkpoint for {self.workflow.name!r} has {run.total_steps} steps, "
                f"definition has {len(self.workflow.steps)}; reset the workflow to start over"
            )

    def _should_run(self, condition: str, step_name: str) -> bool:
        try:
            return evaluate_condition(condition, self._require_run().variables, strict=False)
        except ConditionEvaluationError as e:
            logger.warning(
                "Invalid step condition, skipping step",
                extra={"workflow": self.run_id, "step": step_name, "error": str(e)},
            )
            return False

    def _dispatch(self, step: WorkflowStep, run: WorkflowRun) -> tuple[ActionResult, Exception | None]:
        try:
            action = self.actions.resolve(step.action)
        except UnknownActionError as e:
            return ActionResult(ok=False, message=str(e)), e

        ctx = StepContext(
            workflow=self.workflow,
            run=run,
            executor=self,
            parameters=resolve_variables(step.parameters, run.variables),
        )
        try:
            return action.execute(step, ctx), None
        except StoryflowError as e:
            logger.warning(
                "Step action rejected",
                extra={"workflow": self.run_id, "step": step.name, "error": str(e)},
            )
            return ActionResult(ok=False, message=str(e)), e
        except Exception as e:
            logger.exception(
                "Step action raised",
                extra={"workflow": self.run_id, "step": step.name, "action": step.action},
            )
            return ActionResult(ok=False, message=str(e) or type(e).__name__), e

    def _advance(self, record: StepRecord) -> None:
        run = self._require_run()
        now = self._clock()
        record.completed_at = now
        run.current_step_index += 1
        run.status = (
            RunStatus.COMPLETED
            if run.current_step_index >= run.total_steps
            else RunStatus.RUNNING
        )
        run.updated_at = now
        self._save()

    def _resolve_path(self, workflow_path: str) -> Path:
        return _resolve_against(self.workflow, workflow_path)

    def _snapshot(self) -> WorkflowRun:
        return self._require_run().model_copy(deep=True)

    def _require_run(self) -> WorkflowRun:
        if self._run is None:
            raise WorkflowNotInitializedError(
                f"Workflow {self.workflow.name!r} is not initialized; call initialize() first"
            )
        return self._run

    def _save(self) -> None:
        self.store.write(self.run_id, self._require_run())


def _resolve_against(workflow: WorkflowDefinition, workflow_path: str) -> Path:
    path = Path(workflow_path)
    if path.is_absolute():
        return path
    return workflow.base_dir / path


def _hierarchy_leaf(workflow: WorkflowDefinition, ref: ChildWorkflowRef) -> dict[str, Any]:
    return {
        "workflow": workflow.name,
        "status": ref.status,
        "currentStep": 0,
        "totalSteps": len(workflow.steps),
        "depth": 0,
        "children": [],
    }
