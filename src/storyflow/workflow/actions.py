from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from storyflow.core.errors import StoryflowError, UnknownActionError
from storyflow.stories.state_machine import StoryStateMachine
from storyflow.workflow.checkpoint import WorkflowRun
from storyflow.workflow.conditions import ConditionEvaluationError, evaluate_condition
from storyflow.workflow.definition import WorkflowDefinition, WorkflowStep

if TYPE_CHECKING:
    from storyflow.workflow.executor import WorkflowExecutor

logger = logging.getLogger(__name__)

ROUTING_LEVELS = range(0, 5)

_LEVEL_RE = re.compile(r"(?:level[_-]?)?(-?\d+)", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class ActionResult:
    ok: bool
    message: str
    # Merged into the run variables when ``ok`` is true.
    variables: dict[str, Any] = field(default_factory=dict)
    # Name of the variable the step is waiting for, if it failed for lack of input.
    awaiting_input: str | None = None


@dataclass(frozen=True, slots=True)
class StepContext:
    """What a step action may look at while it runs.

    ``parameters`` are the step parameters with ``{{var}}`` references already
    substituted; ``step.parameters`` holds the raw values.
    """

    workflow: WorkflowDefinition
    run: WorkflowRun
    executor: WorkflowExecutor
    parameters: dict[str, Any]

    @property
    def variables(self) -> dict[str, Any]:
        return self.run.variables

    def param(self, key: str, default: Any = None) -> Any:
        return self.parameters.get(key, default)


class StepAction(Protocol):
    """One kind of step, addressed by the ``action`` name in a definition."""

    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult: ...


@dataclass(frozen=True, slots=True)
class GuideAction(StepAction):
    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        guidance = ctx.param("prompt") or ctx.param("message")
        if guidance:
            logger.info("Guidance", extra={"workflow": ctx.workflow.name, "step": step.name})
        return ActionResult(ok=True, message=str(guidance or step.name))


@dataclass(frozen=True, slots=True)
class DisplayAction(StepAction):
    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        message = ctx.param("message")
        if not message:
            return ActionResult(ok=False, message="Display step requires message")
        return ActionResult(ok=True, message=str(message))


@dataclass(frozen=True, slots=True)
class ElicitAction(StepAction):
    """Wait for a value the caller must supply.

    The step succeeds once ``variable`` is present in the run; until then it
    fails with ``awaiting_input`` set so the caller can ask for it and resume.
    """

    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        prompt = ctx.param("prompt")
        variable = ctx.param("variable")
        if not prompt:
            return ActionResult(ok=False, message="Elicit step requires prompt")
        if not variable:
            return ActionResult(ok=False, message="Elicit step requires variable")

        if variable in ctx.variables:
            return ActionResult(ok=True, message=f"Input received for {variable}")
        return ActionResult(
            ok=False,
            message=f"Input required: {prompt}",
            awaiting_input=str(variable),
        )


@dataclass(frozen=True, slots=True)
class ValidateAction(StepAction):
    """Fail the step unless ``check`` holds.

    ``check`` uses the condition syntax. The step-level ``condition`` is still
    the guard deciding whether the step runs at all.
    """

    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        # The raw expression: references are bound by the evaluator, not pasted in.
        check = step.param("check")
        if not check:
            return ActionResult(ok=False, message="Validate step requires check")

        try:
            passed = evaluate_condition(str(check), ctx.variables, strict=False)
        except ConditionEvaluationError as e:
            return ActionResult(ok=False, message=str(e))

        if not passed:
            error_message = ctx.param("error_message") or f"Validation failed: {check}"
            return ActionResult(ok=False, message=str(error_message))
        return ActionResult(ok=True, message="Validation passed")


@dataclass(frozen=True, slots=True)
class SetVariablesAction(StepAction):
    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        values = ctx.param("variables")
        if not isinstance(values, Mapping):
            return ActionResult(ok=False, message="set_variables step requires a 'variables' mapping")
        return ActionResult(ok=True, message=f"Set {len(values)} variable(s)", variables=dict(values))


@dataclass(frozen=True, slots=True)
class LoadStateMachineAction(StepAction):
    """Expose the current TODO / IN PROGRESS stories as run variables."""

    default_ledger: Path | None = None

    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        status_file = ctx.param("status_file") or self.default_ledger
        if not status_file:
            return ActionResult(ok=False, message="Load state machine step requires status_file")

        machine = StoryStateMachine(Path(status_file))
        try:
            status = machine.load()
        except StoryflowError as e:
            return ActionResult(ok=False, message=f"Failed to load state machine: {e}")

        variables: dict[str, Any] = {"story_counts": status.counts()}
        for prefix, stories in (("todo", status.todo), ("in_progress", status.in_progress)):
            if stories:
                story = stories[0]
                variables[f"{prefix}_story_id"] = story.id
                variables[f"{prefix}_story_title"] = story.title
                variables[f"{prefix}_story_points"] = story.points or 0

        return ActionResult(
            ok=True,
            message=(
                f"State machine loaded: TODO {len(status.todo)}, "
                f"IN PROGRESS {len(status.in_progress)}"
            ),
            variables=variables,
        )


@dataclass(frozen=True, slots=True)
class SubWorkflowAction(StepAction):
    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        workflow_path = ctx.param("workflow_path") or ctx.param("workflow")
        if not workflow_path:
            return ActionResult(ok=False, message="Sub-workflow step requires workflow_path")

        context_vars = ctx.param("context_vars") or {}
        if not isinstance(context_vars, Mapping):
            return ActionResult(ok=False, message="context_vars must be a mapping")

        return ctx.executor.run_child(str(workflow_path), dict(context_vars))


def _routing_level(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    match = _LEVEL_RE.search(str(value))
    return int(match.group(1)) if match else None


@dataclass(frozen=True, slots=True)
class RouteAction(StepAction):
    """Pick sub-workflows by complexity level and run them in order.

    ::

        - name: Route by complexity
          action: route
          level: "{{complexity_level}}"
          routing:
            level_0: [quick-fix.yaml]
            level_2:
              workflows: [prd.yaml, architecture.yaml]
            default: [standard.yaml]

    ``level`` is a number from 0 to 4, a string holding one (``"2"``,
    ``"level_2"``) or the name of a run variable. ``routing.level_N`` falls back
    to ``routing.default``. The first child that fails fails the step.
    """

    def execute(self, step: WorkflowStep, ctx: StepContext) -> ActionResult:
        routing = ctx.param("routing")
        if not isinstance(routing, Mapping):
            return ActionResult(ok=False, message="Route step requires a 'routing' mapping")

        raw_level = ctx.param("level", ctx.param("input"))
        if raw_level is None or raw_level == "":
            return ActionResult(ok=False, message="Route step requires level")
        if isinstance(raw_level, str) and raw_level in ctx.variables:
            raw_level = ctx.variables[raw_level]

        level = _routing_level(raw_level)
        if level is None or level not in ROUTING_LEVELS:
            return ActionResult(ok=False, message=f"Invalid routing level: {raw_level} (must be 0-4)")

        config = routing.get(f"level_{level}")
        if config is None:
            config = routing.get("default")
            if config is not None:
                logger.info(
                    "No route for level, using default",
                    extra={"workflow": ctx.workflow.name, "step": step.name, "level": level},
                )
        if config is None:
            return ActionResult(ok=False, message=f"No routing configuration found for level {level}")

        workflows = config.get("workflows") if isinstance(config, Mapping) else config
        if isinstance(workflows, str):
            workflows = [workflows]
        if not isinstance(workflows, list) or not all(isinstance(p, str) and p for p in workflows):
            return ActionResult(
                ok=False,
                message=f"Invalid routing for level {level}: expected a list of workflow paths",
            )

        context_vars = ctx.param("context_vars") or {}
        if not isinstance(context_vars, Mapping):
            return ActionResult(ok=False, message="context_vars must be a mapping")

        logger.info(
            "Routing",
            extra={"workflow": ctx.workflow.name, "step": step.name, "level": level, "targets": workflows},
        )

        executed: list[str] = []
        for workflow_path in workflows:
            result = ctx.executor.run_child(workflow_path, dict(context_vars))
            if not result.ok:
                return ActionResult(
                    ok=False,
                    message=f"Routing failed at {workflow_path}: {result.message}",
                    awaiting_input=result.awaiting_input,
                )
            executed.append(workflow_path)

        decision = {"level": level, "workflows": executed}
        variables: dict[str, Any] = {"routing_decision": decision}
        output_var = ctx.param("output_var")
        if output_var:
            variables[str(output_var)] = decision

        if not executed:
            return ActionResult(
                ok=True, message=f"No workflows to run for level {level}", variables=variables
            )
        return ActionResult(
            ok=True,
            message=f"Routed level {level}: {len(executed)} workflow(s) completed",
            variables=variables,
        )


class ActionRegistry:
    """Closed mapping of action name to handler, fixed before any run starts."""

    def __init__(self, actions: Mapping[str, StepAction] | None = None) -> None:
        self._actions: dict[str, StepAction] = {}
        for name, action in (actions or {}).items():
            self.register(name, action)

    def register(self, name: str, action: StepAction, *, replace: bool = False) -> None:
        if not name:
            raise ValueError("Action name must not be empty")
        if name in self._actions and not replace:
            raise ValueError(f"Action already registered: {name}")
        self._actions[name] = action

    def resolve(self, name: str) -> StepAction:
        try:
            return self._actions[name]
        except KeyError:
            raise UnknownActionError(name) from None

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())


def default_registry(*, ledger_path: Path | None = None) -> ActionRegistry:
    return ActionRegistry(
        {
            "guide": GuideAction(),
            "display": DisplayAction(),
            "elicit": ElicitAction(),
            "validate": ValidateAction(),
            "set_variables": SetVariablesAction(),
            "load_state_machine": LoadStateMachineAction(default_ledger=ledger_path),
            "sub-workflow": SubWorkflowAction(),
            "route": RouteAction(),
        }
    )
