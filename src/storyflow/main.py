"""CLI entrypoint for storyflow.

Story commands operate on the ledger at STORYFLOW_LEDGER_PATH; workflow commands
resolve names in STORYFLOW_WORKFLOWS_DIR and checkpoint into
STORYFLOW_WORKFLOW_STATE_DIR. Output is plain JSON or one-line messages.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

import yaml
from pydantic import ValidationError

from storyflow import __version__
from storyflow.core.config import StoryflowSettings
from storyflow.core.errors import NotFoundError, StoryflowError
from storyflow.core.errors import ValidationError as StoryflowValidationError
from storyflow.core.logging import configure_logging
from storyflow.stories.state_machine import StoryStateMachine
from storyflow.workflow.actions import default_registry
from storyflow.workflow.checkpoint import StateCheckpointStore
from storyflow.workflow.definition import list_workflow_files, load_workflow, resolve_workflow
from storyflow.workflow.executor import ExecutionResult, WorkflowExecutor

logger = logging.getLogger(__name__)


def _parse_assignment(value: str) -> tuple[str, Any]:
    key, sep, raw = value.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {value!r}")
    # YAML scalars so `--set LEVEL=2` is an int and `--set DEBUG=true` a bool.
    try:
        parsed = yaml.safe_load(raw) if raw else ""
    except yaml.YAMLError:
        parsed = raw
    return key.strip(), parsed


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="storyflow",
        description="Story lifecycle state machine and resumable workflow executor",
    )
    parser.add_argument("--version", action="version", version=f"storyflow {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Show stories grouped by state")
    subparsers.add_parser(
        "validate", help="Check work-in-progress limits and checkbox/state consistency"
    )

    transition = subparsers.add_parser("transition", help="Move a story to another state")
    transition.add_argument("story_id", help="Story id, e.g. STORY-001 (case-insensitive)")
    transition.add_argument("state", help="Target state: BACKLOG | TODO | IN_PROGRESS | DONE")

    workflow = subparsers.add_parser("workflow", help="Run and inspect workflows")
    workflow_sub = workflow.add_subparsers(dest="workflow_command", required=True)

    workflow_sub.add_parser("list", help="List known workflows and their checkpoint status")

    for name, help_text in (
        ("run", "Run a workflow until it completes or a step fails"),
        ("step", "Execute exactly one step"),
        ("resume", "Continue a paused or failed run from its checkpoint"),
    ):
        cmd = workflow_sub.add_parser(name, help=help_text)
        cmd.add_argument("workflow", help="Workflow name or path to a definition file")
        cmd.add_argument(
            "--set",
            dest="assignments",
            action="append",
            default=[],
            type=_parse_assignment,
            metavar="KEY=VALUE",
            help="Supply a run variable (e.g. an answer to an elicit step); repeatable",
        )
        if name != "step":
            cmd.add_argument(
                "--max-steps",
                type=int,
                default=None,
                help="Stop after this many steps",
            )

    reset = workflow_sub.add_parser("reset", help="Delete a workflow's checkpoint")
    reset.add_argument("workflow", help="Workflow name or path to a definition file")

    show = workflow_sub.add_parser("show", help="Show checkpoint and sub-workflow hierarchy")
    show.add_argument("workflow", help="Workflow name or path to a definition file")

    return parser


def _state_machine(settings: StoryflowSettings) -> StoryStateMachine:
    return StoryStateMachine(settings.ledger_path, enforce_wip_limits=settings.enforce_wip_limits)


def _executor(settings: StoryflowSettings, reference: str) -> WorkflowExecutor:
    definition = load_workflow(resolve_workflow(reference, settings.workflows_dir))
    return WorkflowExecutor(
        definition,
        StateCheckpointStore(settings.workflow_state_dir),
        default_registry(ledger_path=settings.ledger_path),
    )


def _report(result: ExecutionResult) -> int:
    print(result.message)
    if result.awaiting_input:
        name = result.awaiting_input
        print(f"Input required for '{name}'; rerun with --set {name}=...")
    if result.state is not None:
        state = result.state
        print(f"Step {state.current_step_index}/{state.total_steps} ({state.status.value})")
    return 0 if result.success else 4


def _run_workflow_command(args: argparse.Namespace, settings: StoryflowSettings) -> int:
    command = args.workflow_command

    if command == "list":
        store = StateCheckpointStore(settings.workflow_state_dir)
        runs = {run.workflow_name: run for run in store.list_runs()}
        rows = []
        for path in list_workflow_files(settings.workflows_dir):
            try:
                definition = load_workflow(path)
            except StoryflowError as e:
                logger.warning("Skipping invalid workflow", extra={"path": str(path), "error": str(e)})
                continue
            run = runs.get(definition.name)
            rows.append(
                {
                    "name": definition.name,
                    "path": str(path),
                    "steps": len(definition.steps),
                    "status": run.status.value if run is not None else None,
                    "currentStep": run.current_step_index if run is not None else None,
                }
            )
        _print_json(rows)
        return 0

    executor = _executor(settings, args.workflow)

    if command == "reset":
        removed = executor.reset()
        print(f"Reset {executor.run_id}" if removed else f"No checkpoint for {executor.run_id}")
        return 0

    if command == "show":
        if not executor.store.exists(executor.run_id):
            _print_json({"state": None, "hierarchy": None})
            return 0
        state = executor.initialize()
        _print_json({"state": state.to_json(), "hierarchy": executor.hierarchy()})
        return 0

    executor.initialize()

    if args.assignments:
        executor.provide_input(**dict(args.assignments))

    if command == "step":
        return _report(executor.execute_next_step())

    if command == "resume":
        result = executor.resume()
        if result.success and result.state is not None and not result.state.completed:
            remaining = None if args.max_steps is None else args.max_steps - 1
            if remaining is None or remaining > 0:
                result = executor.run_to_completion(max_steps=remaining)
        return _report(result)

    # run
    return _report(executor.run_to_completion(max_steps=args.max_steps))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = StoryflowSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "status":
            machine = _state_machine(settings)
            status = machine.load()
            for message in machine.parse_errors:
                print(f"warning: {message}", file=sys.stderr)
            _print_json({"stories": status.to_json(), "counts": status.counts()})
            return 0

        if args.command == "validate":
            machine = _state_machine(settings)
            machine.load()
            result = machine.validate()
            for message in machine.parse_errors:
                print(f"warning: {message}", file=sys.stderr)
            if result.valid:
                print("Ledger is valid")
                return 0
            for message in result.errors:
                print(message)
            return 4

        if args.command == "transition":
            machine = _state_machine(settings)
            machine.load()
            before = machine.get_story(args.story_id)
            story = machine.transition(args.story_id, args.state)
            previous = before.state.value if before is not None else "?"
            print(f"{story.id}: {previous} -> {story.state.value}")
            return 0

        if args.command == "workflow":
            return _run_workflow_command(args, settings)

        parser.error(f"Unknown command: {args.command}")
        return 2

    except (NotFoundError, StoryflowValidationError) as e:
        print(str(e), file=sys.stderr)
        return 3
    except StoryflowError as e:
        logger.error("Command failed", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return 1
    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
