#!/usr/bin/env python3
"""Programmatic usage example.

This demonstrates using the two engines directly:

* move a story through the ledger at `STORYFLOW_LEDGER_PATH`
* run a workflow one step at a time, checkpointing into
  `STORYFLOW_WORKFLOW_STATE_DIR`

Rerunning the script resumes the workflow where the last run stopped.
"""

from __future__ import annotations

import argparse
from typing import Sequence

from storyflow.core.config import StoryflowSettings
from storyflow.core.errors import IllegalTransitionError
from storyflow.core.logging import configure_logging
from storyflow.stories import StoryStateMachine
from storyflow.workflow import StateCheckpointStore, WorkflowExecutor, default_registry, load_workflow
from storyflow.workflow.definition import resolve_workflow


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Advance a story and step through a workflow.")
    parser.add_argument("--story", required=True, help="Story id, e.g. STORY-011")
    parser.add_argument("--state", required=True, help="Target state, e.g. TODO")
    parser.add_argument("--workflow", required=True, help="Workflow name or definition path")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = StoryflowSettings()
    configure_logging(settings.log_level)

    machine = StoryStateMachine(settings.ledger_path)
    try:
        story = machine.transition(args.story, args.state)
    except IllegalTransitionError as exc:
        print(str(exc))
    else:
        print(f"{story.id} is now {story.state.value}")

    for message in machine.validate().errors:
        print(f"warning: {message}")

    definition = load_workflow(resolve_workflow(args.workflow, settings.workflows_dir))
    executor = WorkflowExecutor(
        definition,
        StateCheckpointStore(settings.workflow_state_dir),
        default_registry(ledger_path=settings.ledger_path),
    )
    run = executor.initialize()

    while not run.completed:
        result = executor.execute_next_step()
        print(result.message)
        if not result.success:
            return 1
        run = executor.state

    print(f"Workflow {definition.name} completed ({run.total_steps} steps)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
