"""FastAPI app factory.

Endpoints are thin wrappers over the engines. Every request builds its own
StoryStateMachine / WorkflowExecutor from the settings; only the action
registry is shared, and it is fixed when the app is created.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from storyflow import __version__
from storyflow.core.config import StoryflowSettings
from storyflow.core.errors import (
    CheckpointMismatchError,
    IllegalTransitionError,
    NotFoundError,
    StoryflowError,
    StoryNotFoundError,
    ValidationError,
    WipLimitError,
)
from storyflow.server.models import ExecuteRequest, InputRequest, TransitionRequest, WorkflowSummary
from storyflow.stories.state_machine import StoryStateMachine
from storyflow.workflow.actions import ActionRegistry, default_registry
from storyflow.workflow.checkpoint import StateCheckpointStore
from storyflow.workflow.definition import find_workflow, list_workflow_files, load_workflow
from storyflow.workflow.executor import WorkflowExecutor

logger = logging.getLogger(__name__)


def _status_code(error: StoryflowError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, IllegalTransitionError | WipLimitError | CheckpointMismatchError):
        return 409
    if isinstance(error, ValidationError):
        return 422
    return 500


def create_app(
    settings: StoryflowSettings | None = None,
    *,
    actions: ActionRegistry | None = None,
) -> FastAPI:
    settings = settings or StoryflowSettings()
    registry = actions if actions is not None else default_registry(ledger_path=settings.ledger_path)

    app = FastAPI(
        title="Storyflow",
        version=__version__,
        description="REST API over the story state machine and the workflow executor.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    # Expose settings for request handlers that want to read it.
    app.state.settings = settings
    app.state.actions = registry

    @app.exception_handler(StoryflowError)
    def handle_storyflow_error(_request: Request, exc: StoryflowError) -> JSONResponse:
        status_code = _status_code(exc)
        if status_code >= 500:
            logger.error("Request failed", extra={"error": str(exc)})
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    def state_machine() -> StoryStateMachine:
        return StoryStateMachine(
            settings.ledger_path, enforce_wip_limits=settings.enforce_wip_limits
        )

    def executor(name: str) -> WorkflowExecutor:
        definition = load_workflow(find_workflow(settings.workflows_dir, name))
        return WorkflowExecutor(definition, StateCheckpointStore(settings.workflow_state_dir), registry)

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    @app.get("/api/stories")
    def list_stories() -> dict[str, Any]:
        machine = state_machine()
        status = machine.load()
        return {
            "stories": status.to_json(),
            "counts": status.counts(),
            "warnings": machine.parse_errors,
        }

    @app.get("/api/stories/validate")
    def validate_stories() -> dict[str, Any]:
        machine = state_machine()
        machine.load()
        result = machine.validate()
        return {"valid": result.valid, "errors": result.errors, "warnings": machine.parse_errors}

    @app.get("/api/stories/{story_id}")
    def get_story(story_id: str) -> dict[str, object]:
        story = state_machine().get_story(story_id)
        if story is None:
            raise StoryNotFoundError(story_id.strip().upper())
        return story.to_json()

    @app.post("/api/stories/{story_id}/transition")
    def transition_story(story_id: str, req: TransitionRequest) -> dict[str, Any]:
        machine = state_machine()
        story = machine.transition(story_id, req.state)
        result = machine.validate()
        return {
            "story": story.to_json(),
            "validation": {"valid": result.valid, "errors": result.errors},
        }

    @app.get("/api/workflows", response_model=list[WorkflowSummary])
    def list_workflows() -> list[WorkflowSummary]:
        store = StateCheckpointStore(settings.workflow_state_dir)
        runs = {run.workflow_name: run for run in store.list_runs()}
        summaries = []
        for path in list_workflow_files(settings.workflows_dir):
            try:
                definition = load_workflow(path)
            except StoryflowError as e:
                logger.warning("Skipping invalid workflow", extra={"path": str(path), "error": str(e)})
                continue
            run = runs.get(definition.name)
            summaries.append(
                WorkflowSummary(
                    name=definition.name,
                    description=definition.description,
                    path=str(path),
                    steps=len(definition.steps),
                    status=run.status.value if run is not None else None,
                    current_step=run.current_step_index if run is not None else None,
                )
            )
        return summaries

    @app.get("/api/workflows/{name}")
    def get_workflow(name: str) -> dict[str, Any]:
        runner = executor(name)
        definition = runner.workflow
        payload: dict[str, Any] = {
            "name": definition.name,
            "description": definition.description,
            "steps": [step.model_dump() for step in definition.steps],
            "state": None,
            "hierarchy": None,
        }
        if runner.store.exists(runner.run_id):
            state = runner.initialize()
            payload["state"] = state.to_json()
            payload["hierarchy"] = runner.hierarchy()
        return payload

    @app.post("/api/workflows/{name}/execute")
    def execute_workflow(name: str, req: ExecuteRequest) -> dict[str, Any]:
        runner = executor(name)
        runner.initialize()
        if req.variables:
            runner.provide_input(**req.variables)
        if req.mode == "step":
            return runner.execute_next_step().to_json()
        return runner.run_to_completion(max_steps=req.max_steps).to_json()

    @app.post("/api/workflows/{name}/resume")
    def resume_workflow(name: str) -> dict[str, Any]:
        return executor(name).resume().to_json()

    @app.post("/api/workflows/{name}/reset")
    def reset_workflow(name: str) -> dict[str, Any]:
        runner = executor(name)
        return {"workflow": runner.run_id, "removed": runner.reset()}

    @app.post("/api/workflows/{name}/input")
    def provide_input(name: str, req: InputRequest) -> dict[str, Any]:
        runner = executor(name)
        if not runner.store.exists(runner.run_id):
            raise HTTPException(status_code=409, detail=f"Workflow {name} has not been started")
        runner.initialize()
        return runner.provide_input(**req.values).to_json()

    return app
