"""Settings for storyflow.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing is required: every path has a repository-relative default so the CLI
and the HTTP server can start in a fresh checkout.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoryflowSettings(BaseSettings):
    """Settings for the story ledger and the workflow executor.

    Environment variables:
    - STORYFLOW_LEDGER_PATH         (optional)
    - STORYFLOW_WORKFLOWS_DIR       (optional)
    - STORYFLOW_WORKFLOW_STATE_DIR  (optional)
    - STORYFLOW_ENFORCE_WIP_LIMITS  (optional)
    - LOG_LEVEL                     (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `StoryflowSettings(_env_file=path_to_env)`.
    """

    ledger_path: Path = Field(
        default=Path("docs/workflow-status.md"),
        validation_alias="STORYFLOW_LEDGER_PATH",
        description="Markdown checklist ledger holding every story",
    )

    workflows_dir: Path = Field(
        default=Path("workflows"),
        validation_alias="STORYFLOW_WORKFLOWS_DIR",
        description="Directory searched when a workflow is referenced by name",
    )

    workflow_state_dir: Path = Field(
        default=Path("state/workflows"),
        validation_alias="STORYFLOW_WORKFLOW_STATE_DIR",
        description="Directory where per-workflow JSON checkpoints are persisted",
    )

    enforce_wip_limits: bool = Field(
        default=False,
        validation_alias="STORYFLOW_ENFORCE_WIP_LIMITS",
        description=(
            "If true, a transition that would put a second story into TODO or IN_PROGRESS "
            "is rejected. By default such states are only reported by validation."
        ),
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )
