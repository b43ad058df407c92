"""Configuration for the local-first orchestrator.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

List-valued settings (`ORCHESTRATOR_AGENT_COMMAND`, `ORCHESTRATOR_SKILL_DIRS`)
are read as JSON arrays, e.g. `ORCHESTRATOR_AGENT_COMMAND='["my-agent", "--json"]'`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Settings for the local orchestrator.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `OrchestratorSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    sessions_path: Path = Field(
        default=Path(".orchestrator/sessions"),
        validation_alias="ORCHESTRATOR_SESSIONS_PATH",
        description="Directory where workflow ledgers and transient IPC files live",
    )

    agent_command: list[str] = Field(
        default_factory=lambda: ["agent"],
        validation_alias="ORCHESTRATOR_AGENT_COMMAND",
        description="Executable (plus fixed leading arguments) used to run one agent",
    )
    agent_model: str | None = Field(
        default=None,
        validation_alias="ORCHESTRATOR_AGENT_MODEL",
        description="Model passed to agents whose profile does not pin one",
    )

    default_timeout_minutes: float = Field(
        default=15.0,
        gt=0,
        validation_alias="ORCHESTRATOR_DEFAULT_TIMEOUT_MINUTES",
        description="Wall-clock limit for states that do not declare timeout_minutes",
    )
    kill_grace_seconds: float = Field(
        default=5.0,
        gt=0,
        le=10,
        validation_alias="ORCHESTRATOR_KILL_GRACE_SECONDS",
        description="Delay between SIGTERM and SIGKILL when stopping an agent",
    )

    max_transition_repeats: int = Field(
        default=3,
        ge=1,
        validation_alias="ORCHESTRATOR_MAX_TRANSITION_REPEATS",
        description="How often one (from, to) transition may run before a human must step in",
    )
    implementation_state: str = Field(
        default="implementation",
        validation_alias="ORCHESTRATOR_IMPLEMENTATION_STATE",
        description="State whose runs are retried once when the agent stalls asking for approval",
    )
    terminal_state: str = Field(
        default="done",
        validation_alias="ORCHESTRATOR_TERMINAL_STATE",
        description="State name that always completes the workflow",
    )

    history_context_limit: int = Field(
        default=12,
        ge=0,
        validation_alias="ORCHESTRATOR_HISTORY_CONTEXT_LIMIT",
        description="Number of most recent history records rendered into an agent handoff",
    )
    display_output_limit: int = Field(
        default=8000,
        gt=0,
        validation_alias="ORCHESTRATOR_DISPLAY_OUTPUT_LIMIT",
        description="Characters of agent output returned for display",
    )

    project_settings_path: Path | None = Field(
        default=None,
        validation_alias="ORCHESTRATOR_PROJECT_SETTINGS_PATH",
        description="Text file injected verbatim into every agent handoff",
    )
    skill_dirs: list[Path] = Field(
        default_factory=list,
        validation_alias="ORCHESTRATOR_SKILL_DIRS",
        description="Directories searched for skills named by agents and states",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _require_agent_command(self) -> OrchestratorSettings:
        if not self.agent_command or not self.agent_command[0].strip():
            raise ValueError("ORCHESTRATOR_AGENT_COMMAND must name an executable")
        return self

    @property
    def ledger_dir(self) -> Path:
        """Directory holding one `<session>.json` ledger per workflow run."""

        return self.sessions_path

    @property
    def ipc_dir(self) -> Path:
        """Directory holding transient context handoff and answer files."""

        return self.sessions_path / "ipc"

    def read_project_settings(self) -> str:
        """Return the opaque project settings block, or "" when not configured."""

        path = self.project_settings_path
        if path is None or not path.exists():
            return ""
        return path.read_text(encoding="utf-8").strip()
