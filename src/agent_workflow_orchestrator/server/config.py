"""Configuration for the REST server.

The server only reads ledgers, so it needs neither an agent command nor any
of the run-time knobs of `OrchestratorSettings`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    sessions_path: Path = Field(
        default=Path(".orchestrator/sessions"),
        validation_alias="ORCHESTRATOR_SESSIONS_PATH",
        description="Directory holding the session ledgers to serve",
    )

    max_transition_repeats: int = Field(
        default=3,
        ge=1,
        validation_alias="ORCHESTRATOR_MAX_TRANSITION_REPEATS",
        description="Loop threshold shown next to transition counts",
    )

    # Dev-friendly CORS. Override via ORCHESTRATOR_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ORCHESTRATOR_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
