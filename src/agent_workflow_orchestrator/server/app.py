"""FastAPI app factory.

Endpoints are thin, read-only wrappers over the ledger store.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from agent_workflow_orchestrator import __version__
from agent_workflow_orchestrator.orchestrator.workflow.engine import WorkflowStatus, project_status
from agent_workflow_orchestrator.orchestrator.workflow.ledger import (
    CorruptLedgerError,
    Ledger,
    LedgerNotFoundError,
    LedgerStore,
)
from agent_workflow_orchestrator.server.config import ServerSettings
from agent_workflow_orchestrator.server.models import ApiSessionSummary

logger = logging.getLogger(__name__)


def create_app(settings: ServerSettings | None = None) -> FastAPI:
    settings = settings or ServerSettings()

    app = FastAPI(
        title="Agent Workflow Orchestrator",
        version=__version__,
        description="Read-only REST API over agent workflow session ledgers.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    store = LedgerStore(settings.sessions_path)

    def load_or_fail(session_id: str) -> Ledger:
        try:
            return store.load(session_id)
        except LedgerNotFoundError:
            raise HTTPException(status_code=404, detail="Session not found") from None
        except CorruptLedgerError as e:
            logger.error("Corrupt ledger", extra={"session_id": session_id, "path": str(e.path)})
            raise HTTPException(status_code=500, detail=str(e)) from None
        except ValueError:
            # Ids outside [A-Za-z0-9_-] never name a ledger.
            raise HTTPException(status_code=404, detail="Session not found") from None

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/sessions", response_model=list[ApiSessionSummary])
    def list_sessions() -> list[ApiSessionSummary]:
        return [ApiSessionSummary.from_ledger(ledger) for ledger in store.list()]

    @app.get("/api/sessions/{session_id}", response_model=Ledger)
    def get_session(session_id: str) -> Ledger:
        return load_or_fail(session_id)

    @app.get("/api/sessions/{session_id}/status", response_model=WorkflowStatus)
    def get_session_status(session_id: str) -> WorkflowStatus:
        ledger = load_or_fail(session_id)
        return project_status(ledger, loop_threshold=settings.max_transition_repeats)

    return app
