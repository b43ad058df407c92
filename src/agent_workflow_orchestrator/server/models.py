"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from agent_workflow_orchestrator.orchestrator.workflow.ledger import Ledger, SessionStatus


class ApiSessionSummary(BaseModel):
    id: str
    workflow_name: str
    current_state: str
    status: SessionStatus
    created_at: datetime
    last_updated: datetime
    states_completed: int
    total_tokens: int
    total_elapsed_ms: int

    @classmethod
    def from_ledger(cls, ledger: Ledger) -> ApiSessionSummary:
        return cls(
            id=ledger.id,
            workflow_name=ledger.workflow_name,
            current_state=ledger.current_state,
            status=ledger.status,
            created_at=ledger.created_at,
            last_updated=ledger.last_updated,
            states_completed=len(ledger.history),
            total_tokens=ledger.total_tokens,
            total_elapsed_ms=ledger.total_elapsed_ms,
        )
