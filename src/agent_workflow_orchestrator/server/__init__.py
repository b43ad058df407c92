"""FastAPI server adapter for agent-workflow-orchestrator.

Read-only REST view over the session ledgers.

Design intent:
- Keep workflow logic in `agent_workflow_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, CORS, response shapes) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from agent_workflow_orchestrator.server.app import create_app
