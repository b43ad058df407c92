"""`python -m agent_workflow_orchestrator` runs the `agent-orchestrator` CLI."""

from __future__ import annotations

from agent_workflow_orchestrator.orchestrator.main import main

if __name__ == "__main__":
    raise SystemExit(main())
