"""Agent Workflow Orchestrator.

Drives long-running, externally executed agent tasks through a persisted
workflow state machine:
- a durable, resumable ledger per workflow run
- one supervised subprocess per state transition
- a line-oriented IPC channel for mid-run questions
- anti-loop detection and human approval gates
"""

__version__ = "0.1.0"

from agent_workflow_orchestrator.orchestrator.config import OrchestratorSettings

__all__ = ["__version__", "OrchestratorSettings"]
