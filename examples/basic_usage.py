#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates driving the orchestrator components directly:

* load settings from `.env`
* start a session from a JSON workflow definition
* run the initial state's agent and print the result

Approval gates are auto-approved, so this is meant for unattended runs.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Sequence

from agent_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from agent_workflow_orchestrator.orchestrator.logging import configure_logging
from agent_workflow_orchestrator.orchestrator.session import start_session
from agent_workflow_orchestrator.orchestrator.workflow import engine
from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the first state of a workflow (programmatic example).")
    parser.add_argument("--workflow", type=Path, required=True, help="Workflow definition (JSON)")
    parser.add_argument("--task", required=True, help="What the workflow should achieve")
    return parser.parse_args(argv)


async def _run(settings: OrchestratorSettings, workflow: WorkflowDefinition, task: str) -> int:
    ctx = start_session(settings, workflow, initial_task=task)
    print(f"Session {ctx.session_id} started at {ctx.ledger.current_state}")

    result = await engine.transition(ctx, workflow.initial, task)
    print(result.render())

    status = engine.status(ctx)
    if status.next_states:
        print("Next: " + ", ".join(s.name for s in status.next_states))
    return 0 if result.completed else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = OrchestratorSettings()
    configure_logging(settings.log_level)

    workflow = WorkflowDefinition.model_validate_json(args.workflow.read_text(encoding="utf-8"))
    return asyncio.run(_run(settings, workflow, args.task))


if __name__ == "__main__":
    raise SystemExit(main())
