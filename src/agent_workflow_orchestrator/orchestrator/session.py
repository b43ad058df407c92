"""Explicit per-session context and the helpers that create it.

Every engine operation takes an `OrchestratorContext`; there is no
module-level "active workflow". Two sessions in one process are two contexts.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from agent_workflow_orchestrator.orchestrator.agents.resolver import (
    AgentProfile,
    AgentResolver,
    DefaultAgentResolver,
)
from agent_workflow_orchestrator.orchestrator.agents.supervisor import AgentProcessSupervisor, AgentRunner
from agent_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from agent_workflow_orchestrator.orchestrator.interaction import (
    AnswerRendezvous,
    HeadlessInteraction,
    Interaction,
    SelectInteraction,
)
from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition
from agent_workflow_orchestrator.orchestrator.workflow.events import EventSink
from agent_workflow_orchestrator.orchestrator.workflow.ledger import Ledger, LedgerStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestratorContext:
    settings: OrchestratorSettings
    store: LedgerStore
    ledger: Ledger
    runner: AgentRunner
    resolver: AgentResolver
    interaction: Interaction
    rendezvous: AnswerRendezvous | None = None
    events: EventSink | None = None

    @property
    def workflow(self) -> WorkflowDefinition:
        return self.ledger.workflow

    @property
    def session_id(self) -> str:
        return self.ledger.id


def build_context(
    settings: OrchestratorSettings,
    ledger: Ledger,
    *,
    store: LedgerStore | None = None,
    runner: AgentRunner | None = None,
    resolver: AgentResolver | None = None,
    interaction: Interaction | None = None,
    profiles: Mapping[str, AgentProfile] | None = None,
    events: EventSink | None = None,
) -> OrchestratorContext:
    """Wire a context, filling every collaborator not given from `settings`."""

    if runner is None:
        runner = AgentProcessSupervisor(
            settings.agent_command,
            ipc_dir=settings.ipc_dir,
            kill_grace_seconds=settings.kill_grace_seconds,
        )
    if resolver is None:
        resolver = DefaultAgentResolver(
            profiles,
            skill_dirs=settings.skill_dirs,
            project_settings=settings.read_project_settings(),
            history_limit=settings.history_context_limit,
            default_model=settings.agent_model,
        )
    interaction = interaction or HeadlessInteraction()
    rendezvous = interaction.rendezvous if isinstance(interaction, SelectInteraction) else None

    return OrchestratorContext(
        settings=settings,
        store=store or LedgerStore(settings.ledger_dir),
        ledger=ledger,
        runner=runner,
        resolver=resolver,
        interaction=interaction,
        rendezvous=rendezvous,
        events=events,
    )


def start_session(
    settings: OrchestratorSettings,
    workflow: WorkflowDefinition,
    *,
    initial_task: str = "",
    session_id: str | None = None,
    **collaborators,
) -> OrchestratorContext:
    """Create and persist a fresh ledger positioned at the workflow's initial state."""

    ledger = Ledger.start(workflow, session_id=session_id, initial_task=initial_task)
    ctx = build_context(settings, ledger, **collaborators)
    if ctx.store.exists(ledger.id):
        raise FileExistsError(f"Session {ledger.id!r} already exists")
    ctx.store.save(ledger)
    logger.info(
        "Session started",
        extra={"session_id": ledger.id, "workflow": workflow.name, "state": ledger.current_state},
    )
    return ctx


def resume_session(settings: OrchestratorSettings, session_id: str, **collaborators) -> OrchestratorContext:
    """Load an existing ledger.

    Re-issuing an interrupted run is an ordinary
    `transition(ctx, ledger.current_state, ledger.current_state_task)`.
    """

    store: LedgerStore = collaborators.pop("store", None) or LedgerStore(settings.ledger_dir)
    ledger = store.load(session_id)
    logger.info(
        "Session resumed",
        extra={"session_id": ledger.id, "state": ledger.current_state, "status": ledger.status.value},
    )
    return build_context(settings, ledger, store=store, **collaborators)
