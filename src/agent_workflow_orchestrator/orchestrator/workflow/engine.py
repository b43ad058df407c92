"""Transition engine.

`transition()` is the only operation that runs agents and the only writer of
history. The order of checks is fixed:

1. the target state must exist
2. the directed transition must not exceed its repeat limit
3. a pre-run approval gate may cancel (nothing is changed)
4. the ledger is moved to the target and persisted, then the agent runs
5. an implementation run stuck asking for approval is retried once
6. a timeout pauses the workflow without a history record
7. a post-run gate inspects the reviewer verdict
8. otherwise one `StateRecord` is appended

Every outcome comes back as a `TransitionResult` with a next step for the
operator; unexpected collaborator errors become FAILED results.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from agent_workflow_orchestrator.orchestrator.agents.ipc import AgentQuestion
from agent_workflow_orchestrator.orchestrator.agents.resolver import AgentSpec
from agent_workflow_orchestrator.orchestrator.agents.supervisor import RunOutcome

from . import events
from .definition import UnknownStateError
from .events import WorkflowEvent
from .handoff import EXECUTION_OVERRIDE, display_name, format_elapsed
from .ledger import Ledger, SessionStatus, Snapshot, StateRecord
from .verdict import detect_verdict, is_execution_approval_loop

if TYPE_CHECKING:
    from agent_workflow_orchestrator.orchestrator.session import OrchestratorContext

logger = logging.getLogger(__name__)

OPTION_RETRY = "retry"
OPTION_SKIP = "skip"
OPTION_ABORT = "abort"
OPTION_OVERRIDE = "override"

TIMEOUT_PREVIEW_CHARS = 1200
BLOCK_PREVIEW_CHARS = 2000
RECORD_PREVIEW_CHARS = 300


class TransitionOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"
    LOOP_DETECTED = "loop_detected"
    INVALID = "invalid"


def route_option(state: str) -> str:
    return f"route:{state}"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    outcome: TransitionOutcome
    message: str
    output: str = ""
    full_output: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    options: tuple[str, ...] = ()

    @property
    def completed(self) -> bool:
        return self.outcome is TransitionOutcome.COMPLETED

    def render(self) -> str:
        return f"{self.message}\n\n{self.output}".rstrip() if self.output else self.message


class NextState(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    agent: str | None = None
    extra_skills: int = 0


class WorkflowStatus(BaseModel):
    """Read-only projection of a ledger for displays."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    workflow_name: str
    status: SessionStatus
    current_state: str
    current_state_task: str
    initial_task: str
    next_states: tuple[NextState, ...]
    history: tuple[StateRecord, ...]
    snapshot: Snapshot
    transition_counts: dict[str, int]
    total_tokens: int
    total_elapsed_ms: int
    loop_threshold: int

    def render(self) -> str:
        lines = [
            f"## Workflow Ledger - {self.workflow_name}",
            f"**Session:** {self.session_id}  **Status:** {self.status.value}",
            f"**Current State:** {display_name(self.current_state)}",
            f"**Tokens:** {self.total_tokens:,}  **Elapsed:** {format_elapsed(self.total_elapsed_ms)}",
            f"**Initial Task:** {self.initial_task}",
            "",
        ]

        if self.next_states:
            rendered = []
            for nxt in self.next_states:
                agent = f" (agent: {nxt.agent})" if nxt.agent else ""
                skills = f" +{nxt.extra_skills} skills" if nxt.extra_skills else ""
                rendered.append(f"**{nxt.name}**{agent}{skills}")
            lines.append(f"**Valid Next States:** {', '.join(rendered)}")
        else:
            lines.append("**Valid Next States:** *(terminal, workflow complete)*")
        lines.append("")

        if self.history:
            lines.append("## History")
            for record in self.history:
                agent = f" [{record.agent}]" if record.agent else ""
                lines.append(
                    f"- **{display_name(record.state)}**{agent} - "
                    f"{format_elapsed(record.elapsed_ms)}, {record.tokens_used:,} tokens"
                )
                lines.append(f"  *{record.summary[:200]}*")
            lines.append("")

        for title, items in (
            ("## Key Findings", self.snapshot.key_findings),
            ("## Modified Files", self.snapshot.modified_files),
            ("## Pending Tasks", self.snapshot.pending_tasks),
        ):
            if items:
                lines.append(title)
                lines.extend(f"- {item}" for item in items)
                lines.append("")

        if self.transition_counts:
            lines.append("## Transition Counts")
            for key, count in self.transition_counts.items():
                warn = " (!)" if count >= self.loop_threshold else ""
                lines.append(f"- {key}: {count}{warn}")

        return "\n".join(lines).rstrip()


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _emit(ctx: OrchestratorContext, event_type: str, state: str, **payload: Any) -> None:
    events.emit(ctx.events, WorkflowEvent(type=event_type, session_id=ctx.ledger.id, state=state, payload=payload))


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n\n... [truncated]"


async def _run_agent(
    ctx: OrchestratorContext,
    agent: AgentSpec,
    *,
    state: str,
    timeout_seconds: float,
) -> RunOutcome:
    async def on_question(question: AgentQuestion) -> str:
        _emit(ctx, events.AGENT_QUESTION, state, question=question.question, options=list(question.options))
        return await ctx.interaction.ask(question, state=state)

    def on_progress(last_line: str) -> None:
        _emit(ctx, events.AGENT_PROGRESS, state, last_line=last_line)

    try:
        return await ctx.runner.run(
            agent,
            session_id=ctx.ledger.id,
            state=state,
            timeout_seconds=timeout_seconds,
            on_progress=on_progress,
            on_question=on_question,
        )
    except Exception as e:
        logger.exception("Agent run failed", extra={"session_id": ctx.ledger.id, "state": state})
        return RunOutcome(output=f"Agent run failed: {e}", exit_code=1, elapsed_ms=0, tokens_used=0)


async def transition(ctx: OrchestratorContext, to_state: str, task: str, summary: str = "") -> TransitionResult:
    """Move the workflow to `to_state` and run its agent on `task`.

    `summary` describes what the state being left accomplished; it is stored on
    the record appended for this run.
    """

    ledger = ctx.ledger
    settings = ctx.settings
    workflow = ledger.workflow
    from_state = ledger.current_state

    try:
        target = workflow.state(to_state)
    except UnknownStateError as e:
        logger.warning("Unknown target state", extra={"session_id": ledger.id, "target": to_state})
        return TransitionResult(
            outcome=TransitionOutcome.INVALID,
            message=str(e),
            details={"state": to_state, "available": e.available},
            options=tuple(route_option(s) for s in workflow.next_states(from_state)),
        )

    key = ledger.transition_key(from_state, to_state)
    count = ledger.transition_counts.get(key, 0) + 1
    if count > settings.max_transition_repeats:
        ledger.transition_counts[key] = count
        ledger.status = SessionStatus.HUMAN_INTERVENTION
        ctx.store.save(ledger)
        logger.warning("Transition loop detected", extra={"session_id": ledger.id, "transition": key, "count": count})
        _emit(ctx, events.LOOP_DETECTED, to_state, transition=key, count=count)
        alternatives = [s for s in workflow.next_states(from_state) if s != to_state]
        return TransitionResult(
            outcome=TransitionOutcome.LOOP_DETECTED,
            message=(
                f"Anti-loop triggered: {key!r} has cycled {count} times. "
                "The workflow needs human intervention; try a different next state or end the workflow."
            ),
            details={"state": to_state, "status": ledger.status.value, "transition": key, "count": count},
            options=(*(route_option(s) for s in alternatives), OPTION_ABORT),
        )

    if target.pre_approval:
        agent_label = f" (agent: {target.agent})" if target.agent else ""
        approved = await ctx.interaction.confirm(f'Approve transition to "{display_name(to_state)}"{agent_label}?')
        if not approved:
            logger.info("Transition declined at approval gate", extra={"session_id": ledger.id, "target": to_state})
            return TransitionResult(
                outcome=TransitionOutcome.CANCELLED,
                message=f'Transition to "{to_state}" cancelled.',
                details={"state": to_state},
            )

    try:
        agent = ctx.resolver.resolve(ledger=ledger, state_name=to_state, state=target, task=task)
    except Exception as e:
        logger.exception("Agent resolution failed", extra={"session_id": ledger.id, "target": to_state})
        return TransitionResult(
            outcome=TransitionOutcome.FAILED,
            message=f"Could not resolve an agent for {display_name(to_state)}: {e}",
            details={"state": to_state},
            options=(OPTION_RETRY, OPTION_ABORT),
        )

    ledger.transition_counts[key] = count
    ledger.current_state = to_state
    ledger.current_state_task = task
    ledger.status = SessionStatus.RUNNING
    ctx.store.save(ledger)

    logger.info(
        "State started",
        extra={"session_id": ledger.id, "state": to_state, "agent": agent.identity, "skills": len(agent.skill_paths)},
    )
    _emit(ctx, events.STATE_STARTED, to_state, agent=agent.identity, task=task, skills=len(agent.skill_paths))

    timeout_seconds = (target.timeout_minutes or settings.default_timeout_minutes) * 60
    started_at = _utc_now()
    outcome = await _run_agent(ctx, agent, state=to_state, timeout_seconds=timeout_seconds)

    if (
        to_state == settings.implementation_state
        and outcome.exit_code == 0
        and is_execution_approval_loop(outcome.output)
    ):
        logger.warning("Execution-approval loop detected, retrying once", extra={"session_id": ledger.id})
        _emit(ctx, events.LOOP_BREAKER_RETRY, to_state)
        retry = await _run_agent(
            ctx,
            agent.with_handoff_appendix(EXECUTION_OVERRIDE),
            state=to_state,
            timeout_seconds=timeout_seconds,
        )
        outcome = RunOutcome(
            output=retry.output,
            exit_code=retry.exit_code,
            elapsed_ms=outcome.elapsed_ms + retry.elapsed_ms,
            tokens_used=outcome.tokens_used + retry.tokens_used,
            killed=retry.killed,
        )

    ledger.total_tokens += outcome.tokens_used
    ledger.total_elapsed_ms += outcome.elapsed_ms

    details: dict[str, Any] = {
        "state": to_state,
        "agent": agent.identity,
        "elapsed_ms": outcome.elapsed_ms,
        "tokens_used": outcome.tokens_used,
        "exit_code": outcome.exit_code,
    }

    if outcome.timed_out:
        return _pause_on_timeout(ctx, to_state, agent, outcome, details)

    if target.post_approval:
        verdict = detect_verdict(outcome.output)
        details |= {"verdict": verdict.verdict, "verdict_source": verdict.source}
        if not verdict.approved:
            return _pause_on_block(ctx, to_state, target.next, outcome, details)

        approved = await ctx.interaction.confirm(
            f"Reviewer approved {display_name(to_state)}. Proceed to implementation?"
        )
        if not approved:
            ledger.status = SessionStatus.PAUSED
            ctx.store.save(ledger)
            details["status"] = ledger.status.value
            return TransitionResult(
                outcome=TransitionOutcome.DEFERRED,
                message=(
                    f"Implementation deferred. Workflow paused at {display_name(to_state)}. "
                    "Transition back to planning or any review state to continue."
                ),
                output=_truncate(outcome.output, settings.display_output_limit),
                full_output=outcome.output,
                details=details,
                options=tuple(route_option(s) for s in target.next),
            )

    record = StateRecord(
        state=to_state,
        agent=agent.identity,
        model=agent.model,
        started_at=started_at,
        completed_at=_utc_now(),
        summary=summary,
        tokens_used=outcome.tokens_used,
        elapsed_ms=outcome.elapsed_ms,
        task_given=task,
        output_preview=outcome.output[:RECORD_PREVIEW_CHARS],
        exit_code=outcome.exit_code,
    )
    ledger.history.append(record)
    if workflow.is_terminal(to_state, terminal_marker=settings.terminal_state):
        ledger.status = SessionStatus.DONE
    ctx.store.save(ledger)

    details["status"] = ledger.status.value
    label = "done" if outcome.succeeded else "error"
    logger.info(
        "State finished",
        extra={"session_id": ledger.id, "state": to_state, "exit_code": outcome.exit_code, "tokens": outcome.tokens_used},
    )
    _emit(ctx, events.STATE_COMPLETED, to_state, exit_code=outcome.exit_code, tokens_used=outcome.tokens_used)

    header = (
        f"[{ledger.workflow_name}] {display_name(to_state)} [{agent.identity}] "
        f"{label} in {format_elapsed(outcome.elapsed_ms)} - {outcome.tokens_used:,} tokens"
    )
    return TransitionResult(
        outcome=TransitionOutcome.COMPLETED if outcome.succeeded else TransitionOutcome.FAILED,
        message=header,
        output=_truncate(outcome.output, settings.display_output_limit),
        full_output=outcome.output,
        details=details,
        options=() if outcome.succeeded else (OPTION_RETRY, OPTION_SKIP, OPTION_ABORT),
    )


def _pause_on_timeout(
    ctx: OrchestratorContext,
    state: str,
    agent: AgentSpec,
    outcome: RunOutcome,
    details: dict[str, Any],
) -> TransitionResult:
    ledger = ctx.ledger
    ledger.status = SessionStatus.PAUSED
    partial = outcome.output[:TIMEOUT_PREVIEW_CHARS].strip()
    if partial:
        ledger.snapshot.key_findings.append(f"[Partial - {display_name(state)} timed out] {partial}")
    ctx.store.save(ledger)

    details["status"] = ledger.status.value
    logger.warning("State timed out", extra={"session_id": ledger.id, "state": state})
    _emit(ctx, events.STATE_TIMED_OUT, state, elapsed_ms=outcome.elapsed_ms)

    return TransitionResult(
        outcome=TransitionOutcome.TIMED_OUT,
        message=(
            f"{display_name(state)} [{agent.identity}] timed out after {format_elapsed(outcome.elapsed_ms)}. "
            "The workflow is PAUSED at this state. Retry it, skip past it (note the skip in the "
            "snapshot first), or abort the workflow."
        ),
        output=partial,
        full_output=outcome.output,
        details=details,
        options=(OPTION_RETRY, OPTION_SKIP, OPTION_ABORT),
    )


def _pause_on_block(
    ctx: OrchestratorContext,
    state: str,
    next_states: Iterable[str],
    outcome: RunOutcome,
    details: dict[str, Any],
) -> TransitionResult:
    ledger = ctx.ledger
    settings = ctx.settings
    ledger.status = SessionStatus.PAUSED
    ctx.store.save(ledger)

    excluded = {settings.implementation_state, settings.terminal_state}
    routes = tuple(s for s in next_states if s not in excluded)
    details |= {"status": ledger.status.value, "routes": list(routes)}
    logger.info("Reviewer blocked", extra={"session_id": ledger.id, "state": state, "routes": list(routes)})
    _emit(ctx, events.STATE_BLOCKED, state, routes=list(routes), verdict_source=details.get("verdict_source"))

    return TransitionResult(
        outcome=TransitionOutcome.BLOCKED,
        message=(
            f"{display_name(state)}: reviewer issued a BLOCK (verdict source: {details.get('verdict_source')}). "
            "Do not proceed to implementation. Route back to a specialist to address the corrections, "
            "override the block explicitly, or abort."
        ),
        output=outcome.output[:BLOCK_PREVIEW_CHARS],
        full_output=outcome.output,
        details=details,
        options=(*(route_option(s) for s in routes), OPTION_OVERRIDE, OPTION_ABORT),
    )


def update_snapshot(
    ctx: OrchestratorContext,
    *,
    findings: Iterable[str] | None = None,
    modified_files: Iterable[str] | None = None,
    pending_tasks: Iterable[str] | None = None,
    custom: Mapping[str, Any] | None = None,
) -> str:
    """Merge into the snapshot (never replaces) and persist."""

    ledger = ctx.ledger
    saved = ledger.snapshot.merge(
        findings=findings,
        modified_files=modified_files,
        pending_tasks=pending_tasks,
        custom=custom,
    )
    if not saved:
        return "Nothing to save."
    ctx.store.save(ledger)
    _emit(ctx, events.SNAPSHOT_UPDATED, ledger.current_state, saved=saved)
    return f"Snapshot updated: {', '.join(saved)}."


def project_status(ledger: Ledger, *, loop_threshold: int) -> WorkflowStatus:
    """Build the status projection of `ledger` without touching it."""

    workflow = ledger.workflow
    next_states = []
    for name in workflow.next_states(ledger.current_state):
        state = workflow.states[name]
        next_states.append(NextState(name=name, agent=state.agent, extra_skills=len(state.extra_skills)))

    return WorkflowStatus(
        session_id=ledger.id,
        workflow_name=ledger.workflow_name,
        status=ledger.status,
        current_state=ledger.current_state,
        current_state_task=ledger.current_state_task,
        initial_task=ledger.initial_task,
        next_states=tuple(next_states),
        history=tuple(ledger.history),
        snapshot=ledger.snapshot.model_copy(deep=True),
        transition_counts=dict(ledger.transition_counts),
        total_tokens=ledger.total_tokens,
        total_elapsed_ms=ledger.total_elapsed_ms,
        loop_threshold=loop_threshold,
    )


def status(ctx: OrchestratorContext) -> WorkflowStatus:
    return project_status(ctx.ledger, loop_threshold=ctx.settings.max_transition_repeats)


def kill_running_agent(ctx: OrchestratorContext) -> bool:
    killed = ctx.runner.kill()
    if killed:
        logger.info("Running agent killed by operator", extra={"session_id": ctx.ledger.id})
    return killed


def submit_operator_input(ctx: OrchestratorContext, text: str) -> bool:
    """Route typed operator input to a question waiting for free text."""

    if ctx.rendezvous is None:
        return False
    return ctx.rendezvous.offer(text)
