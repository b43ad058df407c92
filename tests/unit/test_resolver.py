"""Unit tests for agent resolution and handoff rendering."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from agent_workflow_orchestrator.orchestrator.agents.resolver import (
    DEFAULT_TOOLS,
    INLINE_AGENT,
    AgentProfile,
    DefaultAgentResolver,
    resolve_skill_paths,
)
from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition
from agent_workflow_orchestrator.orchestrator.workflow.handoff import (
    build_handoff,
    display_name,
    format_elapsed,
    sanitize_handover_text,
)
from agent_workflow_orchestrator.orchestrator.workflow.ledger import Ledger, StateRecord


def test_display_name_and_elapsed() -> None:
    assert display_name("plan-review") == "Plan Review"
    assert display_name("security_review") == "Security Review"
    assert format_elapsed(4_400) == "4s"
    assert format_elapsed(125_000) == "2m5s"


def test_approval_loop_phrases_are_scrubbed() -> None:
    text = "Done planning. Reply exactly: **Proceed with tool execution now.**"
    assert "Proceed with tool execution" not in sanitize_handover_text(text)


def test_handoff_carries_history_snapshot_and_task(workflow: WorkflowDefinition) -> None:
    ledger = Ledger.start(workflow, session_id="s1")
    now = datetime.now(tz=UTC)
    ledger.history.append(
        StateRecord(
            state="planning",
            agent="planner",
            started_at=now,
            completed_at=now,
            summary="Plan written",
            elapsed_ms=61_000,
            task_given="Write the plan",
        )
    )
    ledger.snapshot.merge(findings=["JWT chosen"], modified_files=["plan.md"], custom={"ticket": "AB-1"})

    text = build_handoff(
        ledger,
        state_name="plan-review",
        state=workflow.state("plan-review"),
        task="Review the plan",
        project_settings="## Project\nMonorepo.",
    )

    assert text.startswith("## Project\nMonorepo.")
    assert "## Workflow: feature - State: Plan Review" in text
    assert "### State: Planning [Planner] (1m1s)" in text
    assert "**Summary:** Plan written" in text
    assert "- JWT chosen" in text
    assert "- plan.md" in text
    assert '"ticket": "AB-1"' in text
    assert "## Your Task\nReview the plan" in text


def test_handoff_history_is_bounded(workflow: WorkflowDefinition) -> None:
    ledger = Ledger.start(workflow, session_id="s1")
    now = datetime.now(tz=UTC)
    for i in range(5):
        ledger.history.append(
            StateRecord(state="planning", agent="", started_at=now, completed_at=now, summary=f"run {i}", task_given="t")
        )

    text = build_handoff(ledger, state_name="planning", state=workflow.state("planning"), task="x", history_limit=2)

    assert "run 4" in text and "run 3" in text
    assert "run 2" not in text


def test_resolve_skill_paths(tmp_path: Path) -> None:
    (tmp_path / "testing").mkdir()
    (tmp_path / "docs.md").write_text("# docs", encoding="utf-8")

    paths = resolve_skill_paths(["testing", "docs", "missing", "testing"], [tmp_path])

    assert paths == (tmp_path / "testing", tmp_path / "docs.md")


def test_profile_resolution(tmp_path: Path, workflow: WorkflowDefinition) -> None:
    (tmp_path / "review.md").write_text("", encoding="utf-8")
    (tmp_path / "house-style.md").write_text("", encoding="utf-8")
    resolver = DefaultAgentResolver(
        {"Reviewer": AgentProfile(name="reviewer", tools="read,grep", skills=["review"], model="big", system_prompt="Be strict.")},
        skill_dirs=[tmp_path],
        project_skills=["house-style"],
        default_model="small",
    )
    ledger = Ledger.start(workflow, session_id="s1")

    spec = resolver.resolve(ledger=ledger, state_name="plan-review", state=workflow.state("plan-review"), task="Review")

    assert spec.identity == "reviewer"
    assert spec.persona == "Be strict."
    assert spec.tools == ("read", "grep")
    assert spec.model == "big"
    assert spec.skill_paths == (tmp_path / "house-style.md", tmp_path / "review.md")
    assert "Review" in spec.handoff


def test_missing_profile_falls_back_to_defaults(workflow: WorkflowDefinition) -> None:
    resolver = DefaultAgentResolver(default_model="small")
    ledger = Ledger.start(workflow, session_id="s1")

    spec = resolver.resolve(ledger=ledger, state_name="planning", state=workflow.state("planning"), task="Plan")

    assert spec.identity == "planner"
    assert spec.tools == DEFAULT_TOOLS
    assert spec.model == "small"


def test_inline_persona(workflow: WorkflowDefinition) -> None:
    resolver = DefaultAgentResolver()
    ledger = Ledger.start(workflow, session_id="s1")

    spec = resolver.resolve(
        ledger=ledger, state_name="implementation", state=workflow.state("implementation"), task="Build"
    )

    assert spec.identity == INLINE_AGENT
    assert spec.persona == "You are a careful engineer."
    assert spec.tools == ("read", "write", "bash")
    assert spec.with_handoff_appendix("## Extra").handoff.endswith("\n\n## Extra")
