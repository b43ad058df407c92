"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from agent_workflow_orchestrator.orchestrator.agents.ipc import AgentQuestion
from agent_workflow_orchestrator.orchestrator.agents.resolver import AgentSpec
from agent_workflow_orchestrator.orchestrator.agents.supervisor import RunOutcome
from agent_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from agent_workflow_orchestrator.orchestrator.session import OrchestratorContext, start_session
from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition
from agent_workflow_orchestrator.orchestrator.workflow.events import WorkflowEvent

WORKFLOW = {
    "name": "feature",
    "description": "Plan, review, implement",
    "initial": "planning",
    "states": {
        "planning": {"description": "Write a plan", "agent": "planner", "next": ["plan-review"]},
        "plan-review": {
            "description": "Review the plan",
            "agent": "reviewer",
            "requires_approval": True,
            "approval_mode": "post",
            "next": ["planning", "security-review", "implementation"],
        },
        "security-review": {"description": "Security pass", "next": ["plan-review"]},
        "implementation": {
            "description": "Build it",
            "persona": "You are a careful engineer.",
            "tools": "read,write,bash",
            "next": ["deploy", "done"],
        },
        "deploy": {
            "description": "Ship it",
            "requires_approval": True,
            "next": ["done"],
            "timeout_minutes": 1,
        },
        "done": {"description": "Finished"},
    },
}


class FakeRunner:
    """Stands in for the process supervisor; replays scripted outcomes."""

    def __init__(self, *outcomes: RunOutcome, questions: tuple[AgentQuestion, ...] = ()) -> None:
        self.outcomes = list(outcomes)
        self.questions = questions
        self.calls: list[dict[str, object]] = []
        self.answers: list[str] = []
        self.killed = False

    async def run(self, agent: AgentSpec, *, session_id, state, timeout_seconds, on_progress=None, on_question=None):
        self.calls.append(
            {"agent": agent, "session_id": session_id, "state": state, "timeout_seconds": timeout_seconds}
        )
        for question in self.questions:
            assert on_question is not None
            self.answers.append(await on_question(question))
        if on_progress is not None:
            on_progress("working")
        if not self.outcomes:
            return RunOutcome(output="ok", exit_code=0, elapsed_ms=10, tokens_used=5)
        return self.outcomes.pop(0)

    def kill(self) -> bool:
        self.killed = True
        return True


class ScriptedInteraction:
    def __init__(self, *, confirm: bool = True, answer: str = "yes") -> None:
        self._confirm = confirm
        self._answer = answer
        self.prompts: list[str] = []
        self.questions: list[tuple[AgentQuestion, str]] = []

    async def confirm(self, prompt: str) -> bool:
        self.prompts.append(prompt)
        return self._confirm

    async def ask(self, question: AgentQuestion, *, state: str) -> str:
        self.questions.append((question, state))
        return self._answer


@pytest.fixture
def settings(tmp_path: Path) -> OrchestratorSettings:
    return OrchestratorSettings(
        _env_file=None,
        ORCHESTRATOR_SESSIONS_PATH=str(tmp_path / "sessions"),
        ORCHESTRATOR_AGENT_COMMAND=["agent"],
    )


@pytest.fixture
def workflow() -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(WORKFLOW)


@pytest.fixture
def make_context(
    settings: OrchestratorSettings, workflow: WorkflowDefinition
) -> Callable[..., tuple[OrchestratorContext, list[WorkflowEvent]]]:
    """Start a fresh session wired to fakes; returns the context and its event log."""

    def factory(
        runner: FakeRunner | None = None,
        interaction: ScriptedInteraction | None = None,
    ) -> tuple[OrchestratorContext, list[WorkflowEvent]]:
        received: list[WorkflowEvent] = []
        ctx = start_session(
            settings,
            workflow,
            initial_task="Add login",
            runner=runner or FakeRunner(),
            interaction=interaction or ScriptedInteraction(),
            events=received.append,
        )
        return ctx, received

    return factory
