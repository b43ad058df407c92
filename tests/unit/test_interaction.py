"""Unit tests for operator interaction front ends."""

from __future__ import annotations

import asyncio
import io
import os
import sys
from collections.abc import Iterator, Sequence

import pytest
from conftest import FakeRunner

from agent_workflow_orchestrator.orchestrator.agents.ipc import NO_OPERATOR_ANSWER, AgentQuestion
from agent_workflow_orchestrator.orchestrator.config import OrchestratorSettings
from agent_workflow_orchestrator.orchestrator.interaction import (
    DISMISSED_ANSWER,
    OTHER_CHOICE,
    AnswerRendezvous,
    ConsoleInteraction,
    HeadlessInteraction,
    SelectInteraction,
)
from agent_workflow_orchestrator.orchestrator.session import start_session
from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition
from agent_workflow_orchestrator.orchestrator.workflow.engine import submit_operator_input


class PickingInteraction(SelectInteraction):
    """Selects a fixed choice and records what it was offered."""

    def __init__(self, pick: str | None) -> None:
        super().__init__()
        self.pick = pick
        self.offered: list[list[str]] = []
        self.announced: list[str] = []

    async def select(self, prompt: str, choices: Sequence[str]) -> str | None:
        self.offered.append(list(choices))
        return self.pick

    async def announce(self, prompt: str) -> None:
        self.announced.append(prompt)


async def test_headless_interaction() -> None:
    assert await HeadlessInteraction().confirm("ok?") is True
    assert await HeadlessInteraction(approve=False).confirm("ok?") is False
    assert await HeadlessInteraction().ask(AgentQuestion(question="?"), state="planning") == NO_OPERATOR_ANSWER


async def test_rendezvous_resolves_on_next_offer() -> None:
    rendezvous = AnswerRendezvous()
    assert rendezvous.offer("too early") is False

    future = rendezvous.arm("Name?")
    assert rendezvous.armed and rendezvous.prompt == "Name?"
    assert rendezvous.offer("Ada") is True
    assert await future == "Ada"
    assert not rendezvous.armed
    assert rendezvous.offer("again") is False


async def test_rearming_cancels_stale_future() -> None:
    rendezvous = AnswerRendezvous()
    stale = rendezvous.arm("first")
    fresh = rendezvous.arm("second")

    assert stale.cancelled()
    rendezvous.offer("answer")
    assert await fresh == "answer"


async def test_option_choice_is_returned() -> None:
    interaction = PickingInteraction("sqlite")

    answer = await interaction.ask(AgentQuestion(question="DB?", options=("postgres", "sqlite")), state="planning")

    assert answer == "sqlite"
    assert interaction.offered == [["postgres", "sqlite", OTHER_CHOICE]]


async def test_options_only_question_has_no_other_choice() -> None:
    interaction = PickingInteraction(None)

    answer = await interaction.ask(
        AgentQuestion(question="DB?", options=("postgres",), allow_free_text=False), state="planning"
    )

    assert interaction.offered == [["postgres"]]
    assert answer == DISMISSED_ANSWER


async def test_other_choice_waits_for_typed_input() -> None:
    interaction = PickingInteraction(OTHER_CHOICE)

    pending = asyncio.create_task(
        interaction.ask(AgentQuestion(question="DB?", options=("postgres",)), state="plan-review")
    )
    await asyncio.sleep(0)

    assert interaction.announced == ["Agent question (Plan Review): DB?"]
    assert interaction.rendezvous.offer("duckdb") is True
    assert await pending == "duckdb"


async def test_question_without_options_goes_straight_to_free_text() -> None:
    interaction = PickingInteraction("unused")

    pending = asyncio.create_task(interaction.ask(AgentQuestion(question="Name?"), state="planning"))
    await asyncio.sleep(0)
    interaction.rendezvous.offer("login-v2")

    assert await pending == "login-v2"
    assert interaction.offered == []


@pytest.mark.parametrize(("pick", "expected"), [("Yes", True), ("No", False), (None, False)])
async def test_select_based_confirm(pick: str | None, expected: bool) -> None:
    assert await PickingInteraction(pick).confirm("Proceed?") is expected


async def test_operator_input_reaches_waiting_question(
    settings: OrchestratorSettings, workflow: WorkflowDefinition
) -> None:
    interaction = PickingInteraction(OTHER_CHOICE)
    ctx = start_session(settings, workflow, runner=FakeRunner(), interaction=interaction)
    assert ctx.rendezvous is interaction.rendezvous

    pending = asyncio.create_task(ctx.interaction.ask(AgentQuestion(question="?", options=("a",)), state="planning"))
    await asyncio.sleep(0)

    assert submit_operator_input(ctx, "typed by operator") is True
    assert await pending == "typed by operator"
    assert submit_operator_input(ctx, "nobody waiting") is False


@pytest.fixture
def stdin_pipe() -> Iterator[tuple[int, int]]:
    read_fd, write_fd = os.pipe()
    yield read_fd, write_fd
    os.close(read_fd)
    os.close(write_fd)


@pytest.mark.skipif(sys.platform == "win32", reason="selector event loop required")
async def test_console_reads_buffered_lines(stdin_pipe: tuple[int, int]) -> None:
    read_fd, write_fd = stdin_pipe
    out = io.StringIO()
    console = ConsoleInteraction(out=out, stdin_fd=read_fd)
    os.write(write_fd, b"2\ny\n")

    assert await console.select("DB?", ["postgres", "sqlite"]) == "sqlite"
    assert await console.confirm("Proceed?") is True
    assert "  2. sqlite" in out.getvalue()


@pytest.mark.skipif(sys.platform == "win32", reason="selector event loop required")
async def test_console_prompt_is_cancellable(stdin_pipe: tuple[int, int]) -> None:
    read_fd, write_fd = stdin_pipe
    console = ConsoleInteraction(out=io.StringIO(), stdin_fd=read_fd)

    pending = asyncio.create_task(console.free_text("Name?"))
    await asyncio.sleep(0.05)
    pending.cancel()

    with pytest.raises(asyncio.CancelledError):
        await pending
    assert asyncio.get_running_loop().remove_reader(read_fd) is False

    os.write(write_fd, b"later\n")
    assert await console.free_text("Name?") == "later"


@pytest.mark.skipif(sys.platform == "win32", reason="selector event loop required")
async def test_console_free_text_at_end_of_input() -> None:
    read_fd, write_fd = os.pipe()
    os.write(write_fd, "naïve answer".encode())
    os.close(write_fd)
    console = ConsoleInteraction(out=io.StringIO(), stdin_fd=read_fd)

    try:
        assert await console.free_text("Name?") == "naïve answer"
    finally:
        os.close(read_fd)
