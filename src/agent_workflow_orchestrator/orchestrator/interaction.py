"""Everything that needs a human: approval gates and agent questions.

The engine only sees the `Interaction` protocol. Front ends implement it;
`HeadlessInteraction` stands in when nobody is attached.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import sys
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import IO, Protocol

from agent_workflow_orchestrator.orchestrator.agents.ipc import NO_OPERATOR_ANSWER, AgentQuestion
from agent_workflow_orchestrator.orchestrator.workflow.handoff import display_name

logger = logging.getLogger(__name__)

OTHER_CHOICE = "Other (type my own answer)"
DISMISSED_ANSWER = (
    "[NO_ANSWER] The operator dismissed the question. "
    "Continue with your best judgement and note the open question in your output."
)


class Interaction(Protocol):
    async def confirm(self, prompt: str) -> bool: ...

    async def ask(self, question: AgentQuestion, *, state: str) -> str: ...


class HeadlessInteraction:
    """No operator attached: gates pass (or fail) uniformly, questions get a notice."""

    def __init__(self, *, approve: bool = True) -> None:
        self._approve = approve

    async def confirm(self, prompt: str) -> bool:
        logger.info("Auto-answering approval gate", extra={"prompt": prompt, "approved": self._approve})
        return self._approve

    async def ask(self, question: AgentQuestion, *, state: str) -> str:
        logger.info("No operator for agent question", extra={"state": state, "question": question.question})
        return NO_OPERATOR_ANSWER


class AnswerRendezvous:
    """Single-use future for the operator's next typed input.

    Armed when a question needs free text; the next `offer()` resolves it.
    Arming again cancels a stale, unanswered future first.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[str] | None = None
        self.prompt: str | None = None

    @property
    def armed(self) -> bool:
        return self._future is not None and not self._future.done()

    def arm(self, prompt: str) -> asyncio.Future[str]:
        self.cancel()
        self._future = asyncio.get_running_loop().create_future()
        self.prompt = prompt
        return self._future

    def offer(self, text: str) -> bool:
        """Hand typed input to the waiting question; False when nothing is armed."""

        if not self.armed:
            return False
        assert self._future is not None
        self._future.set_result(text)
        self._future = None
        self.prompt = None
        return True

    def cancel(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.cancel()
        self._future = None
        self.prompt = None


class SelectInteraction(ABC):
    """Base for front ends that present choices.

    Questions with options get those options (plus "Other" when free text is
    allowed); questions without options go straight to free-text capture,
    which waits on the `AnswerRendezvous` by default.
    """

    def __init__(self, rendezvous: AnswerRendezvous | None = None) -> None:
        self.rendezvous = rendezvous or AnswerRendezvous()

    @abstractmethod
    async def select(self, prompt: str, choices: Sequence[str]) -> str | None:
        """Return the chosen entry, or None when dismissed."""

    async def announce(self, prompt: str) -> None:
        """Tell the operator their next input answers `prompt`."""

    async def confirm(self, prompt: str) -> bool:
        choice = await self.select(prompt, ["Yes", "No"])
        return choice == "Yes"

    async def ask(self, question: AgentQuestion, *, state: str) -> str:
        header = f"Agent question ({display_name(state)}): {question.question}"
        if not question.options:
            return await self.free_text(header)

        choices = list(question.options)
        if question.allow_free_text:
            choices.append(OTHER_CHOICE)
        choice = await self.select(header, choices)
        if choice is None:
            if question.allow_free_text:
                return await self.free_text(header)
            return DISMISSED_ANSWER
        if choice == OTHER_CHOICE:
            return await self.free_text(header)
        return choice

    async def free_text(self, prompt: str) -> str:
        future = self.rendezvous.arm(prompt)
        await self.announce(prompt)
        return await future


class ConsoleInteraction(SelectInteraction):
    """Plain terminal front end.

    Input is read from the stdin file descriptor through the event loop's
    reader callbacks, so a pending prompt is cancelled cleanly when its agent
    exits. Needs a selector event loop (POSIX).
    """

    def __init__(
        self,
        *,
        out: IO[str] | None = None,
        stdin_fd: int | None = None,
        rendezvous: AnswerRendezvous | None = None,
    ) -> None:
        super().__init__(rendezvous)
        self._out = out or sys.stdout
        self._fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._eof = False

    async def _wait_readable(self) -> None:
        loop = asyncio.get_running_loop()
        ready = loop.create_future()

        def on_readable() -> None:
            if not ready.done():
                ready.set_result(None)

        loop.add_reader(self._fd, on_readable)
        try:
            await ready
        finally:
            loop.remove_reader(self._fd)

    async def _readline(self, prompt: str) -> str:
        self._out.write(prompt)
        self._out.flush()
        while "\n" not in self._pending and not self._eof:
            await self._wait_readable()
            chunk = os.read(self._fd, 4096)
            if not chunk:
                self._eof = True
            self._pending += self._decoder.decode(chunk, final=not chunk)
        line, _, self._pending = self._pending.partition("\n")
        return line.strip()

    async def select(self, prompt: str, choices: Sequence[str]) -> str | None:
        print(prompt, file=self._out)
        for index, choice in enumerate(choices, start=1):
            print(f"  {index}. {choice}", file=self._out)
        raw = await self._readline("> ")
        if raw.isdigit() and 1 <= int(raw) <= len(choices):
            return choices[int(raw) - 1]
        # Typing the choice itself also works.
        matches = [c for c in choices if c.lower() == raw.lower()]
        return matches[0] if matches else None

    async def confirm(self, prompt: str) -> bool:
        raw = await self._readline(f"{prompt} [y/N] ")
        return raw.lower() in {"y", "yes"}

    async def free_text(self, prompt: str) -> str:
        return await self._readline(f"{prompt}\n> ")
