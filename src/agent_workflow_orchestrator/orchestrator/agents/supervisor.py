"""Supervision of one agent subprocess at a time.

The child is spawned without a shell and with stdin closed. Its stdout is
read in chunks, split into lines and routed: question markers go to the
`QuestionChannel`, everything else to the `ProgressTracker`. Markers that
the child appends to its questions file are polled into the same channel.
A timeout sends SIGTERM, waits a short grace window, then SIGKILLs.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_workflow_orchestrator.orchestrator.agents.ipc import (
    ENV_CONTEXT_FILE,
    ENV_IPC_DIR,
    ENV_QUESTIONS_FILE,
    ENV_SESSION_ID,
    ENV_STATE,
    QUESTION_POLL_INTERVAL_SECONDS,
    ProgressTracker,
    QuestionChannel,
    QuestionHandler,
    QuestionLog,
    answer_file_path,
    context_file_path,
    decode_question_marker,
    questions_file_path,
)
from agent_workflow_orchestrator.orchestrator.agents.resolver import AgentSpec
from agent_workflow_orchestrator.orchestrator.workflow.handoff import TRIGGER_INSTRUCTION

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
SPAWN_FAILED_EXIT_CODE = 1

_READ_CHUNK = 64 * 1024

ProgressCallback = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class RunOutcome:
    output: str
    exit_code: int
    elapsed_ms: int
    tokens_used: int
    killed: bool = False

    @property
    def timed_out(self) -> bool:
        return self.exit_code == TIMEOUT_EXIT_CODE

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class AgentRunner(Protocol):
    async def run(
        self,
        agent: AgentSpec,
        *,
        session_id: str,
        state: str,
        timeout_seconds: float,
        on_progress: ProgressCallback | None = None,
        on_question: QuestionHandler | None = None,
    ) -> RunOutcome: ...

    def kill(self) -> bool: ...


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _normalize_exit_code(returncode: int | None, *, timed_out: bool) -> int:
    if timed_out:
        return TIMEOUT_EXIT_CODE
    if returncode is None:
        return 1
    if returncode < 0:
        return 128 + -returncode
    if returncode == TIMEOUT_EXIT_CODE:
        # 124 is reserved for our own timeout verdict.
        logger.warning("Agent exited with reserved code 124; reporting as failure")
        return 1
    return returncode


class AgentProcessSupervisor:
    """Spawn an agent, stream its output, answer its questions, enforce a timeout."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        ipc_dir: Path,
        kill_grace_seconds: float = 5.0,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("Agent command must not be empty")
        self._command = tuple(command)
        self._ipc_dir = ipc_dir
        self._grace = kill_grace_seconds
        self._cwd = cwd
        self._env = dict(env or {})
        self._current: asyncio.subprocess.Process | None = None

    @property
    def running(self) -> asyncio.subprocess.Process | None:
        """The child currently being supervised, if any."""

        proc = self._current
        if proc is None or proc.returncode is not None:
            return None
        return proc

    def build_argv(self, agent: AgentSpec, context_file: Path) -> list[str]:
        argv = [*self._command, "--agent", agent.identity]
        if agent.model:
            argv += ["--model", agent.model]
        if agent.tools:
            argv += ["--tools", ",".join(agent.tools)]
        if agent.persona:
            argv += ["--system-prompt", agent.persona]
        argv += ["--append-system-prompt", str(context_file)]
        for skill in agent.skill_paths:
            argv += ["--skill", str(skill)]
        argv += list(agent.extra_args)
        argv.append(TRIGGER_INSTRUCTION)
        return argv

    async def run(
        self,
        agent: AgentSpec,
        *,
        session_id: str,
        state: str,
        timeout_seconds: float,
        on_progress: ProgressCallback | None = None,
        on_question: QuestionHandler | None = None,
    ) -> RunOutcome:
        if self.running is not None:
            raise RuntimeError("An agent is already running under this supervisor")

        self._ipc_dir.mkdir(parents=True, exist_ok=True)
        context_file = context_file_path(self._ipc_dir, session_id, state)
        answer_path = answer_file_path(self._ipc_dir, session_id, state)
        questions_file = questions_file_path(self._ipc_dir, session_id, state)
        context_file.write_text(agent.handoff, encoding="utf-8")
        questions_file.write_text("", encoding="utf-8")
        answer_path.unlink(missing_ok=True)

        env = {
            **os.environ,
            **self._env,
            ENV_IPC_DIR: str(self._ipc_dir),
            ENV_SESSION_ID: session_id,
            ENV_STATE: state,
            ENV_CONTEXT_FILE: str(context_file),
            ENV_QUESTIONS_FILE: str(questions_file),
        }
        argv = self.build_argv(agent, context_file)

        started = time.monotonic()
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self._cwd,
                    env=env,
                )
            except OSError as e:
                logger.error("Failed to spawn agent", extra={"argv0": argv[0], "error": str(e)})
                return RunOutcome(
                    output=f"Error spawning agent: {e}",
                    exit_code=SPAWN_FAILED_EXIT_CODE,
                    elapsed_ms=_elapsed_ms(started),
                    tokens_used=0,
                )

            logger.info(
                "Agent started",
                extra={"pid": proc.pid, "session_id": session_id, "state": state, "agent": agent.identity},
            )
            channel = QuestionChannel(self._ipc_dir, session_id, state, on_question)
            return await self._supervise(
                proc,
                channel=channel,
                questions=QuestionLog(questions_file),
                started=started,
                timeout_seconds=timeout_seconds,
                on_progress=on_progress,
            )
        finally:
            for leftover in (context_file, questions_file):
                try:
                    leftover.unlink(missing_ok=True)
                except OSError:
                    logger.warning("Could not remove IPC file", extra={"path": str(leftover)})

    async def _supervise(
        self,
        proc: asyncio.subprocess.Process,
        *,
        channel: QuestionChannel,
        questions: QuestionLog,
        started: float,
        timeout_seconds: float,
        on_progress: ProgressCallback | None,
    ) -> RunOutcome:
        assert proc.stdout is not None and proc.stderr is not None
        self._current = proc
        tracker = ProgressTracker()
        stdout_task = asyncio.create_task(self._pump_stdout(proc.stdout, tracker, channel, on_progress))
        stderr_task = asyncio.create_task(proc.stderr.read())
        questions_task = asyncio.create_task(self._follow_questions(questions, channel))
        timed_out = False

        try:
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout_seconds)
            except TimeoutError:
                timed_out = True
                logger.warning(
                    "Agent timed out, terminating",
                    extra={"pid": proc.pid, "timeout_seconds": timeout_seconds},
                )
                await self._terminate(proc)

            # Pipes can outlive the child when it left grandchildren behind.
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(asyncio.gather(stdout_task, stderr_task), timeout=self._grace)
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        finally:
            for task in (stdout_task, stderr_task, questions_task):
                if not task.done():
                    task.cancel()
            await channel.aclose()
            self._current = None

        stderr = ""
        if stderr_task.done() and not stderr_task.cancelled() and stderr_task.exception() is None:
            stderr = stderr_task.result().decode("utf-8", errors="replace").strip()

        exit_code = _normalize_exit_code(proc.returncode, timed_out=timed_out)
        output = tracker.text
        if not output and exit_code != 0 and stderr:
            output = f"[exit {exit_code}] {stderr}"
        if timed_out:
            output += f"\n\nAgent timed out after {timeout_seconds:g}s and was killed. Partial output above."

        elapsed = _elapsed_ms(started)
        logger.info(
            "Agent finished",
            extra={"pid": proc.pid, "exit_code": exit_code, "elapsed_ms": elapsed, "tokens": tracker.tokens_used},
        )
        return RunOutcome(
            output=output,
            exit_code=exit_code,
            elapsed_ms=elapsed,
            tokens_used=tracker.tokens_used,
            killed=timed_out,
        )

    async def _pump_stdout(
        self,
        stream: asyncio.StreamReader,
        tracker: ProgressTracker,
        channel: QuestionChannel,
        on_progress: ProgressCallback | None,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            buffer += decoder.decode(chunk)
            *lines, buffer = buffer.split("\n")
            for line in lines:
                self._route_line(line, tracker, channel, on_progress)
        buffer += decoder.decode(b"", final=True)
        # An unterminated last line is still a complete event.
        self._route_line(buffer, tracker, channel, on_progress)

    @staticmethod
    async def _follow_questions(questions: QuestionLog, channel: QuestionChannel) -> None:
        while True:
            for question in questions.poll():
                channel.submit(question)
            await asyncio.sleep(QUESTION_POLL_INTERVAL_SECONDS)

    @staticmethod
    def _route_line(
        line: str,
        tracker: ProgressTracker,
        channel: QuestionChannel,
        on_progress: ProgressCallback | None,
    ) -> None:
        if not line.strip():
            return
        question = decode_question_marker(line)
        if question is not None:
            channel.submit(question)
            return
        last_line = tracker.apply(line)
        if last_line is not None and on_progress is not None:
            try:
                on_progress(last_line)
            except Exception:
                logger.exception("Progress callback failed")

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace)
        except TimeoutError:
            logger.warning("Agent ignored SIGTERM, killing", extra={"pid": proc.pid})
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    def kill(self) -> bool:
        """Terminate the running agent (SIGTERM, then SIGKILL after the grace window).

        Returns False when nothing is running.
        """

        proc = self.running
        if proc is None:
            return False
        logger.info("Killing agent on request", extra={"pid": proc.pid})
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        asyncio.get_running_loop().call_later(self._grace, self._force_kill, proc)
        return True

    @staticmethod
    def _force_kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
