"""Line-oriented protocol between the orchestrator and a running agent.

Three concerns share the agent's stdout and a few side-channel files:

* Progress events: newline-delimited JSON (`message_update`, `message_end`,
  `agent_end`). Lines that are not JSON are diagnostics and are ignored.
* Question markers: `__AWO_Q__:<base64(json)>` with
  `{"question", "options", "allowFreeText", "id"}`. They arrive either on
  stdout or appended to the questions file named by `AWO_QUESTIONS_FILE`,
  which is how the `ask` command reaches the orchestrator when an agent tool
  captures its stdout.
* Answers: the orchestrator writes `{"answer": "..."}` to
  `answer-<session>-<state>-<id>.json` (`answer-<session>-<state>.json` for
  markers without an id); the agent polls for it, reads it and deletes it.

`ask_operator` is the agent-side half; everything else runs in the
orchestrator.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import logging
import os
import re
import sys
import tempfile
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)

QUESTION_MARKER = "__AWO_Q__:"

ENV_IPC_DIR = "AWO_IPC_DIR"
ENV_SESSION_ID = "AWO_SESSION_ID"
ENV_STATE = "AWO_STATE"
ENV_CONTEXT_FILE = "AWO_CONTEXT_FILE"
ENV_QUESTIONS_FILE = "AWO_QUESTIONS_FILE"

ANSWER_POLL_INTERVAL_SECONDS = 0.4
ANSWER_MAX_WAIT_SECONDS = 10 * 60
QUESTION_POLL_INTERVAL_SECONDS = 0.2

LAST_LINE_MAX_CHARS = 500

QUESTION_TIMED_OUT_ANSWER = (
    "[QUESTION TIMED OUT] No answer was received within 10 minutes. "
    "Continue with your best judgement and note the unanswered question in your output."
)
NO_OPERATOR_ANSWER = (
    "[NO_OPERATOR] No operator is attached to this run. "
    "Continue with your best judgement and note the open question in your output."
)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True, slots=True)
class AgentQuestion:
    question: str
    options: tuple[str, ...] = ()
    allow_free_text: bool = True
    question_id: str | None = None

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "question": self.question,
            "options": list(self.options),
            "allowFreeText": self.allow_free_text,
        }
        if self.question_id:
            payload["id"] = self.question_id
        return payload

    @staticmethod
    def from_payload(obj: object) -> AgentQuestion:
        if not isinstance(obj, dict):
            return AgentQuestion(question="")
        question = obj.get("question")
        options = obj.get("options")
        allow = obj.get("allowFreeText")
        question_id = obj.get("id")
        return AgentQuestion(
            question=question if isinstance(question, str) else "",
            options=tuple(o for o in options if isinstance(o, str)) if isinstance(options, list) else (),
            allow_free_text=allow if isinstance(allow, bool) else True,
            question_id=question_id if isinstance(question_id, str) and question_id else None,
        )


QuestionHandler = Callable[[AgentQuestion], Awaitable[str]]


def encode_question_marker(question: AgentQuestion) -> str:
    payload = json.dumps(question.to_payload(), ensure_ascii=False).encode("utf-8")
    return QUESTION_MARKER + base64.b64encode(payload).decode("ascii")


def decode_question_marker(line: str) -> AgentQuestion | None:
    """Parse a marker line; None when the line is not a question marker.

    A marker with an undecodable payload still counts as a question (the agent
    is blocked waiting for an answer), just an empty one.
    """

    stripped = line.strip()
    if not stripped.startswith(QUESTION_MARKER):
        return None
    encoded = stripped[len(QUESTION_MARKER) :]
    try:
        raw = base64.b64decode(encoded, validate=True).decode("utf-8")
        return AgentQuestion.from_payload(json.loads(raw))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Malformed question marker payload", extra={"length": len(encoded)})
        return AgentQuestion(question="")


def _file_stem(session_id: str, state: str) -> str:
    return f"{session_id}-{_UNSAFE_FILENAME_CHARS.sub('_', state)}"


def answer_file_path(ipc_dir: Path, session_id: str, state: str, question_id: str | None = None) -> Path:
    stem = _file_stem(session_id, state)
    if question_id:
        stem += "-" + _UNSAFE_FILENAME_CHARS.sub("_", question_id)
    return ipc_dir / f"answer-{stem}.json"


def context_file_path(ipc_dir: Path, session_id: str, state: str) -> Path:
    return ipc_dir / f"ctx-{_file_stem(session_id, state)}.md"


def questions_file_path(ipc_dir: Path, session_id: str, state: str) -> Path:
    return ipc_dir / f"questions-{_file_stem(session_id, state)}.log"


def post_question(path: Path, question: AgentQuestion) -> None:
    """Append a marker line to the questions file.

    One short `write` on a file opened for append, so lines from concurrent
    writers never interleave.
    """

    with path.open("a", encoding="utf-8") as f:
        f.write(encode_question_marker(question) + "\n")


class QuestionLog:
    """Reader for the questions file: returns markers appended since the last poll."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._offset = 0
        self._partial = b""

    def poll(self) -> list[AgentQuestion]:
        try:
            with self.path.open("rb") as f:
                f.seek(self._offset)
                data = f.read()
        except FileNotFoundError:
            return []
        self._offset += len(data)

        *lines, self._partial = (self._partial + data).split(b"\n")
        questions = []
        for raw in lines:
            question = decode_question_marker(raw.decode("utf-8", errors="replace"))
            if question is not None:
                questions.append(question)
        return questions


def write_answer(path: Path, answer: str) -> None:
    """Publish an answer atomically so the polling agent never reads half a file."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".answer-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"answer": answer}, f, ensure_ascii=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_answer(path: Path) -> str | None:
    """The answer in `path`, or None when absent or not (yet) well formed."""

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (FileNotFoundError, json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(raw, dict) or not isinstance(raw.get("answer"), str):
        return None
    return raw["answer"]


def ask_operator(
    question: AgentQuestion,
    *,
    ipc_dir: Path,
    session_id: str,
    state: str,
    questions_file: Path | None = None,
    poll_interval: float = ANSWER_POLL_INTERVAL_SECONDS,
    max_wait: float = ANSWER_MAX_WAIT_SECONDS,
    stream: IO[str] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Agent side: emit a question and block until the orchestrator answers.

    The marker goes to `questions_file` when given, otherwise to `stream`
    (stdout). Every question carries its own id, so its answer file is never
    shared with another question. Never blocks forever; after `max_wait` the
    agent is told to carry on.
    """

    if not question.question_id:
        question = replace(question, question_id=uuid.uuid4().hex)
    path = answer_file_path(ipc_dir, session_id, state, question.question_id)

    if questions_file is not None:
        post_question(questions_file, question)
    else:
        out = stream or sys.stdout
        out.write("\n" + encode_question_marker(question) + "\n")
        out.flush()

    deadline = clock() + max_wait
    while clock() < deadline:
        sleep(poll_interval)
        answer = read_answer(path)
        if answer is not None:
            path.unlink(missing_ok=True)
            return answer
    return QUESTION_TIMED_OUT_ANSWER


class ProgressTracker:
    """Fold progress events into the two facts the orchestrator keeps.

    - the text produced so far (and its last visible line)
    - the most recent cumulative token usage

    The last line is tracked per delta; the full text is joined only when read.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        # Text after the last newline, and the last visible line before it.
        self._tail = ""
        self._last_complete = ""
        self.tokens_used = 0

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    @property
    def last_line(self) -> str:
        """Last non-blank line, cut to its final `LAST_LINE_MAX_CHARS` characters."""

        return self._tail if self._tail.strip() else self._last_complete

    def _append(self, piece: str) -> None:
        self._chunks.append(piece)
        if "\n" not in piece:
            self._tail = (self._tail + piece)[-LAST_LINE_MAX_CHARS:]
            return
        lines = (self._tail + piece).split("\n")
        self._tail = lines.pop()[-LAST_LINE_MAX_CHARS:]
        for line in reversed(lines):
            if line.strip():
                self._last_complete = line[-LAST_LINE_MAX_CHARS:]
                break

    def apply(self, line: str) -> str | None:
        """Apply one stdout line; returns the new last visible line on text updates."""

        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return None
        if not isinstance(event, dict):
            return None

        event_type = event.get("type")
        if event_type == "message_update":
            delta = event.get("assistantMessageEvent")
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                piece = delta.get("delta")
                if isinstance(piece, str):
                    self._append(piece)
                    return self.last_line
        elif event_type == "message_end":
            message = event.get("message")
            if isinstance(message, dict):
                self._take_usage(message.get("usage"))
        elif event_type == "agent_end":
            messages = event.get("messages")
            if isinstance(messages, list):
                assistant = [m for m in messages if isinstance(m, dict) and m.get("role") == "assistant"]
                if assistant:
                    self._take_usage(assistant[-1].get("usage"))
        return None

    def _take_usage(self, usage: object) -> None:
        # Usage reports are running totals: keep the latest, never sum.
        if isinstance(usage, dict):
            tokens_in = usage.get("input") or 0
            tokens_out = usage.get("output") or 0
            if isinstance(tokens_in, int) and isinstance(tokens_out, int):
                self.tokens_used = tokens_in + tokens_out


class ChannelState(str, Enum):
    IDLE = "idle"
    AWAITING_ANSWER = "awaiting_answer"


class QuestionChannel:
    """Orchestrator side of the question/answer exchange for one agent run.

    A single-slot state machine: `idle -> awaiting_answer -> idle`. At most
    one question is with the caller at a time; questions that arrive while
    one is in flight wait in arrival order and are delivered once the slot
    frees up. Each answer goes to the file named after the question.
    """

    def __init__(self, ipc_dir: Path, session_id: str, state: str, handler: QuestionHandler | None) -> None:
        self._ipc_dir = ipc_dir
        self._session_id = session_id
        self._run_state = state
        self._handler = handler
        self._state = ChannelState.IDLE
        self._backlog: deque[AgentQuestion] = deque()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self.delivered = 0

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._backlog)

    def submit(self, question: AgentQuestion) -> None:
        if self._closed:
            return
        self._backlog.append(question)
        self._deliver_next()

    def _deliver_next(self) -> None:
        if self._closed or self._state is not ChannelState.IDLE or not self._backlog:
            return
        question = self._backlog.popleft()
        self._state = ChannelState.AWAITING_ANSWER
        self.delivered += 1
        self._task = asyncio.get_running_loop().create_task(self._answer(question))

    async def _answer(self, question: AgentQuestion) -> None:
        try:
            if self._handler is None:
                answer = NO_OPERATOR_ANSWER
            else:
                answer = await self._handler(question)
            path = answer_file_path(self._ipc_dir, self._session_id, self._run_state, question.question_id)
            write_answer(path, answer)
            logger.info("Answer delivered to agent", extra={"path": str(path)})
        except asyncio.CancelledError:
            raise
        except Exception:
            # The agent falls back on its own poll ceiling; the channel must
            # still return to idle.
            logger.exception("Question handler failed", extra={"question": question.question})
        finally:
            self._state = ChannelState.IDLE
            self._task = None
            self._deliver_next()

    async def wait_idle(self) -> None:
        while self._task is not None:
            await asyncio.shield(self._task)

    async def aclose(self) -> None:
        """Drop queued questions and cancel the one in flight (the agent is gone)."""

        self._closed = True
        self._backlog.clear()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._state = ChannelState.IDLE
