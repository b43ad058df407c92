"""Durable record of one workflow run.

One JSON document per session id. The transition engine is the only writer;
status displays and resume tooling read the files directly.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .definition import WorkflowDefinition

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    HUMAN_INTERVENTION = "human_intervention"


class StateRecord(BaseModel):
    """One completed run of a state. Never rewritten once appended."""

    model_config = ConfigDict(frozen=True)

    state: str
    agent: str
    model: str | None = None
    started_at: datetime
    completed_at: datetime
    summary: str
    tokens_used: int = 0
    elapsed_ms: int = 0
    task_given: str
    output_preview: str = ""
    exit_code: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class Snapshot(BaseModel):
    """Cumulative memory carried across every state of a run.

    Only ever appended to or merged into.
    """

    key_findings: list[str] = Field(default_factory=list)
    modified_files: list[str] = Field(default_factory=list)
    pending_tasks: list[str] = Field(default_factory=list)
    custom: dict[str, Any] = Field(default_factory=dict)

    def merge(
        self,
        *,
        findings: Iterable[str] | None = None,
        modified_files: Iterable[str] | None = None,
        pending_tasks: Iterable[str] | None = None,
        custom: Mapping[str, Any] | None = None,
    ) -> list[str]:
        """Merge additively and return a short description of what was saved."""

        saved: list[str] = []
        new_findings = list(findings or [])
        if new_findings:
            self.key_findings.extend(new_findings)
            saved.append(f"{len(new_findings)} finding(s)")

        new_files = list(modified_files or [])
        if new_files:
            # Ordered set: first occurrence wins.
            self.modified_files = list(dict.fromkeys([*self.modified_files, *new_files]))
            saved.append(f"{len(new_files)} file(s)")

        new_tasks = list(pending_tasks or [])
        if new_tasks:
            self.pending_tasks.extend(new_tasks)
            saved.append(f"{len(new_tasks)} task(s)")

        if custom:
            self.custom.update(custom)
            saved.append("custom data")
        return saved


class Ledger(BaseModel):
    id: str
    workflow_name: str
    workflow: WorkflowDefinition
    created_at: datetime = Field(default_factory=_utc_now)
    last_updated: datetime = Field(default_factory=_utc_now)

    current_state: str
    # Task handed to the state that is (or was last) running; persisted so a
    # crash mid-run can re-issue it.
    current_state_task: str = ""
    initial_task: str = ""

    history: list[StateRecord] = Field(default_factory=list)
    snapshot: Snapshot = Field(default_factory=Snapshot)
    transition_counts: dict[str, int] = Field(default_factory=dict)

    total_tokens: int = 0
    total_elapsed_ms: int = 0
    status: SessionStatus = SessionStatus.RUNNING

    @classmethod
    def start(
        cls,
        workflow: WorkflowDefinition,
        *,
        session_id: str | None = None,
        initial_task: str = "",
    ) -> Ledger:
        return cls(
            id=session_id or uuid.uuid4().hex[:16],
            workflow_name=workflow.name,
            workflow=workflow,
            current_state=workflow.initial,
            initial_task=initial_task,
        )

    @staticmethod
    def transition_key(from_state: str, to_state: str) -> str:
        return f"{from_state}->{to_state}"

    @property
    def completed_states(self) -> set[str]:
        return {record.state for record in self.history}


class LedgerNotFoundError(KeyError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"No ledger found for session {self.session_id!r}"


class CorruptLedgerError(ValueError):
    """A ledger file exists but cannot be read back.

    Fatal: a ledger is never silently replaced with a fresh one.
    """

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Ledger {path} is unreadable: {reason}")
        self.path = path


def validate_session_id(session_id: str) -> str:
    if not _SESSION_ID_RE.match(session_id):
        raise ValueError(f"Invalid session id: {session_id!r}")
    return session_id


class LedgerStore:
    """Persist ledgers as `<directory>/<session id>.json`.

    Writes are atomic (temp file in the same directory, then `os.replace`), so
    a reader never observes a partially written ledger. There is no locking:
    a single engine drives a given session at a time, and different sessions
    never share a file.
    """

    def __init__(self, directory: Path) -> None:
        self._directory = directory

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, session_id: str) -> Path:
        return self._directory / f"{validate_session_id(session_id)}.json"

    def exists(self, session_id: str) -> bool:
        return self.path_for(session_id).exists()

    def load(self, session_id: str) -> Ledger:
        path = self.path_for(session_id)
        if not path.exists():
            raise LedgerNotFoundError(session_id)
        return self._read(path)

    def save(self, ledger: Ledger) -> None:
        path = self.path_for(ledger.id)
        ledger.last_updated = _utc_now()
        payload = json.dumps(ledger.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f".{ledger.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(
            "Ledger saved",
            extra={"session_id": ledger.id, "state": ledger.current_state, "status": ledger.status.value},
        )

    def list(self) -> list[Ledger]:
        """All readable ledgers, most recently updated first."""

        if not self._directory.exists():
            return []

        ledgers: list[Ledger] = []
        for path in sorted(self._directory.glob("*.json")):
            try:
                ledgers.append(self._read(path))
            except CorruptLedgerError:
                logger.error("Skipping unreadable ledger", extra={"path": str(path)})
        return sorted(ledgers, key=lambda ledger: ledger.last_updated, reverse=True)

    @staticmethod
    def _read(path: Path) -> Ledger:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise CorruptLedgerError(path, f"invalid JSON ({e})") from e
        try:
            return Ledger.model_validate(raw)
        except ValidationError as e:
            raise CorruptLedgerError(path, f"{e.error_count()} validation error(s)") from e
