"""Unit tests for ledger persistence.

A ledger must survive a restart intact, and an unreadable file must fail
loudly instead of being replaced by a fresh session.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from agent_workflow_orchestrator.orchestrator.workflow.definition import WorkflowDefinition
from agent_workflow_orchestrator.orchestrator.workflow.ledger import (
    CorruptLedgerError,
    Ledger,
    LedgerNotFoundError,
    LedgerStore,
    SessionStatus,
    Snapshot,
    StateRecord,
)


def _record(state: str) -> StateRecord:
    now = datetime.now(tz=UTC)
    return StateRecord(
        state=state,
        agent="planner",
        started_at=now,
        completed_at=now,
        summary="did it",
        tokens_used=42,
        elapsed_ms=1500,
        task_given="plan",
        output_preview="ok",
        exit_code=0,
    )


def test_store_roundtrip(tmp_path: Path, workflow: WorkflowDefinition) -> None:
    store = LedgerStore(tmp_path / "sessions")
    ledger = Ledger.start(workflow, session_id="s1", initial_task="Add login")
    ledger.history.append(_record("planning"))
    ledger.snapshot.merge(findings=["uses JWT"], modified_files=["a.py"])
    ledger.transition_counts["planning->plan-review"] = 2
    ledger.status = SessionStatus.PAUSED
    store.save(ledger)

    loaded = store.load("s1")
    assert loaded.current_state == "planning"
    assert loaded.initial_task == "Add login"
    assert loaded.history[0].tokens_used == 42
    assert loaded.snapshot.key_findings == ["uses JWT"]
    assert loaded.transition_counts == {"planning->plan-review": 2}
    assert loaded.status is SessionStatus.PAUSED
    assert loaded.workflow == workflow


def test_save_leaves_no_temp_files(tmp_path: Path, workflow: WorkflowDefinition) -> None:
    store = LedgerStore(tmp_path)
    ledger = Ledger.start(workflow, session_id="s1")
    store.save(ledger)
    store.save(ledger)

    assert sorted(p.name for p in tmp_path.iterdir()) == ["s1.json"]
    assert (tmp_path / "s1.json").read_text(encoding="utf-8").endswith("\n")


def test_load_missing_session(tmp_path: Path) -> None:
    with pytest.raises(LedgerNotFoundError):
        LedgerStore(tmp_path).load("nope")


def test_corrupt_ledger_is_fatal(tmp_path: Path) -> None:
    (tmp_path / "bad.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(CorruptLedgerError):
        LedgerStore(tmp_path).load("bad")

    (tmp_path / "shape.json").write_text(json.dumps({"id": "shape"}), encoding="utf-8")
    with pytest.raises(CorruptLedgerError):
        LedgerStore(tmp_path).load("shape")


def test_list_sorts_by_last_update_and_skips_corrupt(tmp_path: Path, workflow: WorkflowDefinition) -> None:
    store = LedgerStore(tmp_path)
    store.save(Ledger.start(workflow, session_id="older"))
    store.save(Ledger.start(workflow, session_id="newer"))
    (tmp_path / "broken.json").write_text("[]", encoding="utf-8")

    assert [ledger.id for ledger in store.list()] == ["newer", "older"]


def test_list_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert LedgerStore(tmp_path / "absent").list() == []


def test_session_ids_cannot_escape_directory(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        LedgerStore(tmp_path).path_for("../etc/passwd")


def test_snapshot_merge_is_additive() -> None:
    snap = Snapshot(key_findings=["a"], modified_files=["x.py"], custom={"k": 1})
    saved = snap.merge(findings=["b"], modified_files=["y.py", "x.py"], pending_tasks=["t"], custom={"j": 2})

    assert snap.key_findings == ["a", "b"]
    assert snap.modified_files == ["x.py", "y.py"]
    assert snap.pending_tasks == ["t"]
    assert snap.custom == {"k": 1, "j": 2}
    assert saved == ["1 finding(s)", "2 file(s)", "1 task(s)", "custom data"]


def test_snapshot_merge_of_nothing_saves_nothing() -> None:
    assert Snapshot().merge() == []


def test_record_is_immutable() -> None:
    record = _record("planning")
    with pytest.raises(Exception):
        record.summary = "rewritten"  # type: ignore[misc]
