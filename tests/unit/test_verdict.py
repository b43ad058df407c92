"""Unit tests for reviewer verdict detection."""

from __future__ import annotations

import pytest

from agent_workflow_orchestrator.orchestrator.workflow.verdict import (
    detect_verdict,
    is_execution_approval_loop,
)


@pytest.mark.parametrize(
    "line",
    [
        "Verdict: APPROVE",
        "verdict: approve",
        "**Verdict:** APPROVE",
        "- **Verdict**: Approve - ready to go",
        "  * Verdict: APPROVE",
    ],
)
def test_verdict_line_variants(line: str) -> None:
    result = detect_verdict(f"Some notes.\n{line}\nThanks.")
    assert result.verdict == "approve"
    assert result.source == "verdict-line"


def test_last_verdict_line_wins() -> None:
    text = "Verdict: BLOCK\n\nOn reflection the risk is covered.\n\nVerdict: APPROVE\n"
    assert detect_verdict(text).verdict == "approve"

    text = "Verdict: APPROVE\n...\nActually no.\nVerdict: BLOCK\n"
    assert detect_verdict(text).verdict == "block"


def test_keywords_outside_verdict_do_not_approve() -> None:
    # Reviewer prompts echo instructions mentioning both words.
    text = "Instructions: approve if the plan is sound, otherwise block.\nThe plan looks approved to me."
    result = detect_verdict(text)
    assert result.verdict == "block"
    assert result.source == "fallback"


def test_verdict_section_with_approve_signal() -> None:
    text = "## Review\nLooks fine.\n\n### Verdict\n✅ Ready to implement\n\n### Notes\nblock nothing\n"
    result = detect_verdict(text)
    assert result.verdict == "approve"
    assert result.source == "verdict-section"


def test_verdict_section_with_block_signal() -> None:
    text = "### Verdict\nCorrections required before we continue.\n"
    result = detect_verdict(text)
    assert result.verdict == "block"
    assert result.source == "verdict-section"


def test_ambiguous_verdict_section_blocks() -> None:
    text = "## Verdict\nI would approve, but do not proceed until tests exist.\n"
    result = detect_verdict(text)
    assert result.verdict == "block"
    assert result.source == "verdict-section-ambiguous"


def test_verdict_section_ends_at_same_level_heading() -> None:
    text = "## Verdict\nPending.\n## Appendix\nApproved by legal.\n"
    result = detect_verdict(text)
    assert result.verdict == "block"
    assert result.source == "fallback"


def test_crlf_is_normalized() -> None:
    assert detect_verdict("Intro\r\nVerdict: APPROVE\r\n").verdict == "approve"


def test_empty_output_blocks() -> None:
    assert not detect_verdict("").approved


def test_execution_approval_loop_detection() -> None:
    assert is_execution_approval_loop("Reply exactly: **Proceed with tool execution now.**")
    assert is_execution_approval_loop("I need explicit execution approval first.")
    assert not is_execution_approval_loop("Ran `pytest`; 12 passed.")
