"""Rendering of the text handed to an agent.

The handoff combines project settings (opaque), the workflow position, the
run history, the accumulated snapshot and the task itself. It is written to a
file and passed to the agent by path.
"""

from __future__ import annotations

import json
import re

from .definition import StateDefinition
from .ledger import Ledger

_APPROVAL_LOOP_PHRASES = (
    re.compile(r"reply exactly:\s*\*\*proceed with tool execution now\.\*\*", re.IGNORECASE),
    re.compile(
        r"please send(?: exactly)?:?\s*\*\*\"?proceed with tool execution now\.?\"?\*\*",
        re.IGNORECASE,
    ),
    re.compile(
        r"to continue properly,\s*send:?\s*\*\*proceed with tool execution now\.\*\*",
        re.IGNORECASE,
    ),
)
_REMOVED_PHRASE = "[removed repetitive approval-loop phrase]"

EXECUTION_OVERRIDE = "\n".join(
    [
        "## Execution Override",
        "You are already authorized to run tools now. Do NOT ask for further approval.",
        "Immediately execute at least one concrete repository command before any narrative text.",
        "Then continue implementing all requested changes and provide evidence.",
    ]
)

TRIGGER_INSTRUCTION = (
    "Execute the task now. You are explicitly authorized to run the required tools "
    "in this workspace. Do not ask for additional approval."
)


def display_name(raw: str) -> str:
    """`plan-review` -> `Plan Review`."""

    return " ".join(w[:1].upper() + w[1:] for w in re.split(r"[-_]", raw))


def format_elapsed(ms: int) -> str:
    if ms < 60_000:
        return f"{round(ms / 1000)}s"
    return f"{ms // 60_000}m{round((ms % 60_000) / 1000)}s"


def sanitize_handover_text(text: str) -> str:
    """Strip approval-loop phrases so they are not echoed into the next agent."""

    for pattern in _APPROVAL_LOOP_PHRASES:
        text = pattern.sub(_REMOVED_PHRASE, text)
    return text.strip()


def build_context_block(ledger: Ledger, *, history_limit: int) -> str:
    lines: list[str] = []

    recent = ledger.history[-history_limit:] if history_limit > 0 else []
    if recent:
        lines.append("## Workflow History")
        for record in recent:
            elapsed = f" ({format_elapsed(record.elapsed_ms)})" if record.elapsed_ms else ""
            agent = f" [{display_name(record.agent)}]" if record.agent else ""
            lines.append(f"### State: {display_name(record.state)}{agent}{elapsed}")
            lines.append(f"**Task:** {sanitize_handover_text(record.task_given)}")
            lines.append(f"**Summary:** {sanitize_handover_text(record.summary)}")
            lines.append("")

    snap = ledger.snapshot
    sections = (
        ("## Key Findings (carried from previous states)", snap.key_findings),
        ("## Modified Files (this workflow)", snap.modified_files),
        ("## Pending Tasks (handed over from previous states)", snap.pending_tasks),
    )
    for title, items in sections:
        if items:
            lines.append(title)
            lines.extend(f"- {item}" for item in items)
            lines.append("")

    if snap.custom:
        lines.append("## Additional Context")
        lines.append("```json")
        lines.append(json.dumps(snap.custom, indent=2, ensure_ascii=False, default=str))
        lines.append("```")
        lines.append("")

    return "\n".join(lines)


def build_handoff(
    ledger: Ledger,
    *,
    state_name: str,
    state: StateDefinition,
    task: str,
    project_settings: str = "",
    history_limit: int = 12,
) -> str:
    parts = [
        project_settings,
        f"## Workflow: {ledger.workflow_name} - State: {display_name(state_name)}",
        f"**Role:** {state.description}",
        "",
        build_context_block(ledger, history_limit=history_limit),
        "## Your Task",
        task,
        "",
        "## When You Are Done",
        "End your response with a clear summary of:",
        "- What you accomplished",
        "- Key findings or decisions made",
        "- Files created or modified (if any)",
        "- Recommendations or blockers for the next step",
    ]
    return "\n".join(parts).lstrip("\n")
