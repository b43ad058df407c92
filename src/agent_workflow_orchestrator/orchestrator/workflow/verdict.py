"""Text heuristics applied to agent output.

Verdict detection never scans the whole document for keywords: reviewer
prompts routinely contain both "approve" and "block" as instructions. A
dedicated `Verdict:` line is authoritative; a `### Verdict` section is the
fallback; anything else blocks.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

VerdictValue = Literal["approve", "block"]

_VERDICT_LINE_RE = re.compile(
    r"^\s{0,3}(?:[-*]\s*)?(?:\*\*)?\s*verdict\s*(?:\*\*)?\s*:\s*(?:\*\*)?\s*(approve|block)\b.*$",
    re.IGNORECASE | re.MULTILINE,
)
_VERDICT_HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s*verdict\b", re.IGNORECASE)
_HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s+\S")

_APPROVE_SIGNAL_RE = re.compile(
    r"✅|\bapprove\b|\bapproved\b|\bready to (?:ship|implement|proceed)\b", re.IGNORECASE
)
_BLOCK_SIGNAL_RE = re.compile(
    r"⛔|🔴|\bblock\b|\bdo not ship\b|\bdo not proceed\b|\bcorrections required\b",
    re.IGNORECASE,
)

_EXECUTION_APPROVAL_LOOP_RE = re.compile(
    r"proceed with tool execution now"
    r"|explicit execution approval"
    r"|cannot provide that truthfully without running commands"
    r"|please send exactly\s*:?\s*\*\*\"?proceed with tool execution now",
    re.IGNORECASE,
)


@dataclass(frozen=True, slots=True)
class Verdict:
    verdict: VerdictValue
    source: str

    @property
    def approved(self) -> bool:
        return self.verdict == "approve"


def _verdict_section(text: str) -> str | None:
    """Return the first `# Verdict` section, heading included.

    The section ends at the next heading of the same or a higher level.
    """

    lines = text.split("\n")
    for start, line in enumerate(lines):
        heading = _VERDICT_HEADING_RE.match(line)
        if heading is None:
            continue
        level = len(heading.group(1))
        section = [line]
        for following in lines[start + 1 :]:
            boundary = _HEADING_RE.match(following)
            if boundary is not None and len(boundary.group(1)) <= level:
                break
            section.append(following)
        return "\n".join(section)
    return None


def detect_verdict(text: str) -> Verdict:
    """Classify reviewer output as approve or block."""

    text = text.replace("\r\n", "\n")

    # The last explicit line wins so a reviewer can correct itself mid-response.
    matches = _VERDICT_LINE_RE.findall(text)
    if matches:
        return Verdict(verdict=matches[-1].lower(), source="verdict-line")

    section = _verdict_section(text)
    if section is not None:
        has_approve = _APPROVE_SIGNAL_RE.search(section) is not None
        has_block = _BLOCK_SIGNAL_RE.search(section) is not None
        if has_approve and not has_block:
            return Verdict(verdict="approve", source="verdict-section")
        if has_block and not has_approve:
            return Verdict(verdict="block", source="verdict-section")
        if has_approve and has_block:
            return Verdict(verdict="block", source="verdict-section-ambiguous")

    return Verdict(verdict="block", source="fallback")


def is_execution_approval_loop(text: str) -> bool:
    """True when an agent asked for permission to act instead of acting."""

    return _EXECUTION_APPROVAL_LOOP_RE.search(text) is not None
