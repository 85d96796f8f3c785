"""Classify agent output: completion marker, failure reason, context overflow."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class AgentResult(str, Enum):
    COMPLETE = "complete"
    FAILED = "failed"
    UNKNOWN = "unknown"


CONTEXT_OVERFLOW_PATTERNS: tuple[str, ...] = (
    "context length exceeded",
    "token limit",
    "maximum context",
    "context window",
    "too many tokens",
)

NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "cannot be done",
    "impossible",
    "not supported",
    "permission denied",
    "access denied",
)

_COMPLETE = "<promise>complete</promise>"
_FAILED = "<promise>failed</promise>"
_REASON_RE = re.compile(r"Reason:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")

UNKNOWN_FAILURE = "Unknown failure (no reason provided)"


@dataclass
class ParsedOutput:
    result: AgentResult = AgentResult.UNKNOWN
    failure_reason: str = ""
    context_overflow: bool = False


def _contains_any(text: str, patterns: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in patterns)


def looks_like_context_overflow(text: str) -> bool:
    if not text:
        return False
    return _contains_any(text, CONTEXT_OVERFLOW_PATTERNS)


def _failure_reason(output: str) -> str:
    m = _REASON_RE.search(output)
    if m and m.group(1).strip():
        return m.group(1).strip()
    idx = output.lower().rfind(_FAILED)
    if idx != -1:
        after = output[idx + len(_FAILED):].strip()
        if after:
            return " ".join(after.splitlines()[:3]).strip()[:500]
    return UNKNOWN_FAILURE


def parse_output(output: str) -> ParsedOutput:
    """Find the last COMPLETE/FAILED marker in *output*.

    When both markers appear, whichever occurs later wins.
    """
    parsed = ParsedOutput(context_overflow=looks_like_context_overflow(output))
    lower = output.lower()
    complete_at = lower.rfind(_COMPLETE)
    failed_at = lower.rfind(_FAILED)

    if complete_at == -1 and failed_at == -1:
        return parsed
    if failed_at > complete_at:
        parsed.result = AgentResult.FAILED
        parsed.failure_reason = _failure_reason(output)
    else:
        parsed.result = AgentResult.COMPLETE
    return parsed


def is_retryable_failure(parsed: ParsedOutput) -> bool:
    """``False`` for context overflow and for failures whose reason says retrying is pointless."""
    if parsed.context_overflow:
        return False
    if parsed.result == AgentResult.UNKNOWN:
        return True
    if parsed.result == AgentResult.FAILED:
        return not _contains_any(parsed.failure_reason, NON_RETRYABLE_PATTERNS)
    return False


def extract_summary(output: str, max_lines: int = 50) -> str:
    """Prose lines from agent output, skipping code blocks, paths and commands."""
    lines: list[str] = []
    in_code = False
    for line in _ANSI_RE.sub("", output).splitlines():
        stripped = line.strip()
        if stripped.startswith("```"):
            in_code = not in_code
            continue
        if in_code or len(stripped) < 5:
            continue
        if stripped.startswith(("/", "$")) or "<promise>" in stripped.lower():
            continue
        lines.append(line)
        if len(lines) >= max_lines:
            break
    return "\n".join(lines).strip() or "No summary available."
