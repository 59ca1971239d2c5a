"""Input validation for chat messages and sanitization of tool output.

Tool output is filtered before it reaches the LLM context so contact PII is
never echoed back or retained in provider logs.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

MAX_INPUT_LENGTH = 2000

DEFAULT_REDACTED_FIELDS = frozenset({"email", "phone", "created_by"})

# Meta-instructions that try to override the system prompt
PROMPT_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(previous|all|prior|earlier)\s+(instructions|prompts|directions)", re.I),
    re.compile(r"forget\s+(previous|all|prior|earlier)", re.I),
    re.compile(r"disregard\s+(previous|all|prior|earlier)", re.I),
    re.compile(r"for\s+each\s+\w+\s+do\s+", re.I),
    re.compile(r"repeat\s+after\s+me", re.I),
    re.compile(r"system\s*:", re.I),
    re.compile(r"assistant\s*:", re.I),
    re.compile(r"<\|.*?\|>"),
    re.compile(r"\[SYSTEM\]", re.I),
    re.compile(r"\[INST\]", re.I),
]

# Control characters except tab and newline
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


@dataclass(frozen=True)
class InputValidation:
    valid: bool
    sanitized: str
    reason: str | None = None


def validate_user_input(text: str) -> InputValidation:
    if len(text) > MAX_INPUT_LENGTH:
        return InputValidation(
            False, text[:MAX_INPUT_LENGTH],
            f"Input exceeds maximum length of {MAX_INPUT_LENGTH} characters",
        )
    for pattern in PROMPT_INJECTION_PATTERNS:
        if pattern.search(text):
            return InputValidation(False, text, "Input contains potentially malicious patterns")
    return InputValidation(True, _CONTROL_CHARS.sub("", text))


def sanitize_tool_output(data: Any, redact_fields: Iterable[str] = ()) -> Any:
    """Recursively drop redacted keys from dicts nested in lists/tuples/dicts."""
    fields = DEFAULT_REDACTED_FIELDS | frozenset(redact_fields)
    return _sanitize(data, fields)


def _sanitize(data: Any, fields: frozenset[str]) -> Any:
    if isinstance(data, dict):
        return {k: _sanitize(v, fields) for k, v in data.items() if k not in fields}
    if isinstance(data, (list, tuple)):
        return [_sanitize(item, fields) for item in data]
    return data
