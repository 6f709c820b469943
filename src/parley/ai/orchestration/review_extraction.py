"""Recovery of completion payloads from malformed tool-call attempts.

Some models never invoke the completion tool and instead print its JSON
arguments into their prose, e.g. inside a fenced ``json`` block. When the
nudge budget is exhausted the runner tries to salvage that payload here.
"""

from __future__ import annotations

import json
import re

__all__ = [
    "MIN_EXTRACTED_LENGTH",
    "extract_completion_from_malformed_tool_call",
    "looks_like_review",
]

# Stricter than the completion tool's own minimum: the model did not call
# the tool, so the salvaged text has to look substantial on its own.
MIN_EXTRACTED_LENGTH = 50

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(?P<body>.*?)(?:```|\Z)", re.DOTALL)


def extract_completion_from_malformed_tool_call(
    content: str | None,
    field_name: str = "review_content",
) -> str | None:
    """Return the ``field_name`` value embedded in ``content``, if any.

    Fenced code blocks are tried first, then the raw text. Each candidate
    object is located with brace-depth-balanced scanning, parsed as JSON, and
    on failure recovered leniently (unescaped newlines, truncated strings).
    """
    if not content:
        return None

    candidates: list[str] = [match.group("body") for match in _FENCE_RE.finditer(content)]
    candidates.append(content)
    key_pattern = re.compile(r'"' + re.escape(field_name) + r'"\s*:')

    for candidate in candidates:
        key_match = key_pattern.search(candidate)
        if key_match is None:
            continue
        start = candidate.rfind("{", 0, key_match.start())
        if start != -1:
            block = _balanced_block(candidate, start)
            value = _parse_field(block, field_name)
            if value is not None:
                return value
        value = _recover_string_value(candidate[key_match.end() :])
        if value is not None:
            return value
    return None


def looks_like_review(text: str | None, *, min_length: int = MIN_EXTRACTED_LENGTH) -> bool:
    """Minimal shape heuristic applied to salvaged content."""
    if not text:
        return False
    stripped = text.strip()
    return len(stripped) >= min_length and not stripped.startswith("{")


def _balanced_block(text: str, start: int) -> str:
    """Return ``text[start:]`` up to the brace closing the one at ``start``.

    Truncated input (no closing brace) yields the remainder of the text.
    """
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return text[start:]


def _parse_field(block: str, field_name: str) -> str | None:
    try:
        parsed = json.loads(block, strict=False)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        value = parsed.get(field_name)
        if isinstance(value, str):
            return value
    return None


def _recover_string_value(remainder: str) -> str | None:
    quote = remainder.find('"')
    if quote == -1:
        return None
    body = remainder[quote + 1 :]
    escaped = False
    end: int | None = None
    for index, char in enumerate(body):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            end = index
            break
    raw = body[:end] if end is not None else body.rstrip().rstrip("`").rstrip().rstrip("}").rstrip()
    if not raw:
        return None
    return _unescape_json_string(raw)


def _unescape_json_string(value: str) -> str:
    try:
        return json.loads(f'"{value}"', strict=False)
    except json.JSONDecodeError:
        return (
            value.replace("\\n", "\n")
            .replace("\\r", "\r")
            .replace("\\t", "\t")
            .replace('\\"', '"')
            .replace("\\\\", "\\")
        )
