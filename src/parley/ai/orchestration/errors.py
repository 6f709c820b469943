"""Error taxonomy and vendor error classification for the conversation loop.

Only :class:`FatalModelError` and :class:`ServiceUnavailableError` escape
:meth:`ConversationRunner.run`; every other failure resolves to a string.
Vendor error sniffing lives here, behind :class:`FatalErrorClassifier`, so the
model client and the runner share one adapter instead of re-deriving regexes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

__all__ = [
    "ErrorCode",
    "ParleyError",
    "OperationCancelledError",
    "FatalModelError",
    "ServiceUnavailableError",
    "TransientModelError",
    "FatalPattern",
    "FatalErrorClassifier",
    "DEFAULT_FATAL_PATTERNS",
    "error_message",
    "extract_first_json_object",
    "is_cancellation_error",
    "is_service_unavailable_error",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Stable codes carried by fatal errors for upstream UX mapping."""

    MODEL_NOT_SUPPORTED = "model_not_supported"
    SYSTEM_PROMPT_NOT_SUPPORTED = "system_prompt_not_supported"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CANCELLED = "cancelled"


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class ParleyError(Exception):
    """Base class for errors raised by the conversation engine."""


class OperationCancelledError(ParleyError):
    """Raised when a cancellation token fires while work is pending."""

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class FatalModelError(ParleyError):
    """A vendor/model error that must abort the run rather than be retried.

    Attributes:
        code: Stable machine-readable code (see :class:`ErrorCode`).
        user_message: Message suitable for showing to the user.
        raw_message: The vendor message the error was derived from.
    """

    def __init__(self, user_message: str, code: str, *, raw_message: str | None = None) -> None:
        super().__init__(user_message)
        self.code = code
        self.user_message = user_message
        self.raw_message = raw_message


class ServiceUnavailableError(ParleyError):
    """Upstream is temporarily unavailable; a higher level may retry."""

    code = ErrorCode.SERVICE_UNAVAILABLE


class TransientModelError(ParleyError):
    """Recoverable failure; the loop reports it to the model and continues."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def error_message(error: BaseException | object) -> str:
    """Best-effort extraction of a human-readable message from any error."""
    if isinstance(error, BaseException):
        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message
        text = str(error)
        return text or error.__class__.__name__
    if isinstance(error, Mapping) and isinstance(error.get("message"), str):
        return str(error["message"])
    try:
        return str(error)
    except Exception:  # pragma: no cover - pathological __str__
        return repr(error)


def extract_first_json_object(text: str) -> dict[str, Any] | None:
    """Return the first balanced ``{...}`` block in ``text`` that parses as JSON.

    Brace depth is tracked outside of string literals so braces inside
    quoted values do not end the object early.
    """
    if not text:
        return None
    start = text.find("{")
    while start != -1:
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
                    candidate = text[start : index + 1]
                    try:
                        parsed = json.loads(candidate)
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find("{", start + 1)
    return None


def is_cancellation_error(error: BaseException) -> bool:
    """Return True when ``error`` represents cooperative cancellation."""
    if isinstance(error, (OperationCancelledError, asyncio.CancelledError)):
        return True
    return "cancel" in error_message(error).lower()


def is_service_unavailable_error(error: BaseException) -> bool:
    """Return True for upstream "service unavailable" failures."""
    if isinstance(error, ServiceUnavailableError):
        return True
    if getattr(error, "status_code", None) == 503:
        return True
    return "service unavailable" in error_message(error).lower()


# -----------------------------------------------------------------------------
# Fatal Error Classification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class FatalPattern:
    """Configurable description of a vendor error that must abort a run.

    A pattern matches when the extracted error code equals ``code`` or is in
    ``vendor_codes``, every entry of ``message_substrings`` occurs in the
    vendor message (case-insensitive), and ``message_pattern``, when set,
    is found in it by :func:`re.search` (case-insensitive). Without message
    constraints the code alone is sufficient.

    Attributes:
        code: Stable code reported on the raised :class:`FatalModelError`.
        friendly_message: Template shown to the user; ``{model}`` is replaced by
            the model name, or by "the selected model" when it is unknown.
        vendor_codes: Additional vendor ``code``/``type`` values that map to ``code``.
        message_substrings: Substrings that must all appear in the vendor message.
        message_pattern: Regular expression the vendor message must contain.
    """

    code: str
    friendly_message: str
    vendor_codes: tuple[str, ...] = ()
    message_substrings: tuple[str, ...] = ()
    message_pattern: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> FatalPattern:
        pattern = payload.get("message_pattern")
        return cls(
            code=str(payload["code"]),
            friendly_message=str(payload.get("friendly_message") or payload["code"]),
            vendor_codes=tuple(str(item) for item in payload.get("vendor_codes", ()) or ()),
            message_substrings=tuple(str(item) for item in payload.get("message_substrings", ()) or ()),
            message_pattern=str(pattern) if pattern else None,
        )

    def matches(self, vendor_code: str | None, vendor_message: str) -> bool:
        codes = {self.code.lower(), *(item.lower() for item in self.vendor_codes)}
        if not vendor_code or vendor_code.lower() not in codes:
            return False
        message = vendor_message.lower()
        if not all(fragment.lower() in message for fragment in self.message_substrings):
            return False
        if self.message_pattern is None:
            return True
        return re.search(self.message_pattern, vendor_message, re.IGNORECASE) is not None

    def render(self, model_name: str | None) -> str:
        """Return the user-facing message for ``model_name``."""
        if model_name:
            return self.friendly_message.format(model=model_name)
        text = self.friendly_message.format(model=UNKNOWN_MODEL_LABEL)
        return text[:1].upper() + text[1:]


UNKNOWN_MODEL_LABEL = "the selected model"

# "system" as a whole word next to a rejection phrase, so "filesystem" or
# "ecosystem" in an unrelated 400 never matches.
SYSTEM_PROMPT_REJECTION = (
    r"\bsystem[ _](?:prompts?|messages?|role)\b.*\bnot (?:be )?(?:supported|allowed)"
    r"|\b(?:does not|doesn't|do not|don't) support (?:the )?['\"]?system\b"
    r"|\bunsupported\b.*\brole\b.*['\"]system['\"]"
)

DEFAULT_FATAL_PATTERNS: tuple[FatalPattern, ...] = (
    FatalPattern(
        code=ErrorCode.MODEL_NOT_SUPPORTED,
        friendly_message="{model} is not supported. Please choose another model in settings.",
    ),
    FatalPattern(
        code=ErrorCode.SYSTEM_PROMPT_NOT_SUPPORTED,
        friendly_message="{model} does not accept system prompts. Please choose another model in settings.",
        vendor_codes=("invalid_request_body", "invalid_request_error"),
        message_pattern=SYSTEM_PROMPT_REJECTION,
    ),
)


@dataclass(slots=True)
class FatalErrorClassifier:
    """Maps raw vendor errors onto :class:`FatalModelError`.

    Typed errors that already carry a ``code`` attribute are checked first;
    otherwise the first JSON object embedded in the error text is inspected
    for ``code``, ``type`` and ``message`` fields (also under a nested
    ``error`` key, which is how OpenAI-compatible servers wrap them).
    """

    patterns: tuple[FatalPattern, ...] = field(default_factory=lambda: DEFAULT_FATAL_PATTERNS)

    @classmethod
    def from_settings(cls, entries: Iterable[Mapping[str, Any]] | None) -> FatalErrorClassifier:
        """Build a classifier from settings entries, keeping the defaults first."""
        extra = tuple(FatalPattern.from_mapping(entry) for entry in entries or ())
        return cls(patterns=DEFAULT_FATAL_PATTERNS + extra)

    def classify(self, error: BaseException, *, model_name: str | None = None) -> FatalModelError | None:
        """Return a FatalModelError for ``error`` or ``None`` when not fatal."""
        if isinstance(error, FatalModelError):
            return error
        raw = error_message(error)
        for vendor_code, vendor_message in self._candidates(error, raw):
            for pattern in self.patterns:
                if pattern.matches(vendor_code, vendor_message):
                    friendly = pattern.render(model_name)
                    LOGGER.error(
                        "Fatal model error (%s) for %s. API response: %s",
                        pattern.code,
                        model_name or UNKNOWN_MODEL_LABEL,
                        raw.replace('\\"', '"').replace("\n", ""),
                    )
                    return FatalModelError(friendly, pattern.code, raw_message=raw)
        return None

    def _candidates(self, error: BaseException, raw: str) -> list[tuple[str | None, str]]:
        candidates: list[tuple[str | None, str]] = []
        typed_code = getattr(error, "code", None)
        if isinstance(typed_code, str) and typed_code:
            candidates.append((typed_code, raw))
        body = getattr(error, "body", None)
        if isinstance(body, Mapping):
            candidates.extend(self._fields(body, raw))
        payload = extract_first_json_object(raw)
        if payload is not None:
            candidates.extend(self._fields(payload, raw))
        else:
            match = re.search(r'"code"\s*:\s*"([^"]+)"', raw)
            if match:
                candidates.append((match.group(1), raw))
        return candidates

    @staticmethod
    def _fields(payload: Mapping[str, Any], raw: str) -> Sequence[tuple[str | None, str]]:
        scopes: list[Mapping[str, Any]] = [payload]
        nested = payload.get("error")
        if isinstance(nested, Mapping):
            scopes.append(nested)
        found: list[tuple[str | None, str]] = []
        for scope in scopes:
            message = scope.get("message")
            text = message if isinstance(message, str) else raw
            for key in ("code", "type"):
                value = scope.get(key)
                if isinstance(value, str) and value:
                    found.append((value, text))
        return found
