"""Recover structured data from free-text generator output.

Provider replies are supposed to be bare JSON but routinely arrive wrapped in
code fences, preceded by prose, or cut off at the output token budget. The
extraction here is an ordered chain: strip fences, slice out the outermost
structure, then apply textual repair strategies one after another, each
followed by an attempt to close the open brackets/braces and reparse. A final
fallback truncates at the last comma that ends a complete value. Anything that
still does not parse raises :class:`ExtractionError`; a partial value is never
returned.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("grantforge.extraction")

RepairStrategy = Callable[[str], str]

_STRING_BODY = r'(?:[^"\\]|\\.)*'
# A field starts right after an opening brace/bracket or a comma.
_FIELD_START = r'(?:,|(?<=[{\[]))\s*"'

LEADING_FENCE_PATTERN = re.compile(r"^\s*```[A-Za-z0-9_-]*[ \t]*\n?")
TRAILING_FENCE_PATTERN = re.compile(r"\n?[ \t]*```\s*$")
TRAILING_COMMA_PATTERN = re.compile(r",\s*$")
TRAILING_COLON_PATTERN = re.compile(r":\s*$")
OPEN_STRING_FIELD_PATTERN = re.compile(_FIELD_START + _STRING_BODY + r'"\s*:\s*"' + _STRING_BODY + r"\\?$")
DANGLING_KEY_PATTERN = re.compile(_FIELD_START + _STRING_BODY + r'"?\s*$')
PARTIAL_LITERAL_PATTERN = re.compile(r"(?<=[:\[,])\s*(?:t|tr|tru|f|fa|fal|fals|n|nu|nul|-|-?\d+\.|-?\d+(?:\.\d+)?[eE][+-]?)$")

MAX_TRUNCATION_ATTEMPTS = 64


class ExtractionError(ValueError):
    """Raised when provider output could not be parsed or repaired."""

    def __init__(self, message: str, *, text_length: int, last_error: str | None = None) -> None:
        super().__init__(message)
        self.text_length = text_length
        self.last_error = last_error

    def to_detail(self) -> dict[str, object]:
        return {
            "message": str(self),
            "text_length": self.text_length,
            "error": self.last_error,
        }


@dataclass(frozen=True)
class ExtractionResult:
    value: Any
    strategy: str

    @property
    def repaired(self) -> bool:
        return self.strategy != "direct"


def strip_code_fences(text: str) -> str:
    stripped = LEADING_FENCE_PATTERN.sub("", text, count=1)
    stripped = TRAILING_FENCE_PATTERN.sub("", stripped, count=1)
    return stripped.strip()


def drop_trailing_comma(text: str) -> str:
    return TRAILING_COMMA_PATTERN.sub("", text)


def drop_trailing_colon(text: str) -> str:
    return TRAILING_COLON_PATTERN.sub("", text)


def drop_open_string_field(text: str) -> str:
    return OPEN_STRING_FIELD_PATTERN.sub("", text, count=1)


def drop_dangling_key(text: str) -> str:
    return DANGLING_KEY_PATTERN.sub("", text, count=1)


def drop_partial_literal(text: str) -> str:
    """Drop a ``true``/``false``/``null`` or number cut off before it was complete."""
    if _scan(text).in_string:
        return text
    return PARTIAL_LITERAL_PATTERN.sub("", text, count=1)


REPAIR_STRATEGIES: tuple[tuple[str, RepairStrategy], ...] = (
    ("drop_partial_literal", drop_partial_literal),
    ("drop_trailing_comma", drop_trailing_comma),
    ("drop_trailing_colon", drop_trailing_colon),
    ("drop_open_string_field", drop_open_string_field),
    ("drop_dangling_key", drop_dangling_key),
)


@dataclass
class _ScanState:
    open_closers: list[str]
    in_string: bool
    # Offsets of commas outside string literals; each one ends a complete value.
    value_boundaries: list[int]


def _scan(text: str) -> _ScanState:
    state = _ScanState(open_closers=[], in_string=False, value_boundaries=[])
    escaped = False
    for index, char in enumerate(text):
        if state.in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                state.in_string = False
            continue
        if char == '"':
            state.in_string = True
        elif char == ",":
            state.value_boundaries.append(index)
        elif char == "{":
            state.open_closers.append("}")
        elif char == "[":
            state.open_closers.append("]")
        elif char in "}]" and state.open_closers and state.open_closers[-1] == char:
            state.open_closers.pop()
    return state


def closing_suffix(text: str) -> str:
    """Return the closers needed to balance every bracket/brace left open.

    Brackets and braces inside string literals are ignored and closers are
    emitted in nesting order.
    """
    return "".join(reversed(_scan(text).open_closers))


def close_structures(text: str) -> str:
    return text + closing_suffix(text)


def _locate_structure(text: str) -> tuple[str | None, str] | None:
    starts = [index for index in (text.find("{"), text.find("[")) if index != -1]
    if not starts:
        return None
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    bounded = text[start : end + 1] if end > start else None
    return bounded, text[start:].rstrip()


def _try_parse(candidate: str) -> tuple[Any, str | None]:
    try:
        return json.loads(candidate), None
    except json.JSONDecodeError as exc:
        return None, str(exc)


def _apply_repair_chain(candidate: str) -> tuple[ExtractionResult | None, str | None]:
    working = candidate.rstrip()
    applied = "close_structures"
    last_error: str | None = None
    for name, strategy in REPAIR_STRATEGIES:
        stripped = strategy(working).rstrip()
        if stripped != working:
            applied = name
            working = stripped
        if not working:
            break
        value, error = _try_parse(close_structures(working))
        if error is None:
            return ExtractionResult(value=value, strategy=applied), None
        last_error = error
    return None, last_error


def _truncate_to_complete_field(candidate: str) -> tuple[ExtractionResult | None, str | None]:
    boundaries = _scan(candidate).value_boundaries
    last_error: str | None = None
    for boundary in reversed(boundaries[-MAX_TRUNCATION_ATTEMPTS:]):
        truncated = candidate[:boundary]
        value, error = _try_parse(close_structures(truncated))
        if error is None:
            return ExtractionResult(value=value, strategy="truncate_to_last_field"), None
        last_error = error
    return None, last_error


def extract_structured(raw: str) -> ExtractionResult:
    text = raw or ""
    stripped = strip_code_fences(text)
    located = _locate_structure(stripped)
    if located is None:
        _log_unrepairable(text, "no opening brace or bracket found")
        raise ExtractionError(
            "Generator output did not contain a JSON object or array.",
            text_length=len(text),
            last_error="no opening brace or bracket found",
        )

    bounded, tail = located
    last_error: str | None = None
    if bounded is not None:
        value, last_error = _try_parse(bounded)
        if last_error is None:
            return ExtractionResult(value=value, strategy="direct")

    candidates = list(dict.fromkeys(item for item in (tail, bounded) if item))
    for attempt in (_apply_repair_chain, _truncate_to_complete_field):
        for candidate in candidates:
            result, error = attempt(candidate)
            if result is not None:
                logger.info(
                    "output_repaired",
                    extra={
                        "event": "output_repaired",
                        "strategy": result.strategy,
                        "text_length": len(text),
                    },
                )
                return result
            last_error = error or last_error

    _log_unrepairable(text, last_error)
    raise ExtractionError(
        f"Generator output truncated at {len(text)} chars could not be repaired.",
        text_length=len(text),
        last_error=last_error,
    )


def extract_json_object(raw: str) -> dict[str, Any]:
    result = extract_structured(raw)
    if not isinstance(result.value, dict):
        raise ExtractionError(
            "Generator output must be a JSON object.",
            text_length=len(raw or ""),
            last_error=f"parsed a {type(result.value).__name__} instead of an object",
        )
    return result.value


def _log_unrepairable(text: str, last_error: str | None) -> None:
    logger.warning(
        "output_unrepairable",
        extra={
            "event": "output_unrepairable",
            "text_length": len(text),
            "error": last_error,
        },
    )
