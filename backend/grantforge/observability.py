"""Request correlation and JSON logging with redaction of proposal data.

Proposals, partner profiles and guideline uploads carry coordinator contact
details, bank and tax identifiers of partner organisations, and provider
credentials travel through the same process. Everything that reaches a log
line goes through :func:`sanitize_for_logging` first.
"""

from __future__ import annotations

from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Mapping
from uuid import uuid4


REQUEST_ID_CONTEXT: ContextVar[str] = ContextVar("grantforge_request_id", default="-")
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
HANDLER_MARKER = "_grantforge_handler"
_LOGGING_CONFIGURED = False

# Keys are compared in snake_case, so ``contactEmail`` and ``contact-email`` both match.
SENSITIVE_KEY_NAMES = frozenset(
    {
        "authorization",
        "cookie",
        "set_cookie",
        "apikey",
        "iban",
        "bic",
        "swift",
        "vat",
        "vat_number",
        "vat_id",
        "tax_id",
        "bank_account",
        "legal_representative",
    }
)
# Whole snake_case segments; ``max_tokens`` is a count, ``access_token`` a secret.
SENSITIVE_KEY_SEGMENTS = (
    "password",
    "secret",
    "token",
    "api_key",
    "access_key",
    "private_key",
    "credential",
    "signature",
    "email",
    "phone",
)

CAMEL_BOUNDARY_PATTERN = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
TEXT_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "[REDACTED_AWS_ACCESS_KEY]"),
    # Labelled EU VAT numbers ("VAT no. NL123456789B01"); runs before IBAN, which shares the shape.
    (
        re.compile(r"\b((?i:VAT(?:\s*(?:no\.?|number|id))?)\s*[:#]?\s*)[A-Z]{2}(?=[A-Z0-9]*\d)[A-Z0-9]{8,12}\b"),
        r"\1[REDACTED_VAT]",
    ),
    (re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){2,7}(?: ?[A-Z0-9]{1,3})?\b"), "[REDACTED_IBAN]"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    (re.compile(r"\+\d{1,3}[\s.-]?\(?\d{1,4}\)?(?:[\s.-]?\d{2,4}){2,4}\b"), "[REDACTED_PHONE]"),
)


def normalize_request_id(candidate: str | None) -> str:
    if candidate:
        trimmed = candidate.strip()
        if REQUEST_ID_PATTERN.fullmatch(trimmed):
            return trimmed
    return str(uuid4())


def set_request_id(request_id: str) -> Token[str]:
    return REQUEST_ID_CONTEXT.set(request_id)


def reset_request_id(token: Token[str]) -> None:
    REQUEST_ID_CONTEXT.reset(token)


def get_request_id() -> str:
    return REQUEST_ID_CONTEXT.get()


def _snake_key(key: str) -> str:
    snake = CAMEL_BOUNDARY_PATTERN.sub("_", key.strip())
    return re.sub(r"[\s-]+", "_", snake).lower()


def _looks_sensitive_key(key: str) -> bool:
    normalized = _snake_key(key)
    if normalized in SENSITIVE_KEY_NAMES:
        return True
    padded = f"_{normalized}_"
    return any(f"_{segment}_" in padded for segment in SENSITIVE_KEY_SEGMENTS)


def _redact_string(value: str, *, max_length: int) -> str:
    redacted = value
    for pattern, replacement in TEXT_REDACTIONS:
        redacted = pattern.sub(replacement, redacted)
    if len(redacted) > max_length:
        return f"{redacted[:max_length]}...[truncated {len(redacted) - max_length} chars]"
    return redacted


def sanitize_for_logging(value: Any, *, max_string_length: int = 240) -> Any:
    """Redact secrets, contact details and partner identifiers.

    Mapping keys that name sensitive fields have their whole value replaced;
    free text is scrubbed pattern by pattern and truncated, since section
    bodies can run to thousands of characters. Bytes are replaced by their
    length.
    """
    if value is None:
        return None

    if isinstance(value, Mapping):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            key_text = str(key)
            if _looks_sensitive_key(key_text):
                sanitized[key_text] = "[REDACTED]"
                continue
            sanitized[key_text] = sanitize_for_logging(item, max_string_length=max_string_length)
        return sanitized

    if isinstance(value, (list, tuple)):
        items = [sanitize_for_logging(item, max_string_length=max_string_length) for item in value]
        return items if isinstance(value, list) else tuple(items)

    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"

    if isinstance(value, str):
        return _redact_string(value, max_length=max_string_length)

    return value


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``extra`` fields are sanitized and inlined."""

    _RESERVED_ATTRS = frozenset(
        vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
    ) | {"message", "asctime", "taskName"}

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", get_request_id()),
        }
        payload.update(
            (key, sanitize_for_logging({key: value})[key])
            for key, value in record.__dict__.items()
            if key not in self._RESERVED_ATTRS and key not in payload
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def _has_grantforge_handler(logger: logging.Logger) -> bool:
    return any(getattr(handler, HANDLER_MARKER, False) for handler in logger.handlers)


def configure_logging(level_name: str) -> None:
    """Install the JSON handler on the root logger once; later calls only adjust the level."""
    global _LOGGING_CONFIGURED
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))

    if _LOGGING_CONFIGURED or _has_grantforge_handler(root):
        _LOGGING_CONFIGURED = True
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    setattr(handler, HANDLER_MARKER, True)
    root.addHandler(handler)
    _LOGGING_CONFIGURED = True
