"""
PHI log redaction for the message engine.

Patient phone numbers and names flow through nearly every log line in the
dispatch path. This filter masks them before any handler formats the record:
phone numbers keep only their last four digits (enough to correlate with a
Twilio console entry), and values under known patient keys in dict-style
arguments are replaced entirely.
"""

import logging
import re
from typing import Any

# E.164 and common North American spellings
_PHONE_PATTERN = re.compile(
    r"(?<![\w/])(?:\+\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?(\d{4})(?!\d)"
)

_PHI_KEYS = frozenset({
    "first_name", "last_name", "patient_name", "full_name",
    "phone", "recipient", "recipient_phone", "from", "to",
    "body", "content", "message_content",
})

REDACTED = "[REDACTED]"


def mask_phone(phone: str | None) -> str:
    """``+15551234567`` -> ``***4567``."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"


def sanitize_text(text: str) -> str:
    if not isinstance(text, str):
        return text
    return _PHONE_PATTERN.sub(lambda m: f"***{m.group(1)}", text)


def sanitize_dict(data: Any, depth: int = 0) -> Any:
    """Recursively redact patient values in dicts, lists and tuples."""
    if depth > 10:
        return data
    if isinstance(data, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in _PHI_KEYS
            else sanitize_dict(value, depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_dict(item, depth + 1) for item in data)
    if isinstance(data, str):
        return sanitize_text(data)
    return data


class PHISanitizationFilter(logging.Filter):
    """Logging filter that masks phone numbers and patient fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize_text(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = sanitize_dict(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    sanitize_dict(a) if isinstance(a, (dict, str, list, tuple)) else a
                    for a in record.args
                )

        if record.exc_text and isinstance(record.exc_text, str):
            record.exc_text = sanitize_text(record.exc_text)

        return True
