from __future__ import annotations

import logging
import re
import sys
from typing import Any

PHI_REDACTED = "[PHI_REDACTED]"
PATTERN_REDACTED = "[REDACTED_PATTERN]"
MAX_DEPTH = 10

PHI_FIELDS = (
    "ssn",
    "social_security",
    "dob",
    "date_of_birth",
    "birth",
    "first_name",
    "last_name",
    "full_name",
    "name",
    "address",
    "street",
    "city",
    "state",
    "zip",
    "postal",
    "phone",
    "mobile",
    "email",
    "medical_record",
    "mrn",
    "diagnosis",
    "medication",
    "prescription",
    "allergies",
    "condition",
    "treatment",
    "patient_id",
    "insurance",
    "card",
    "account",
    "password",
    "token",
    "secret",
    "api_key",
)

PHI_PATTERNS = (
    re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    re.compile(r"\b\d{9}\b"),
    re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b"),
)


def _is_phi_key(key: str) -> bool:
    lowered = key.lower().replace("-", "_").replace(" ", "_")
    return any(field in lowered for field in PHI_FIELDS)


def redact_string(value: str) -> str:
    for pattern in PHI_PATTERNS:
        value = pattern.sub(PATTERN_REDACTED, value)
    return value


def sanitize_log(value: Any, depth: int = 0) -> Any:
    if depth > MAX_DEPTH:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        cleaned: dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(key, str) and _is_phi_key(key):
                cleaned[key] = PHI_REDACTED
            else:
                cleaned[key] = sanitize_log(item, depth + 1)
        return cleaned
    if isinstance(value, (list, tuple, set)):
        return [sanitize_log(item, depth + 1) for item in value]
    return value


_EXC_FORMATTER = logging.Formatter()


class PHIRedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_string(record.msg)
        if isinstance(record.args, dict):
            record.args = sanitize_log(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(sanitize_log(arg) for arg in record.args)
        # Traceback text is redacted like the message.
        if record.exc_info:
            record.exc_text = _EXC_FORMATTER.formatException(record.exc_info)
            record.exc_info = None
        if record.exc_text:
            record.exc_text = redact_string(record.exc_text)
        if record.stack_info:
            record.stack_info = redact_string(record.stack_info)
        return True


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if any(isinstance(f, PHIRedactionFilter) for h in root.handlers for f in h.filters):
        root.setLevel(level.upper())
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    handler.addFilter(PHIRedactionFilter())
    root.addHandler(handler)
    root.setLevel(level.upper())
