import io
import logging

import pytest

from app.core.logging import (
    MAX_DEPTH,
    PATTERN_REDACTED,
    PHI_REDACTED,
    PHIRedactionFilter,
    redact_string,
    sanitize_log,
)


@pytest.mark.parametrize(
    "text",
    [
        "ssn 123-45-6789 on file",
        "id 123456789",
        "born 01/02/1990",
        "born 1990-01-02",
        "contact maria@example.com",
        "call (555) 123-4567",
    ],
)
def test_redact_string_masks_patterns(text):
    assert PATTERN_REDACTED in redact_string(text)


def test_sanitize_log_redacts_phi_keys_recursively():
    data = {
        "event": "form.submitted",
        "firstName": "Maria",
        "nested": {"Phone Number": "555-123-4567", "count": 3},
        "items": [{"email": "maria@example.com"}],
    }
    cleaned = sanitize_log(data)
    assert cleaned["event"] == "form.submitted"
    assert cleaned["firstName"] == PHI_REDACTED
    assert cleaned["nested"]["Phone Number"] == PHI_REDACTED
    assert cleaned["nested"]["count"] == 3
    assert cleaned["items"][0]["email"] == PHI_REDACTED


def test_sanitize_log_depth_limit():
    data: dict = {}
    current = data
    for _ in range(MAX_DEPTH + 2):
        current["next"] = {}
        current = current["next"]
    cleaned = sanitize_log(data)
    for _ in range(MAX_DEPTH + 1):
        cleaned = cleaned["next"]
    assert cleaned == "[MAX_DEPTH_EXCEEDED]"


def test_filter_redacts_message_and_args():
    record = logging.LogRecord(
        "eonmeds.test",
        logging.INFO,
        __file__,
        1,
        "Lookup for %s failed",
        ("maria@example.com",),
        None,
    )
    assert PHIRedactionFilter().filter(record)
    assert "maria@example.com" not in record.getMessage()


def test_filter_redacts_traceback_text():
    logger = logging.getLogger("eonmeds.test.traceback")
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(PHIRedactionFilter())
    logger.addHandler(handler)
    logger.propagate = False
    try:
        try:
            raise ValueError("duplicate key (email)=(jane.doe@example.com) phone 555-123-4567")
        except ValueError:
            logger.exception("Insert failed")
    finally:
        logger.removeHandler(handler)
        logger.propagate = True

    output = stream.getvalue()
    assert "Insert failed" in output
    assert "ValueError: duplicate key" in output
    assert "jane.doe@example.com" not in output
    assert "555-123-4567" not in output
    assert PATTERN_REDACTED in output
