"""
Tests for structured operation logging and payload sanitization.
"""

import logging

from util.logging import StructuredLogger, sanitize_payload


def test_sanitize_redacts_free_text_fields():
    payload = {
        "case_id": "CASE-1",
        "narrative_text": "user password is hunter2",
        "query": "printer offline",
        "api_key": "sk-123",
        "nested": {"narrative": "sensitive"},
    }

    sanitized = sanitize_payload(payload)

    assert sanitized["case_id"] == "CASE-1"
    assert sanitized["narrative_text"] == "[REDACTED]"
    assert sanitized["query"] == "[REDACTED]"
    assert sanitized["api_key"] == "[REDACTED]"
    assert sanitized["nested"]["narrative"] == "[REDACTED]"


def test_sanitize_reveal_and_truncate():
    assert sanitize_payload({"query": "q"}, reveal_sensitive=True) == {"query": "q"}
    assert sanitize_payload("x" * 150) == "x" * 100 + "..."
    assert sanitize_payload(["a", 1]) == ["a", 1]


def test_failure_outcomes_log_as_warning(caplog):
    structured = StructuredLogger("case_recall.test")

    with caplog.at_level(logging.INFO, logger="case_recall.test"):
        structured.log_embedding_call("model-x", 12.345, "exhausted", 4, {"error": "HTTP 503"})
        structured.log_batch_summary(3, 1, 0, 50.0)

    warning, info = caplog.records
    assert warning.levelno == logging.WARNING
    assert "embedding.call" in warning.getMessage()
    assert "'attempts': 4" in warning.getMessage()
    assert "'latency_ms': 12.35" in warning.getMessage()
    assert info.levelno == logging.INFO
    assert "'remaining_pending': 0" in info.getMessage()


def test_search_log_entry_never_contains_query(caplog):
    structured = StructuredLogger("case_recall.test")

    with caplog.at_level(logging.INFO, logger="case_recall.test"):
        structured.log_search("search-1", 5, 10.0, 0, error="ValidationError: Query text must not be empty")

    [record] = caplog.records
    assert record.levelno == logging.WARNING
    assert "search-1" in record.getMessage()
