"""Error classifier tests."""

from __future__ import annotations

import logging
import sqlite3

import pytest

from taskboard.backend.classifier import ErrorClassifier, classify, log_classified
from taskboard.backend.retry import should_retry
from taskboard.shared.enums import ErrorKind
from taskboard.shared.errors import StorageError


class PrismaLikeError(Exception):
    """Mimics a known-request error: message + engine code + meta."""

    def __init__(self, message: str, code: str, meta: dict | None = None):
        super().__init__(message)
        self.code = code
        self.meta = meta or {}


def _sqlite_error(name: str, message: str = "boom") -> sqlite3.Error:
    exc = sqlite3.OperationalError(message)
    exc.sqlite_errorname = name
    return exc


class TestStructuredCodes:
    def test_unique_violation_is_constraint_and_not_retryable(self):
        exc = PrismaLikeError(
            "Unique constraint failed on the fields: (`columnId`,`position`)",
            "P2002",
            {"target": ["columnId", "position"]},
        )
        err = classify(exc)
        assert err.kind is ErrorKind.CONSTRAINT_VIOLATION
        assert err.retryable is False
        assert should_retry(err) is False
        assert err.context["constraint"] == ["columnId", "position"]
        assert err.context["code"] == "P2002"

    @pytest.mark.parametrize("code,kind", [
        ("P1001", ErrorKind.CONNECTION_FAILED),
        ("P1008", ErrorKind.CONNECTION_FAILED),
        ("P2024", ErrorKind.TIMEOUT),
        ("P2025", ErrorKind.NOT_FOUND),
        ("P2034", ErrorKind.TRANSACTION_FAILED),
    ])
    def test_prisma_codes(self, code, kind):
        assert classify(PrismaLikeError("x", code)).kind is kind

    def test_connection_failure_is_retryable(self):
        err = classify(PrismaLikeError("Can't reach database server", "P1001"))
        assert err.retryable is True
        assert err.message == "Database connection failed"

    def test_unknown_code_is_unknown_even_with_suggestive_message(self):
        err = classify(PrismaLikeError("connection refused", "P9999"))
        assert err.kind is ErrorKind.UNKNOWN
        assert err.retryable is False

    def test_sqlite_extended_code_resolves_family(self):
        exc = _sqlite_error("SQLITE_CONSTRAINT_UNIQUE", "UNIQUE constraint failed: tasks.parent_id")
        assert classify(exc).kind is ErrorKind.CONSTRAINT_VIOLATION

    def test_sqlite_busy_is_timeout(self):
        err = classify(_sqlite_error("SQLITE_BUSY", "database is locked"))
        assert err.kind is ErrorKind.TIMEOUT
        assert err.retryable is True

    def test_storage_error_neutral_code(self):
        err = classify(StorageError("whatever", code="permission_denied"))
        assert err.kind is ErrorKind.PERMISSION_DENIED


class TestTypesAndMessages:
    def test_builtin_timeout_error(self):
        assert classify(TimeoutError()).kind is ErrorKind.TIMEOUT

    def test_builtin_connection_error(self):
        assert classify(ConnectionResetError("reset")).kind is ErrorKind.CONNECTION_FAILED

    def test_message_heuristics_case_insensitive(self):
        assert classify(RuntimeError("ECONNREFUSED 127.0.0.1:5432")).kind is ErrorKind.CONNECTION_FAILED
        assert classify("Query Timed Out").kind is ErrorKind.TIMEOUT

    def test_ambiguous_message_is_unknown(self):
        err = classify("connection refused: permission denied")
        assert err.kind is ErrorKind.UNKNOWN

    def test_unrecognised_keeps_raw_message(self):
        err = classify(ValueError("something odd"))
        assert err.kind is ErrorKind.UNKNOWN
        assert err.message == "something odd"
        assert err.retryable is False

    def test_empty_message_gets_placeholder(self):
        assert classify(ValueError()).message == "Unknown storage error"

    def test_operation_recorded_in_context(self):
        err = classify(TimeoutError(), operation="move_task")
        assert err.context["operation"] == "move_task"

    def test_original_excluded_from_dump(self):
        err = classify(TimeoutError("slow"))
        assert err.original is not None
        assert "original" not in err.model_dump()


class TestCustomTables:
    def test_custom_code_rules_replace_defaults(self):
        classifier = ErrorClassifier(code_rules={"E42": ErrorKind.NOT_FOUND})
        assert classifier.classify(PrismaLikeError("x", "E42")).kind is ErrorKind.NOT_FOUND
        assert classifier.classify(PrismaLikeError("x", "P2002")).kind is ErrorKind.UNKNOWN

    def test_custom_message_rules(self):
        classifier = ErrorClassifier(message_rules={ErrorKind.TIMEOUT: ("too slow",)})
        assert classifier.classify("TOO SLOW today").kind is ErrorKind.TIMEOUT
        assert classifier.classify("connection refused").kind is ErrorKind.UNKNOWN


class TestLogging:
    def test_retryable_logs_warning(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="taskboard.classifier"):
            log_classified(classify(TimeoutError()))
        assert caplog.records[-1].levelno == logging.WARNING

    def test_non_retryable_logs_error(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="taskboard.classifier"):
            log_classified(classify(StorageError("dup", code="constraint_violation")), attempts=1)
        assert caplog.records[-1].levelno == logging.ERROR
        assert "attempts" in caplog.records[-1].getMessage()
