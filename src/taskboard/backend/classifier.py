"""Storage failure classification.

Maps whatever the storage layer raised (a driver exception, a StorageError
with a structured code, or a bare message string) into a ClassifiedError
from the closed ErrorKind taxonomy. Classification never fails: anything
unrecognised becomes UNKNOWN, which is never retryable.

Precedence:
  1. structured codes   (``failure.code`` or ``failure.sqlite_errorname``)
  2. exception types    (TimeoutError, ConnectionError, PermissionError)
  3. message heuristics (case-insensitive substrings; ambiguous → UNKNOWN)
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from taskboard.shared.enums import ERROR_MESSAGES, ErrorKind, RETRYABLE_KINDS
from taskboard.shared.models import ClassifiedError

logger = logging.getLogger("taskboard.classifier")


# ═══════════════════════════════════════════════════════════════════════════
#  DEFAULT RULE TABLES
# ═══════════════════════════════════════════════════════════════════════════

# Prisma-style engine codes
PRISMA_CODES: dict[str, ErrorKind] = {
    "P1001": ErrorKind.CONNECTION_FAILED,   # can't reach database server
    "P1002": ErrorKind.CONNECTION_FAILED,   # server reached but timed out
    "P1008": ErrorKind.CONNECTION_FAILED,   # operations timed out
    "P1017": ErrorKind.CONNECTION_FAILED,   # server closed the connection
    "P2024": ErrorKind.TIMEOUT,             # connection pool timeout
    "P2002": ErrorKind.CONSTRAINT_VIOLATION,
    "P2003": ErrorKind.CONSTRAINT_VIOLATION,
    "P2014": ErrorKind.CONSTRAINT_VIOLATION,
    "P2001": ErrorKind.NOT_FOUND,
    "P2015": ErrorKind.NOT_FOUND,
    "P2025": ErrorKind.NOT_FOUND,
    "P1010": ErrorKind.PERMISSION_DENIED,
    "P2028": ErrorKind.TRANSACTION_FAILED,
    "P2034": ErrorKind.TRANSACTION_FAILED,
}

# sqlite3 primary result codes (``exc.sqlite_errorname``); extended codes
# such as SQLITE_CONSTRAINT_UNIQUE resolve through their family prefix
SQLITE_CODES: dict[str, ErrorKind] = {
    "SQLITE_CANTOPEN": ErrorKind.CONNECTION_FAILED,
    "SQLITE_IOERR": ErrorKind.CONNECTION_FAILED,
    "SQLITE_NOTADB": ErrorKind.CONNECTION_FAILED,
    "SQLITE_BUSY": ErrorKind.TIMEOUT,
    "SQLITE_LOCKED": ErrorKind.TIMEOUT,
    "SQLITE_CONSTRAINT": ErrorKind.CONSTRAINT_VIOLATION,
    "SQLITE_AUTH": ErrorKind.PERMISSION_DENIED,
    "SQLITE_PERM": ErrorKind.PERMISSION_DENIED,
    "SQLITE_READONLY": ErrorKind.PERMISSION_DENIED,
    "SQLITE_ABORT": ErrorKind.TRANSACTION_FAILED,
}

# Backend-neutral codes raised as StorageError(code=...) by this package
NEUTRAL_CODES: dict[str, ErrorKind] = {
    "connection_failed": ErrorKind.CONNECTION_FAILED,
    "timeout": ErrorKind.TIMEOUT,
    "constraint_violation": ErrorKind.CONSTRAINT_VIOLATION,
    "not_found": ErrorKind.NOT_FOUND,
    "permission_denied": ErrorKind.PERMISSION_DENIED,
    "transaction_failed": ErrorKind.TRANSACTION_FAILED,
}

DEFAULT_CODE_RULES: dict[str, ErrorKind] = {**PRISMA_CODES, **SQLITE_CODES, **NEUTRAL_CODES}

# Checked in order; first isinstance match wins
DEFAULT_TYPE_RULES: tuple[tuple[type[BaseException], ErrorKind], ...] = (
    (TimeoutError, ErrorKind.TIMEOUT),
    (ConnectionError, ErrorKind.CONNECTION_FAILED),
    (PermissionError, ErrorKind.PERMISSION_DENIED),
)

DEFAULT_MESSAGE_RULES: dict[ErrorKind, tuple[str, ...]] = {
    ErrorKind.TIMEOUT: ("timeout", "timed out", "etimedout"),
    ErrorKind.CONNECTION_FAILED: (
        "econnrefused",
        "connection refused",
        "connection lost",
        "connection reset",
        "econnreset",
        "can't reach database",
        "unreachable",
        "unable to open database",
    ),
    ErrorKind.PERMISSION_DENIED: (
        "permission denied",
        "authentication failed",
        "access denied",
    ),
    ErrorKind.CONSTRAINT_VIOLATION: (
        "unique constraint",
        "foreign key constraint",
        "constraint failed",
    ),
    ErrorKind.NOT_FOUND: ("record not found", "record to update not found", "does not exist"),
    ErrorKind.TRANSACTION_FAILED: ("deadlock", "transaction aborted", "rolled back"),
}


# ═══════════════════════════════════════════════════════════════════════════
#  CLASSIFIER
# ═══════════════════════════════════════════════════════════════════════════

def _extract_code(failure: BaseException | str) -> str | None:
    if isinstance(failure, str):
        return None
    code = getattr(failure, "code", None)
    if isinstance(code, str) and code:
        return code
    name = getattr(failure, "sqlite_errorname", None)
    if isinstance(name, str) and name:
        return name
    return None


def _extract_meta(failure: BaseException | str) -> dict[str, Any]:
    meta = getattr(failure, "meta", None)
    return meta if isinstance(meta, dict) else {}


class ErrorClassifier:
    """Pluggable predicate table: code / type / message pattern → ErrorKind."""

    def __init__(
        self,
        code_rules: Mapping[str, ErrorKind] | None = None,
        type_rules: Iterable[tuple[type[BaseException], ErrorKind]] | None = None,
        message_rules: Mapping[ErrorKind, Iterable[str]] | None = None,
    ) -> None:
        self._code_rules = dict(DEFAULT_CODE_RULES if code_rules is None else code_rules)
        self._type_rules = tuple(DEFAULT_TYPE_RULES if type_rules is None else type_rules)
        rules = DEFAULT_MESSAGE_RULES if message_rules is None else message_rules
        self._message_rules = {
            kind: tuple(p.lower() for p in patterns) for kind, patterns in rules.items()
        }

    def classify(
        self,
        failure: BaseException | str,
        *,
        operation: str | None = None,
    ) -> ClassifiedError:
        raw_message = failure if isinstance(failure, str) else str(failure)
        context: dict[str, Any] = {}
        if operation:
            context["operation"] = operation

        code = _extract_code(failure)
        if code is not None:
            context["code"] = code
            target = _extract_meta(failure).get("target")
            if target is not None:
                context["constraint"] = target
            kind = self._match_code(code)
            # A structured code the table does not know stays UNKNOWN:
            # the message of a coded failure is not second-guessed.
            return self._build(kind, raw_message, context, failure)

        if not isinstance(failure, str):
            for exc_type, kind in self._type_rules:
                if isinstance(failure, exc_type):
                    return self._build(kind, raw_message, context, failure)

        return self._build(self._match_message(raw_message), raw_message, context, failure)

    def _match_code(self, code: str) -> ErrorKind:
        if code in self._code_rules:
            return self._code_rules[code]
        # SQLITE_CONSTRAINT_UNIQUE → SQLITE_CONSTRAINT
        parts = code.split("_")
        while len(parts) > 2:
            parts.pop()
            family = "_".join(parts)
            if family in self._code_rules:
                return self._code_rules[family]
        return ErrorKind.UNKNOWN

    def _match_message(self, message: str) -> ErrorKind:
        lowered = message.lower()
        matched = {
            kind
            for kind, patterns in self._message_rules.items()
            if any(p in lowered for p in patterns)
        }
        if len(matched) == 1:
            return matched.pop()
        return ErrorKind.UNKNOWN

    @staticmethod
    def _build(
        kind: ErrorKind,
        raw_message: str,
        context: dict[str, Any],
        failure: BaseException | str,
    ) -> ClassifiedError:
        if kind is ErrorKind.UNKNOWN:
            message = raw_message or "Unknown storage error"
        else:
            message = ERROR_MESSAGES[kind]
        return ClassifiedError(
            kind=kind,
            message=message,
            retryable=kind in RETRYABLE_KINDS,
            context=context,
            original=failure,
        )


_default_classifier = ErrorClassifier()


def classify(failure: BaseException | str, *, operation: str | None = None) -> ClassifiedError:
    """Classify with the default rule tables."""
    return _default_classifier.classify(failure, operation=operation)


def log_classified(error: ClassifiedError, **context: Any) -> None:
    """Retryable failures log at WARNING, everything else at ERROR."""
    level = logging.WARNING if error.retryable else logging.ERROR
    logger.log(
        level,
        "Storage failure: kind=%s retryable=%s message=%s context=%s",
        error.kind,
        error.retryable,
        error.message,
        {**error.context, **context},
    )
