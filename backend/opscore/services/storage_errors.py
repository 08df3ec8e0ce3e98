"""
Storage error taxonomy.

Every failure that crosses the storage gateway is mapped to exactly one
ErrorKind. The mapping is the ERROR_RULES table below, evaluated in order:

1. an explicit ``error_kind`` carried by the exception (procedure errors),
2. exception type (timeouts, optimistic-lock conflicts, dropped connections),
3. structured codes (SQLSTATE / PostgREST / errno) from the exception or its
   DBAPI ``orig``,
4. message patterns, only when nothing structured matched.

Anything unmatched is UNKNOWN, which is retried conservatively.
"""

from __future__ import annotations

import enum
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field

from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError


class ErrorKind(str, enum.Enum):
    CONNECTION = "connection"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVICE = "service"
    AUTH_EXPIRED = "auth_expired"
    PERMISSION_DENIED = "permission_denied"
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    NOT_NULL_VIOLATION = "not_null_violation"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorRule:
    kind: ErrorKind
    retryable: bool
    user_message: str
    codes: frozenset = field(default_factory=frozenset)
    code_prefixes: tuple = ()
    patterns: tuple = ()


# Order matters: the first rule whose codes (then, in a second pass, whose
# patterns) match wins.
ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        ErrorKind.AUTH_EXPIRED, False,
        "Your session has expired. Please sign in again.",
        codes=frozenset({"PGRST301", "28000", "28P01"}),
        patterns=("jwt", "token expired", "password authentication failed"),
    ),
    ErrorRule(
        ErrorKind.PERMISSION_DENIED, False,
        "You don't have permission to perform this action.",
        codes=frozenset({"42501"}),
        patterns=("row-level security", "row level security", "insufficient privilege", "permission denied"),
    ),
    ErrorRule(
        ErrorKind.UNIQUE_VIOLATION, False,
        "This record already exists. Please use a different value.",
        codes=frozenset({"23505"}),
        patterns=("duplicate key", "unique constraint"),
    ),
    ErrorRule(
        ErrorKind.FOREIGN_KEY_VIOLATION, False,
        "Cannot complete this action because related data is missing or still in use.",
        codes=frozenset({"23503"}),
        patterns=("foreign key constraint", "violates foreign key"),
    ),
    ErrorRule(
        ErrorKind.NOT_NULL_VIOLATION, False,
        "Required information is missing. Please fill in all required fields.",
        codes=frozenset({"23502"}),
        patterns=("not null constraint", "null value in column"),
    ),
    ErrorRule(
        ErrorKind.CONFLICT, False,
        "The data was changed by someone else. Please reload and try again.",
        codes=frozenset({"40001", "40P01"}),
        patterns=("concurrent modification", "could not serialize access", "deadlock detected"),
    ),
    ErrorRule(
        ErrorKind.VALIDATION, False,
        "Invalid data provided. Please check your input and try again.",
        codes=frozenset({"22P02", "22003", "23514", "P0001"}),
        patterns=("check constraint", "invalid input syntax", "validation"),
    ),
    ErrorRule(
        ErrorKind.RATE_LIMIT, True,
        "Too many requests. Please wait a moment and try again.",
        codes=frozenset({"429", "53300"}),
        patterns=("rate limit", "too many requests", "too many connections"),
    ),
    ErrorRule(
        ErrorKind.TIMEOUT, True,
        "The request timed out. Please try again.",
        codes=frozenset({"57014", "55P03", "ETIMEDOUT"}),
        patterns=("timed out", "timeout", "database is locked", "lock wait"),
    ),
    ErrorRule(
        ErrorKind.CONNECTION, True,
        "Connection problem. Please check your network and try again.",
        codes=frozenset({"ECONNREFUSED", "ECONNRESET", "57P01"}),
        code_prefixes=("08",),
        patterns=("connection", "network", "could not connect", "server closed"),
    ),
    ErrorRule(
        ErrorKind.SERVICE, True,
        "The database service is temporarily unavailable. Please try again.",
        codes=frozenset({"502", "503", "504"}),
        code_prefixes=("PGRST",),
        patterns=("service unavailable", "bad gateway"),
    ),
)

_FALLBACK_RULE = ErrorRule(
    ErrorKind.UNKNOWN, True,
    "An unexpected error occurred. Please try again.",
)

RULES_BY_KIND = {rule.kind: rule for rule in ERROR_RULES}
RULES_BY_KIND[ErrorKind.UNKNOWN] = _FALLBACK_RULE
RULES_BY_KIND[ErrorKind.NOT_FOUND] = ErrorRule(
    ErrorKind.NOT_FOUND, False, "The requested record could not be found.",
)


class StorageError(Exception):
    """
    Typed failure surfaced by the storage gateway after classification and
    retries. ``original`` is the last underlying exception.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        operation: str,
        retryable: bool,
        attempts: int = 1,
        details: str | None = None,
        code: str | None = None,
        original: BaseException | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.operation = operation
        self.retryable = retryable
        self.attempts = attempts
        self.details = details
        self.code = code
        self.original = original

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "operation": self.operation,
            "retryable": self.retryable,
            "attempts": self.attempts,
            "code": self.code,
        }


class ProcedureError(Exception):
    """Base for errors raised deliberately inside storage procedures."""
    error_kind = ErrorKind.VALIDATION
    code: str | None = None


class RecordNotFoundError(ProcedureError):
    error_kind = ErrorKind.NOT_FOUND


class InsufficientStockError(ProcedureError):
    """A decrement would drive a lot below zero."""
    error_kind = ErrorKind.VALIDATION

    def __init__(self, lot_id: int, available, requested):
        super().__init__(
            f"Insufficient inventory: lot {lot_id} has {available} remaining, requested {requested}"
        )
        self.lot_id = lot_id
        self.available = available
        self.requested = requested


class ConcurrentModificationError(ProcedureError):
    """The data changed between validation and the atomic write."""
    error_kind = ErrorKind.CONFLICT


class LastAdminError(ProcedureError):
    error_kind = ErrorKind.VALIDATION


@dataclass(frozen=True)
class Classification:
    kind: ErrorKind
    retryable: bool
    user_message: str
    code: str | None
    details: str


def _extract_code(exc: BaseException) -> str | None:
    # SQLAlchemy's own ``.code`` is a docs link id, not a storage code; look at
    # the DBAPI exception instead.
    if isinstance(exc, DBAPIError):
        orig = exc.orig
        for attr in ("pgcode", "sqlstate", "sqlite_errorname"):
            value = getattr(orig, attr, None)
            if value:
                return str(value)
        return None
    value = getattr(exc, "code", None) or getattr(exc, "errno", None)
    if value is None:
        return None
    return str(value)


def _details(exc: BaseException) -> str:
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        return f"{type(exc.orig).__name__}: {exc.orig}"
    return f"{type(exc).__name__}: {exc}"


def _match_code(code: str) -> ErrorRule | None:
    for rule in ERROR_RULES:
        if code in rule.codes or any(code.startswith(p) for p in rule.code_prefixes):
            return rule
    return None


def _match_message(message: str) -> ErrorRule | None:
    lowered = message.lower()
    for rule in ERROR_RULES:
        for pattern in rule.patterns:
            if pattern in lowered:
                return rule
    return None


def _classified(rule: ErrorRule, code: str | None, details: str) -> Classification:
    return Classification(rule.kind, rule.retryable, rule.user_message, code, details)


def classify_error(exc: BaseException) -> Classification:
    """Map an exception to its ErrorKind and retry policy."""
    code = _extract_code(exc)
    details = _details(exc)

    explicit = getattr(exc, "error_kind", None)
    if isinstance(explicit, ErrorKind):
        rule = RULES_BY_KIND[explicit]
        return Classification(explicit, rule.retryable, str(exc) or rule.user_message, code, details)

    if isinstance(exc, StorageError):
        return Classification(exc.kind, exc.retryable, exc.message, exc.code, details)
    if isinstance(exc, (TimeoutError, FutureTimeoutError)):
        return _classified(RULES_BY_KIND[ErrorKind.TIMEOUT], code, details)
    if isinstance(exc, StaleDataError):
        return _classified(RULES_BY_KIND[ErrorKind.CONFLICT], code, details)
    if isinstance(exc, (DisconnectionError, ConnectionError)):
        return _classified(RULES_BY_KIND[ErrorKind.CONNECTION], code, details)
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return _classified(RULES_BY_KIND[ErrorKind.CONNECTION], code, details)

    if code:
        rule = _match_code(code)
        if rule is not None:
            return _classified(rule, code, details)

    rule = _match_message(details)
    if rule is not None:
        return _classified(rule, code, details)

    # An integrity error we could not pin down is still never retried.
    if isinstance(exc, IntegrityError):
        return _classified(RULES_BY_KIND[ErrorKind.VALIDATION], code, details)

    return _classified(_FALLBACK_RULE, code, details)


class InvalidTransitionError(ProcedureError):
    """The record is not in a state that allows the requested change."""
    error_kind = ErrorKind.CONFLICT
