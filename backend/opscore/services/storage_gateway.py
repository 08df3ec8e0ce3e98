# Overview: Storage access gateway; every read and write goes through execute_with_retry.

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Iterable, Optional, TypeVar

from flask import Flask, current_app, has_app_context
from sqlalchemy import DateTime, func, select, text

from ..extensions import db
from . import notification_service
from .concurrency import backoff_delay
from .procedures import get_procedure
from .storage_errors import ErrorKind, StorageError, classify_error
from .storage_views import TABLES, VIEWS, serialize_value
from opscore.time_utils import coerce_datetime

"""
Storage gateway invariants (authoritative)

- One attempt = one call on the storage engine, bounded by the per-call timeout.
  A timed-out attempt is abandoned, not cancelled; it may still finish.
- Failures are classified (storage_errors.ERROR_RULES) and retried with
  exponential backoff only when the kind is retryable.
- Writes that may have been applied (a timed-out non-idempotent call) are never
  retried.
- Reads return complete result sets or raise; there are no partial results.
- Procedures run inside one transaction: commit on return, rollback on raise.
"""

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXTENSION_KEY = "opscore.storage_gateway"

_FILTER_OPS = {"eq", "ne", "lt", "lte", "gt", "gte", "in", "isnull"}


def _split_filter_key(key: str) -> tuple[str, str]:
    if "__" in key:
        column, op = key.rsplit("__", 1)
        if op in _FILTER_OPS:
            return column, op
    return key, "eq"


def _sql_condition(column, op: str, value):
    if isinstance(column.type, DateTime) and isinstance(value, str):
        value = coerce_datetime(value, end_of_day=op in ("lte", "lt"))
    if op == "eq" and isinstance(value, (list, tuple, set, frozenset)):
        op = "in"
    if op == "eq":
        return column.is_(None) if value is None else column == value
    if op == "ne":
        return column.isnot(None) if value is None else column != value
    if op == "lt":
        return column < value
    if op == "lte":
        return column <= value
    if op == "gt":
        return column > value
    if op == "gte":
        return column >= value
    if op == "in":
        return column.in_(list(value))
    if op == "isnull":
        return column.is_(None) if value else column.isnot(None)
    raise ValueError(f"Unsupported filter operator: {op}")


def _python_match(row: dict, column: str, op: str, value) -> bool:
    actual = row.get(column)
    if op == "eq" and isinstance(value, (list, tuple, set, frozenset)):
        op = "in"
    if op == "eq":
        return actual == value
    if op == "ne":
        return actual != value
    if op == "in":
        return actual in value
    if op == "isnull":
        return (actual is None) == bool(value)
    if actual is None:
        return False
    if op == "lt":
        return actual < value
    if op == "lte":
        return actual <= value
    if op == "gt":
        return actual > value
    if op == "gte":
        return actual >= value
    raise ValueError(f"Unsupported filter operator: {op}")


def _order_terms(order_by) -> list[tuple[str, bool]]:
    """'-created_at' -> ('created_at', descending=True)."""
    if not order_by:
        return []
    if isinstance(order_by, str):
        order_by = [order_by]
    terms = []
    for term in order_by:
        descending = term.startswith("-")
        terms.append((term.lstrip("-"), descending))
    return terms


class StorageGateway:
    """
    Uniform access to tables, named views and named procedures.

    Configured from the Flask config (STORAGE_*); tests construct it directly
    with a no-op sleep.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        timeout: float | None = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 8,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, config) -> "StorageGateway":
        return cls(
            max_attempts=int(config.get("STORAGE_MAX_ATTEMPTS", 3)),
            base_delay=float(config.get("STORAGE_RETRY_BASE_DELAY", 1.0)),
            timeout=float(config.get("STORAGE_TIMEOUT_SECONDS", 10.0)) or None,
        )

    # ------------------------------------------------------------------
    # Retry / timeout core
    # ------------------------------------------------------------------

    def execute_with_retry(
        self,
        operation: Callable[[], T],
        label: str,
        *,
        notify: bool = True,
        idempotent: bool = True,
    ) -> T:
        """
        Run ``operation`` with timeout, classification and backoff.

        notify=False suppresses the user-facing error for callers that handle
        the failure themselves (fallback paths, best-effort writes).
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._attempt(operation, label)
            except Exception as exc:
                failure = classify_error(exc)
                retryable = failure.retryable
                if not idempotent and failure.kind == ErrorKind.TIMEOUT:
                    retryable = False

                logger.warning(
                    "Storage operation failed: operation=%s kind=%s retryable=%s attempt=%d/%d code=%s details=%s",
                    label, failure.kind.value, retryable, attempt, self.max_attempts,
                    failure.code, failure.details,
                )

                if retryable and attempt < self.max_attempts:
                    delay = backoff_delay(self.base_delay, attempt)
                    logger.info("Retrying %s (attempt %d/%d) in %.2fs", label, attempt + 1, self.max_attempts, delay)
                    self._sleep(delay)
                    continue

                error = StorageError(
                    failure.kind,
                    failure.user_message,
                    operation=label,
                    retryable=retryable,
                    attempts=attempt,
                    details=failure.details,
                    code=failure.code,
                    original=exc,
                )
                logger.error(
                    "Storage operation gave up: operation=%s kind=%s attempts=%d details=%s",
                    label, failure.kind.value, attempt, failure.details,
                )
                if notify:
                    notification_service.error(failure.user_message, operation=label, kind=failure.kind.value)
                raise error from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def _attempt(self, operation: Callable[[], T], label: str) -> T:
        if not self.timeout:
            return self._guarded(operation)

        if has_app_context():
            app: Flask = current_app._get_current_object()

            def task():
                with app.app_context():
                    return self._guarded(operation)
        else:
            task = operation

        future = self._pool().submit(task)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            raise TimeoutError(f"{label} timed out after {self.timeout:g}s") from None

    @staticmethod
    def _guarded(operation: Callable[[], T]) -> T:
        try:
            return operation()
        except Exception:
            if has_app_context():
                db.session.rollback()
            raise

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="storage-gateway",
            )
        return self._executor

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    @staticmethod
    def _transactional(work: Callable[[], T]) -> Callable[[], T]:
        def run() -> T:
            try:
                result = work()
                db.session.commit()
                return result
            except Exception:
                db.session.rollback()
                raise
        return run

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(
        self,
        view: str,
        filters: Optional[dict] = None,
        order_by=None,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        notify: bool = True,
    ) -> list[dict]:
        """Read rows from a table or named view as plain dicts."""
        self._ensure_known(view)
        return self.execute_with_retry(
            lambda: self._select_rows(view, filters or {}, order_by, limit, offset),
            f"query {view}",
            notify=notify,
        )

    def query_by_date_range(
        self,
        view: str,
        date_column: str,
        start,
        end,
        order_by=None,
        *,
        filters: Optional[dict] = None,
        notify: bool = True,
    ) -> list[dict]:
        """Inclusive range scan: start <= date_column <= end (bare dates cover the whole day)."""
        combined = dict(filters or {})
        if start is not None:
            combined[f"{date_column}__gte"] = coerce_datetime(start)
        if end is not None:
            combined[f"{date_column}__lte"] = coerce_datetime(end, end_of_day=True)
        return self.query(view, combined, order_by or f"-{date_column}", notify=notify)

    def count(self, view: str, filters: Optional[dict] = None, *, notify: bool = True) -> int:
        self._ensure_known(view)
        return self.execute_with_retry(
            lambda: self._count_rows(view, filters or {}),
            f"count {view}",
            notify=notify,
        )

    def validate_connection(self) -> bool:
        try:
            return bool(self.execute_with_retry(
                lambda: db.session.execute(text("SELECT 1")).scalar() == 1,
                "validate connection",
                notify=False,
            ))
        except StorageError as exc:
            logger.error("Storage connection check failed: %s", exc.details)
            return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def rpc(self, procedure: str, params: Optional[dict] = None, *, notify: bool = True) -> Any:
        """Invoke a named procedure inside one storage transaction."""
        registered = get_procedure(procedure)
        kwargs = dict(params or {})
        return self.execute_with_retry(
            self._transactional(lambda: registered.func(**kwargs)),
            procedure,
            notify=notify,
            idempotent=registered.read_only,
        )

    def insert(self, table: str, rows, *, notify: bool = True) -> list[dict]:
        model = self._table(table)
        payload = [rows] if isinstance(rows, dict) else list(rows)

        def work() -> list[dict]:
            objects = [model(**values) for values in payload]
            db.session.add_all(objects)
            db.session.flush()
            return [obj.to_dict() for obj in objects]

        return self.execute_with_retry(
            self._transactional(work), f"insert {table}", notify=notify, idempotent=False,
        )

    def update(self, table: str, values: dict, filters: dict, *, notify: bool = True) -> list[dict]:
        """Update matching rows through the ORM so model guards still apply."""
        if not filters:
            raise ValueError("update requires at least one filter")
        model = self._table(table)

        def work() -> list[dict]:
            stmt = select(model).where(*self._conditions(model.__mapper__.columns, filters))
            objects = list(db.session.scalars(stmt))
            for obj in objects:
                for key, value in values.items():
                    setattr(obj, key, value)
            db.session.flush()
            return [obj.to_dict() for obj in objects]

        return self.execute_with_retry(
            self._transactional(work), f"update {table}", notify=notify, idempotent=False,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_known(name: str) -> None:
        if name not in TABLES and name not in VIEWS:
            raise ValueError(f"Unknown table or view: {name}")

    @staticmethod
    def _table(name: str):
        try:
            return TABLES[name]
        except KeyError:
            raise ValueError(f"Unknown table: {name}") from None

    @staticmethod
    def _conditions(columns, filters: dict) -> list:
        conditions = []
        for key, value in filters.items():
            name, op = _split_filter_key(key)
            if name not in columns:
                raise ValueError(f"Unknown filter column: {name}")
            conditions.append(_sql_condition(columns[name], op, value))
        return conditions

    def _select_rows(self, name: str, filters: dict, order_by, limit, offset) -> list[dict]:
        terms = _order_terms(order_by)

        if name in TABLES:
            model = TABLES[name]
            columns = model.__mapper__.columns
            stmt = select(model).where(*self._conditions(columns, filters))
            for column, descending in terms:
                stmt = stmt.order_by(columns[column].desc() if descending else columns[column].asc())
            if offset:
                stmt = stmt.offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            return [obj.to_dict() for obj in db.session.scalars(stmt)]

        view = VIEWS[name]
        sub = view.build().subquery(name)
        sql_filters = {k: v for k, v in filters.items() if _split_filter_key(k)[0] in sub.c}
        post_filters = {k: v for k, v in filters.items() if k not in sql_filters}
        post_sort = any(column not in sub.c for column, _ in terms)
        if (post_filters or post_sort) and view.derive is None:
            unknown = [k for k in post_filters] + [c for c, _ in terms if c not in sub.c]
            raise ValueError(f"Unknown columns for {name}: {unknown}")

        stmt = select(sub).where(*self._conditions(sub.c, sql_filters))
        in_python = bool(post_filters or post_sort)
        if not in_python:
            for column, descending in terms:
                stmt = stmt.order_by(sub.c[column].desc() if descending else sub.c[column].asc())
            if offset:
                stmt = stmt.offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)

        rows = [dict(row._mapping) for row in db.session.execute(stmt)]
        if view.derive is not None:
            rows = [view.derive(row) for row in rows]

        if in_python:
            for key, value in post_filters.items():
                column, op = _split_filter_key(key)
                rows = [row for row in rows if _python_match(row, column, op, value)]
            for column, descending in reversed(terms):
                rows.sort(key=lambda r: (r.get(column) is None, r.get(column)), reverse=descending)
            start = offset or 0
            rows = rows[start: start + limit] if limit is not None else rows[start:]

        return [{key: serialize_value(value) for key, value in row.items()} for row in rows]

    def _count_rows(self, name: str, filters: dict) -> int:
        if name in TABLES:
            model = TABLES[name]
            stmt = (
                select(func.count())
                .select_from(model)
                .where(*self._conditions(model.__mapper__.columns, filters))
            )
            return int(db.session.execute(stmt).scalar() or 0)
        return len(self._select_rows(name, filters, None, None, None))


def init_gateway(app: Flask) -> StorageGateway:
    gateway = StorageGateway.from_config(app.config)
    app.extensions[EXTENSION_KEY] = gateway
    return gateway


def get_gateway() -> StorageGateway:
    return current_app.extensions[EXTENSION_KEY]
