# Overview: Durable retry queue for dependent inventory writes that failed after their parent committed.

from __future__ import annotations

import logging
from datetime import timedelta

from flask import current_app

from . import inventory_ledger_service
from .concurrency import backoff_delay
from .storage_errors import ErrorKind, StorageError
from .storage_gateway import get_gateway
from opscore.time_utils import utcnow
from opscore.validation import ValidationError

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "pending_inventory_writes"

# Replays never wait longer than this between attempts.
MAX_RETRY_DELAY_SECONDS = 3600

# Failures that will not heal by waiting.
PERMANENT_KINDS = {ErrorKind.NOT_FOUND, ErrorKind.PERMISSION_DENIED, ErrorKind.FOREIGN_KEY_VIOLATION}


def enqueue_inventory_write(
    *,
    lot_id: int,
    direction: str,
    quantity,
    reference_type: str | None,
    reference_id: int | None,
    reason: str | None,
    actor_id: int | None = None,
    error: str | None = None,
) -> dict | None:
    """
    Queue a failed dependent write for replay.

    Returns the queued row, or None when the queue itself is unreachable; the
    caller has already warned the user in that case.
    """
    if direction not in ("decrement", "increment"):
        raise ValueError(f"Unknown direction: {direction}")
    try:
        rows = get_gateway().insert(
            OUTBOX_TABLE,
            {
                "material_intake_id": lot_id,
                "direction": direction,
                "quantity": quantity,
                "reference_type": reference_type,
                "reference_id": reference_id,
                "reason": reason,
                "actor_user_id": actor_id,
                "last_error": error,
                "next_attempt_at": utcnow(),
            },
            notify=False,
        )
    except StorageError as exc:
        logger.error(
            "Could not queue %s of %s on lot %s for %s %s: %s",
            direction, quantity, lot_id, reference_type, reference_id, exc.details,
        )
        return None
    logger.info("Queued %s of %s on lot %s for replay (%s %s)", direction, quantity, lot_id, reference_type, reference_id)
    return rows[0]


def _retry_delay(attempts: int) -> float:
    base = float(current_app.config.get("OUTBOX_RETRY_BASE_SECONDS", 60))
    return min(backoff_delay(base, attempts), MAX_RETRY_DELAY_SECONDS)


def _replay(row: dict) -> dict:
    write = (
        inventory_ledger_service.decrement_stock
        if row["direction"] == "decrement"
        else inventory_ledger_service.increment_stock
    )
    return write(
        row["material_intake_id"],
        row["quantity"],
        row["reference_id"],
        reference_type=row["reference_type"],
        reason=row["reason"],
        actor_id=row["actor_user_id"],
        notify=False,
    )


def drain_outbox(*, limit: int = 50, max_attempts: int | None = None) -> dict:
    """
    Replay due outbox rows, oldest first.

    A row that fails is rescheduled with exponential backoff until it reaches
    max_attempts (OUTBOX_MAX_ATTEMPTS) or fails permanently, then marked failed
    for manual reconciliation.
    """
    if max_attempts is None:
        max_attempts = int(current_app.config.get("OUTBOX_MAX_ATTEMPTS", 5))

    gateway = get_gateway()
    now = utcnow()
    due = gateway.query(
        OUTBOX_TABLE,
        {"status": "pending", "next_attempt_at__lte": now},
        order_by=["next_attempt_at", "id"],
        limit=limit,
    )

    summary = {"processed": 0, "succeeded": 0, "rescheduled": 0, "failed": 0}
    for row in due:
        summary["processed"] += 1
        attempts = (row["attempts"] or 0) + 1
        try:
            _replay(row)
        except (StorageError, ValidationError) as exc:
            permanent = isinstance(exc, ValidationError) or exc.kind in PERMANENT_KINDS
            message = str(exc) if isinstance(exc, ValidationError) else f"{exc.kind.value}: {exc.details}"
            if permanent or attempts >= max_attempts:
                values = {"status": "failed", "attempts": attempts, "last_error": message}
                summary["failed"] += 1
                logger.error(
                    "Outbox write %s gave up after %d attempt(s): %s",
                    row["id"], attempts, message,
                )
            else:
                values = {
                    "attempts": attempts,
                    "last_error": message,
                    "next_attempt_at": now + timedelta(seconds=_retry_delay(attempts)),
                }
                summary["rescheduled"] += 1
            gateway.update(OUTBOX_TABLE, values, {"id": row["id"]}, notify=False)
            continue

        gateway.update(
            OUTBOX_TABLE,
            {"status": "done", "attempts": attempts, "completed_at": utcnow(), "last_error": None},
            {"id": row["id"]},
            notify=False,
        )
        summary["succeeded"] += 1

    if summary["processed"]:
        logger.info(
            "Outbox drained: processed=%d succeeded=%d rescheduled=%d failed=%d",
            summary["processed"], summary["succeeded"], summary["rescheduled"], summary["failed"],
        )
    return summary


def get_pending_writes(*, reference_type: str | None = None, reference_id: int | None = None) -> list[dict]:
    filters = {"status": "pending"}
    if reference_type:
        filters["reference_type"] = reference_type
    if reference_id is not None:
        filters["reference_id"] = reference_id
    return get_gateway().query(OUTBOX_TABLE, filters, order_by=["created_at", "id"])
