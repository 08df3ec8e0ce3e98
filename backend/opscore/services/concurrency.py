# Overview: Row locking and retry backoff helpers shared by the storage layer.

from __future__ import annotations


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Optimistic version columns still catch concurrent writers there.
    """
    return query.with_for_update()


def backoff_delay(base_delay: float, attempt: int) -> float:
    """
    Exponential backoff for 1-based attempt numbers: base, 2*base, 4*base, ...
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    return base_delay * (2 ** (attempt - 1))
