# Overview: Role constants and the has_role predicate used to gate privileged operations.

from __future__ import annotations

from typing import Iterable, Mapping, Optional, Union

ROLE_ADMIN = "admin"
ROLE_PRODUCTION = "production"
ROLE_SALES_MANAGER = "sales_manager"
ROLE_FINANCE = "finance"
ROLE_VIEWER = "viewer"

ALL_ROLES = (ROLE_ADMIN, ROLE_PRODUCTION, ROLE_SALES_MANAGER, ROLE_FINANCE, ROLE_VIEWER)

# Roles allowed to read the audit trail and to change other users' roles.
ELEVATED_ROLES = (ROLE_ADMIN,)

ORDER_ROLES = (ROLE_ADMIN, ROLE_SALES_MANAGER)
PRODUCTION_ROLES = (ROLE_ADMIN, ROLE_PRODUCTION)
FINANCE_ROLES = (ROLE_ADMIN, ROLE_FINANCE, ROLE_SALES_MANAGER)

Actor = Union[Mapping, object, None]


class PermissionDeniedError(Exception):
    """Raised when the acting user lacks a required role."""


def _field(actor: Actor, name: str):
    if actor is None:
        return None
    if isinstance(actor, Mapping):
        return actor.get(name)
    return getattr(actor, name, None)


def has_role(actor: Actor, roles: Iterable[str]) -> bool:
    """
    True when the actor is active and holds one of ``roles``.

    Accepts a User row or its to_dict() form.
    """
    if actor is None or _field(actor, "is_active") is False:
        return False
    return _field(actor, "role") in set(roles)


def load_actor(user_id: Optional[int]) -> Optional[dict]:
    if not user_id:
        return None
    from .services.storage_gateway import get_gateway

    rows = get_gateway().query("users", {"id": user_id})
    return rows[0] if rows else None


def require_role(actor_id: Optional[int], roles: Iterable[str], *, action: str) -> dict:
    """Load the actor and raise PermissionDeniedError unless has_role holds."""
    roles = tuple(roles)
    actor = load_actor(actor_id)
    if not has_role(actor, roles):
        raise PermissionDeniedError(f"{action} requires one of roles: {', '.join(roles)}")
    return actor
