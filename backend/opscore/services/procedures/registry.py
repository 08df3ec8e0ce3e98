# Overview: Registry of named storage procedures invoked through StorageGateway.rpc.

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class RegisteredProcedure:
    name: str
    func: Callable
    read_only: bool = False


_REGISTRY: dict[str, RegisteredProcedure] = {}


def procedure(name: str, *, read_only: bool = False):
    """
    Register a function as a named procedure.

    The gateway runs it inside one transaction; the function itself only
    adds/flushes and must never commit or roll back.
    """
    def decorator(func: Callable) -> Callable:
        if name in _REGISTRY:
            raise ValueError(f"Procedure {name!r} is already registered")
        _REGISTRY[name] = RegisteredProcedure(name=name, func=func, read_only=read_only)
        return func
    return decorator


def get_procedure(name: str) -> RegisteredProcedure:
    try:
        return _REGISTRY[name]
    except KeyError:
        raise ValueError(f"Unknown procedure: {name}") from None


def registered_procedures() -> list[str]:
    return sorted(_REGISTRY)
