"""
Named compound-write procedures.

Importing this package registers every procedure module.
"""

from .registry import RegisteredProcedure, get_procedure, procedure, registered_procedures
from . import inventory, orders, production, users, integrity, login_attempts  # noqa: F401

__all__ = ["RegisteredProcedure", "get_procedure", "procedure", "registered_procedures"]
