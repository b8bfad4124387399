"""Caller identities and roles."""

from .identity import STAFF_ROLES, Role, User

__all__ = ["STAFF_ROLES", "Role", "User"]
