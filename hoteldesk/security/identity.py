from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    """Roles known to the service desk."""

    USER = "User"
    CLEANING_STAFF = "CleaningStaff"
    RECEPTION = "Reception"
    ADMIN = "Admin"


STAFF_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.RECEPTION, Role.CLEANING_STAFF})


@dataclass(frozen=True, slots=True)
class User:
    """Authenticated caller identity."""

    id: str
    username: str
    role: Role

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles
