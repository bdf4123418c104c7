"""Authenticated principals and role classes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    USER = "user"
    TEACHER = "teacher"
    AGENT = "agent"
    ADMIN = "admin"


STAFF_ROLES = frozenset({Role.ADMIN, Role.AGENT})


@dataclass(frozen=True)
class Principal:
    """An authenticated identity plus its role and department."""

    user_id: str
    role: Role
    department_id: str | None = None
    full_name: str | None = None
    email: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or self.user_id
