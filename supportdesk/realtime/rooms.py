"""
Typed room identifiers.

A room is a named broadcast group. Rooms are addressed by value objects
instead of concatenated strings; `name` gives the wire-level identifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from supportdesk.auth.principal import Principal


class RoleClass(str, Enum):
    STAFF = "staff"
    ADMIN = "admin"


@dataclass(frozen=True)
class TicketRoom:
    ticket_id: str

    @property
    def name(self) -> str:
        return f"ticket_{self.ticket_id}"


@dataclass(frozen=True)
class UserRoom:
    user_id: str

    @property
    def name(self) -> str:
        return f"user_{self.user_id}"


@dataclass(frozen=True)
class DepartmentRoom:
    department_id: str

    @property
    def name(self) -> str:
        return f"department_{self.department_id}"


@dataclass(frozen=True)
class RoleRoom:
    role_class: RoleClass

    @property
    def name(self) -> str:
        return self.role_class.value


Room = Union[TicketRoom, UserRoom, DepartmentRoom, RoleRoom]

STAFF_ROOM = RoleRoom(RoleClass.STAFF)
ADMIN_ROOM = RoleRoom(RoleClass.ADMIN)


def auto_join_rooms(principal: Principal) -> list[Room]:
    """Rooms a connection joins as soon as it authenticates."""
    rooms: list[Room] = [UserRoom(principal.user_id)]
    if principal.is_staff:
        rooms.append(STAFF_ROOM)
    if principal.is_admin:
        rooms.append(ADMIN_ROOM)
    if principal.department_id:
        rooms.append(DepartmentRoom(principal.department_id))
    return rooms


def parse_room(name: str) -> Room:
    """Inverse of `Room.name`, for admin queries addressed by wire name."""
    if name == RoleClass.STAFF.value:
        return STAFF_ROOM
    if name == RoleClass.ADMIN.value:
        return ADMIN_ROOM
    prefix, sep, ident = name.partition("_")
    if sep and ident:
        if prefix == "ticket":
            return TicketRoom(ident)
        if prefix == "user":
            return UserRoom(ident)
        if prefix == "department":
            return DepartmentRoom(ident)
    raise ValueError(f"Unknown room name: {name!r}")
