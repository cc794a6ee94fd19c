from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    RIDER = "RIDER"
    DRIVER = "DRIVER"
    FLEET_OWNER = "FLEET_OWNER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


ROLE_HIERARCHY: dict[str, int] = {
    Role.SUPER_ADMIN.value: 5,
    Role.ADMIN.value: 4,
    Role.FLEET_OWNER.value: 3,
    Role.DRIVER.value: 2,
    Role.RIDER.value: 1,
}


def has_role_at_least(role: str | None, required: str) -> bool:
    """Unknown roles rank below every known role."""
    return ROLE_HIERARCHY.get((role or "").upper(), 0) >= ROLE_HIERARCHY.get(required.upper(), 0)


def is_admin(role: str | None) -> bool:
    return (role or "").upper() in {Role.ADMIN.value, Role.SUPER_ADMIN.value}


def is_known_role(role: str) -> bool:
    return role.upper() in ROLE_HIERARCHY
