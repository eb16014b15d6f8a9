from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    VIEWER = "VIEWER"
    MANAGER = "MANAGER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class RoleAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


ROLE_ORDER: tuple[Role, ...] = (
    Role.VIEWER,
    Role.MANAGER,
    Role.ADMIN,
    Role.SUPER_ADMIN,
)

# (actor, action) -> target roles the actor may act on.
# SUPER_ADMIN may create/update another SUPER_ADMIN but never delete one.
ROLE_MATRIX: dict[tuple[Role, RoleAction], frozenset[Role]] = {
    (Role.SUPER_ADMIN, RoleAction.CREATE): frozenset(
        {Role.VIEWER, Role.MANAGER, Role.ADMIN, Role.SUPER_ADMIN}
    ),
    (Role.SUPER_ADMIN, RoleAction.UPDATE): frozenset(
        {Role.VIEWER, Role.MANAGER, Role.ADMIN, Role.SUPER_ADMIN}
    ),
    (Role.SUPER_ADMIN, RoleAction.DELETE): frozenset({Role.VIEWER, Role.MANAGER, Role.ADMIN}),
    (Role.ADMIN, RoleAction.CREATE): frozenset({Role.VIEWER, Role.MANAGER}),
    (Role.ADMIN, RoleAction.UPDATE): frozenset({Role.VIEWER, Role.MANAGER}),
    (Role.ADMIN, RoleAction.DELETE): frozenset({Role.VIEWER, Role.MANAGER}),
    (Role.MANAGER, RoleAction.CREATE): frozenset({Role.VIEWER}),
    (Role.MANAGER, RoleAction.UPDATE): frozenset({Role.VIEWER}),
    (Role.MANAGER, RoleAction.DELETE): frozenset({Role.VIEWER}),
    (Role.VIEWER, RoleAction.CREATE): frozenset(),
    (Role.VIEWER, RoleAction.UPDATE): frozenset(),
    (Role.VIEWER, RoleAction.DELETE): frozenset(),
}

MAX_CREATABLE_ROLE: dict[Role, Role | None] = {
    Role.SUPER_ADMIN: Role.SUPER_ADMIN,
    Role.ADMIN: Role.MANAGER,
    Role.MANAGER: Role.VIEWER,
    Role.VIEWER: None,
}


def role_rank(role: Role | str) -> int:
    return ROLE_ORDER.index(Role(role))


def is_at_least(role: Role | str, floor: Role | str) -> bool:
    return role_rank(role) >= role_rank(floor)


def can_perform(actor_role: Role | str, target_role: Role | str, action: RoleAction | str) -> bool:
    allowed = ROLE_MATRIX.get((Role(actor_role), RoleAction(action)), frozenset())
    return Role(target_role) in allowed


def get_max_creatable_role(role: Role | str) -> Role | None:
    """Highest role ``role`` may create. Display hint only; enforcement uses ``can_perform``."""
    return MAX_CREATABLE_ROLE[Role(role)]


def creatable_roles(role: Role | str) -> list[Role]:
    allowed = ROLE_MATRIX[(Role(role), RoleAction.CREATE)]
    return [item for item in ROLE_ORDER if item in allowed]
