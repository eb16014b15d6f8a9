from __future__ import annotations

from collections.abc import Iterable

from app.domain.errors import ForbiddenError
from app.domain.identity import CallerIdentity, UserTarget
from app.domain.permissions import Role, RoleAction, can_perform

COMPANY_ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
DEVICE_ADMIN_ROLES = frozenset({Role.ADMIN, Role.SUPER_ADMIN})
USER_ADMIN_ROLES = frozenset({Role.MANAGER, Role.ADMIN, Role.SUPER_ADMIN})


def require_role(caller: CallerIdentity, allowed: Iterable[Role], reason: str | None = None) -> None:
    if caller.role not in set(allowed):
        raise ForbiddenError(reason or "You do not have permission to perform this action")


def _shares_company(caller: CallerIdentity, company_ids: Iterable[str]) -> bool:
    return any(caller.is_assigned_to(item) for item in company_ids)


# --- users -----------------------------------------------------------------


def authorize_user_create(caller: CallerIdentity, target_role: Role) -> None:
    if not can_perform(caller.role, target_role, RoleAction.CREATE):
        raise ForbiddenError(f"You do not have permission to create {target_role} users")


def authorize_user_view(caller: CallerIdentity, target: UserTarget) -> None:
    if target.id == caller.id or caller.is_super_admin:
        return
    if caller.role == Role.VIEWER:
        raise ForbiddenError("You can only view your own profile")
    if not _shares_company(caller, target.company_ids):
        raise ForbiddenError("You can only view users in your company")


def authorize_user_update(
    caller: CallerIdentity,
    target: UserTarget,
    new_role: Role | None = None,
) -> None:
    if not can_perform(caller.role, target.role, RoleAction.UPDATE):
        raise ForbiddenError(f"You do not have permission to update {target.role} users")
    if new_role is not None and not can_perform(caller.role, new_role, RoleAction.UPDATE):
        raise ForbiddenError(f"You do not have permission to assign {new_role} role")
    if not caller.is_super_admin and not _shares_company(caller, target.company_ids):
        raise ForbiddenError("You can only update users in your company")


def authorize_user_delete(caller: CallerIdentity, target: UserTarget) -> None:
    if target.id == caller.id:
        raise ForbiddenError("You cannot delete your own account")
    if not can_perform(caller.role, target.role, RoleAction.DELETE):
        raise ForbiddenError(f"You do not have permission to delete {target.role} users")
    if not caller.is_super_admin and not _shares_company(caller, target.company_ids):
        raise ForbiddenError("You can only delete users in your company")


# --- companies -------------------------------------------------------------


def authorize_company_create(caller: CallerIdentity) -> None:
    require_role(caller, COMPANY_ADMIN_ROLES, "Only ADMIN and SUPER_ADMIN can create companies")


def authorize_company_list(caller: CallerIdentity) -> None:
    require_role(caller, COMPANY_ADMIN_ROLES, "You do not have permission to list companies")


def authorize_company_view(caller: CallerIdentity, company_id: str) -> None:
    if caller.is_super_admin:
        return
    if caller.role != Role.ADMIN:
        raise ForbiddenError("You do not have permission to view companies")
    if not caller.is_assigned_to(company_id):
        raise ForbiddenError("You can only view companies assigned to you")


def _authorize_company_manage(caller: CallerIdentity, company_user_ids: Iterable[str], verb: str) -> None:
    if caller.is_super_admin:
        return
    if caller.role == Role.ADMIN and caller.id in set(company_user_ids):
        return
    raise ForbiddenError(f"You do not have permission to {verb} this company")


def authorize_company_update(caller: CallerIdentity, company_user_ids: Iterable[str]) -> None:
    _authorize_company_manage(caller, company_user_ids, "update")


def authorize_company_delete(caller: CallerIdentity, company_user_ids: Iterable[str]) -> None:
    _authorize_company_manage(caller, company_user_ids, "delete")


# --- devices ---------------------------------------------------------------


def _require_active_company(
    caller: CallerIdentity,
    company_id: str,
    active_company_id: str | None,
    message: str,
) -> None:
    if caller.is_super_admin:
        return
    if active_company_id is None or company_id != active_company_id:
        raise ForbiddenError(message)


def authorize_device_create(
    caller: CallerIdentity,
    company_id: str,
    active_company_id: str | None,
) -> None:
    require_role(caller, DEVICE_ADMIN_ROLES, "Only ADMIN and SUPER_ADMIN can create devices")
    _require_active_company(
        caller,
        company_id,
        active_company_id,
        "ADMIN can only create devices in the active company",
    )


def authorize_device_update(
    caller: CallerIdentity,
    company_id: str,
    active_company_id: str | None,
    new_company_id: str | None = None,
) -> None:
    require_role(caller, DEVICE_ADMIN_ROLES, "Only ADMIN and SUPER_ADMIN can update devices")
    _require_active_company(
        caller,
        company_id,
        active_company_id,
        "You can only update devices in the active company",
    )
    if new_company_id is not None and new_company_id != company_id:
        _require_active_company(
            caller,
            new_company_id,
            active_company_id,
            "ADMIN can only move devices into the active company",
        )


def authorize_device_delete(
    caller: CallerIdentity,
    company_id: str,
    active_company_id: str | None,
) -> None:
    require_role(caller, DEVICE_ADMIN_ROLES, "Only ADMIN and SUPER_ADMIN can delete devices")
    _require_active_company(
        caller,
        company_id,
        active_company_id,
        "You can only delete devices in the active company",
    )


def authorize_device_view(
    caller: CallerIdentity,
    company_id: str,
    *,
    assigned_to_caller: bool,
) -> None:
    if caller.is_super_admin:
        return
    if caller.role in {Role.ADMIN, Role.MANAGER}:
        if not caller.is_assigned_to(company_id):
            raise ForbiddenError("You can only view devices in your company")
        return
    if not assigned_to_caller:
        raise ForbiddenError("You can only view devices assigned to you")


# --- sessions --------------------------------------------------------------


def authorize_session_access(caller: CallerIdentity, session_user_id: str) -> None:
    if session_user_id != caller.id:
        raise ForbiddenError("You can only manage your own sessions")
