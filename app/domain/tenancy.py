from __future__ import annotations

import re

from app.domain.errors import ForbiddenError, ValidationError
from app.domain.identity import CallerIdentity

ACTIVE_COMPANY_HEADER = "X-Active-Company"

_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)


def is_company_id(value: str) -> bool:
    return bool(_UUID_PATTERN.fullmatch(value))


def _validated_hint(requested_company_id: str | None) -> str | None:
    if requested_company_id is None or requested_company_id == "":
        return None
    if not is_company_id(requested_company_id):
        raise ValidationError("Invalid company ID format in header")
    return requested_company_id


def _resolve(caller: CallerIdentity, requested_company_id: str | None) -> str | None:
    hint = _validated_hint(requested_company_id)

    if caller.is_super_admin:
        # no hint means every company
        return hint

    if hint is not None:
        if not caller.is_assigned_to(hint):
            raise ForbiddenError(f"Access denied. User is not assigned to company ID: {hint}.")
        return hint

    if caller.primary_company_id:
        return caller.primary_company_id
    if caller.assigned_company_ids:
        return caller.assigned_company_ids[0]
    return None


def resolve_active_company(caller: CallerIdentity, requested_company_id: str | None = None) -> str | None:
    """Resolve the company that scopes a request.

    Precedence: SUPER_ADMIN takes the hint as-is (``None`` = all companies);
    other roles take the hint if they are assigned to it, then their primary
    company, then their first assigned company. A non-SUPER_ADMIN caller that
    resolves to nothing is refused.
    """
    if not caller.is_super_admin and not caller.assigned_company_ids:
        raise ForbiddenError("Active company context required. User is not assigned to any company.")
    return _resolve(caller, requested_company_id)


def resolve_optional_active_company(
    caller: CallerIdentity,
    requested_company_id: str | None = None,
) -> str | None:
    return _resolve(caller, requested_company_id)
