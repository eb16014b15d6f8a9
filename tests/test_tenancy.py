from __future__ import annotations

from uuid import uuid4

import pytest

from app.domain.errors import ForbiddenError, ValidationError
from app.domain.identity import CallerIdentity
from app.domain.permissions import Role
from app.domain.tenancy import is_company_id, resolve_active_company, resolve_optional_active_company

COMPANY_A = str(uuid4())
COMPANY_B = str(uuid4())
COMPANY_C = str(uuid4())


def _caller(
    role: Role,
    companies: tuple[str, ...] = (),
    primary: str | None = None,
) -> CallerIdentity:
    return CallerIdentity.build(
        id=str(uuid4()),
        role=role,
        assigned_company_ids=companies,
        primary_company_id=primary,
    )


def test_super_admin_without_hint_sees_all_companies() -> None:
    caller = _caller(Role.SUPER_ADMIN, (COMPANY_A,), primary=COMPANY_A)
    assert resolve_active_company(caller) is None
    assert resolve_optional_active_company(caller) is None


def test_super_admin_hint_skips_membership_check() -> None:
    caller = _caller(Role.SUPER_ADMIN)
    assert resolve_active_company(caller, COMPANY_C) == COMPANY_C


def test_super_admin_hint_is_still_shape_checked() -> None:
    with pytest.raises(ValidationError, match="Invalid company ID format"):
        resolve_active_company(_caller(Role.SUPER_ADMIN), "acme")


def test_hint_wins_over_primary_when_assigned() -> None:
    caller = _caller(Role.MANAGER, (COMPANY_A, COMPANY_B), primary=COMPANY_A)
    assert resolve_active_company(caller, COMPANY_B) == COMPANY_B


def test_unassigned_hint_is_forbidden() -> None:
    caller = _caller(Role.ADMIN, (COMPANY_A,), primary=COMPANY_A)
    with pytest.raises(ForbiddenError, match=COMPANY_C):
        resolve_active_company(caller, COMPANY_C)
    with pytest.raises(ForbiddenError):
        resolve_optional_active_company(caller, COMPANY_C)


def test_malformed_hint_is_validation_error() -> None:
    caller = _caller(Role.ADMIN, (COMPANY_A,))
    with pytest.raises(ValidationError):
        resolve_active_company(caller, "not-a-uuid")
    with pytest.raises(ValidationError):
        resolve_optional_active_company(caller, "not-a-uuid")


def test_fallback_to_primary_then_first_assigned() -> None:
    with_primary = _caller(Role.VIEWER, (COMPANY_A, COMPANY_B), primary=COMPANY_B)
    assert resolve_active_company(with_primary) == COMPANY_B

    without_primary = _caller(Role.VIEWER, (COMPANY_B, COMPANY_A))
    assert resolve_active_company(without_primary) == COMPANY_B
    assert resolve_optional_active_company(without_primary) == COMPANY_B


def test_empty_hint_is_treated_as_absent() -> None:
    caller = _caller(Role.MANAGER, (COMPANY_A,))
    assert resolve_active_company(caller, "") == COMPANY_A


def test_strict_resolution_refuses_caller_without_companies() -> None:
    caller = _caller(Role.ADMIN)
    with pytest.raises(ForbiddenError, match="not assigned to any company"):
        resolve_active_company(caller)
    with pytest.raises(ForbiddenError, match="not assigned to any company"):
        resolve_active_company(caller, "garbage")


def test_optional_resolution_returns_none_for_caller_without_companies() -> None:
    assert resolve_optional_active_company(_caller(Role.VIEWER)) is None


@pytest.mark.parametrize("role", [Role.VIEWER, Role.MANAGER, Role.ADMIN])
def test_non_super_result_is_always_an_assigned_company(role: Role) -> None:
    caller = _caller(role, (COMPANY_A, COMPANY_B))
    for hint in (None, COMPANY_A, COMPANY_B):
        resolved = resolve_active_company(caller, hint)
        assert resolved in caller.assigned_company_ids


def test_company_id_shape() -> None:
    assert is_company_id(COMPANY_A)
    assert is_company_id(COMPANY_A.upper())
    assert not is_company_id(COMPANY_A[:-1])
    assert not is_company_id(COMPANY_A + "\n")
    assert not is_company_id(f" {COMPANY_A}")


def test_trailing_newline_hint_is_validation_error() -> None:
    caller = _caller(Role.SUPER_ADMIN)
    with pytest.raises(ValidationError):
        resolve_active_company(caller, COMPANY_A + "\n")


def test_identity_from_claims_keeps_assignment_order() -> None:
    caller = CallerIdentity.from_claims(
        {
            "sub": "user-1",
            "role": "MANAGER",
            "company_ids": [COMPANY_B, COMPANY_A, COMPANY_B],
            "primary_company_id": None,
        }
    )
    assert caller.assigned_company_ids == (COMPANY_B, COMPANY_A)
    assert resolve_active_company(caller) == COMPANY_B


def test_identity_from_claims_rejects_bad_company_list() -> None:
    with pytest.raises(ValueError):
        CallerIdentity.from_claims({"sub": "user-1", "role": "ADMIN", "company_ids": COMPANY_A})
