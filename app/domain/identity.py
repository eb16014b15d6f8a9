from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from app.domain.permissions import Role


def _unique_in_order(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for item in values:
        if isinstance(item, str) and item:
            seen.setdefault(item, None)
    return tuple(seen)


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated actor of a single request, rebuilt from a verified access token.

    ``assigned_company_ids`` keeps assignment order; the first entry is the
    fallback active company when no primary company is set.
    """

    id: str
    role: Role
    assigned_company_ids: tuple[str, ...] = ()
    primary_company_id: str | None = None
    email: str | None = None

    @classmethod
    def build(
        cls,
        *,
        id: str,
        role: Role | str,
        assigned_company_ids: Iterable[str] = (),
        primary_company_id: str | None = None,
        email: str | None = None,
    ) -> CallerIdentity:
        return cls(
            id=id,
            role=Role(role),
            assigned_company_ids=_unique_in_order(assigned_company_ids),
            primary_company_id=primary_company_id or None,
            email=email,
        )

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> CallerIdentity:
        company_ids = claims.get("company_ids", [])
        if not isinstance(company_ids, list):
            raise ValueError("Invalid company_ids claim")
        return cls.build(
            id=str(claims["sub"]),
            role=claims["role"],
            assigned_company_ids=company_ids,
            primary_company_id=claims.get("primary_company_id"),
            email=claims.get("email"),
        )

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    def is_assigned_to(self, company_id: str) -> bool:
        return company_id in self.assigned_company_ids


@dataclass(frozen=True)
class UserTarget:
    id: str
    role: Role
    company_ids: frozenset[str] = field(default_factory=frozenset)
