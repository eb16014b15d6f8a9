from __future__ import annotations

from sqlalchemy import func
from sqlmodel import Session, col, select

from app.domain.authorization import USER_ADMIN_ROLES, require_role
from app.domain.identity import CallerIdentity
from app.domain.models import AnalyticsCountsRead, Company, Device, User, UserCompany, UserStatus
from app.domain.permissions import Role
from app.infra.db import get_engine


class AnalyticsService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def counts(
        self,
        caller: CallerIdentity,
        scope: str | None,
        *,
        role: Role | None = None,
        status: UserStatus | None = None,
    ) -> AnalyticsCountsRead:
        """Count live users and devices, optionally narrowed to one company.

        ``scope`` comes from the strict active-company resolution, so it is only
        ever ``None`` for a SUPER_ADMIN asking about every company.
        """
        require_role(caller, USER_ADMIN_ROLES, "You do not have permission to view analytics")

        users = select(func.count(func.distinct(User.id))).select_from(User).where(User.deleted == False)  # noqa: E712
        devices = select(func.count()).select_from(Device).where(Device.deleted == False)  # noqa: E712
        if role is not None:
            users = users.where(User.role == role)
        if status is not None:
            users = users.where(User.status == status)
        if scope is not None:
            users = users.join(UserCompany, col(UserCompany.user_id) == col(User.id)).where(
                UserCompany.company_id == scope
            )
            devices = devices.where(Device.company_id == scope)

        with self._session() as session:
            result = AnalyticsCountsRead(
                users=int(session.exec(users).one()),
                devices=int(session.exec(devices).one()),
            )
            if caller.is_super_admin:
                result.companies = int(
                    session.exec(
                        select(func.count()).select_from(Company).where(Company.deleted == False)  # noqa: E712
                    ).one()
                )
        return result
