from __future__ import annotations

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.authorization import (
    authorize_company_create,
    authorize_company_delete,
    authorize_company_list,
    authorize_company_update,
    authorize_company_view,
)
from app.domain.errors import ConflictError, NotFoundError
from app.domain.identity import CallerIdentity
from app.domain.models import (
    Company,
    CompanyCreate,
    CompanyPage,
    CompanyRead,
    CompanyUpdate,
    Device,
    User,
    UserCompany,
    now_utc,
    page_meta,
)
from app.domain.permissions import Role
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.invariant_service import InvariantService


class CompanyService:
    def __init__(self) -> None:
        self._invariants = InvariantService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_live_company(self, session: Session, company_id: str) -> Company:
        company = session.get(Company, company_id)
        if company is None or company.deleted:
            raise NotFoundError("Company not found")
        return company

    def _user_counts(self, session: Session, company_ids: list[str]) -> dict[str, int]:
        if not company_ids:
            return {}
        rows = session.exec(
            select(UserCompany.company_id, func.count())
            .join(User, col(User.id) == col(UserCompany.user_id))
            .where(col(UserCompany.company_id).in_(company_ids))
            .where(User.deleted == False)  # noqa: E712
            .group_by(col(UserCompany.company_id))
        ).all()
        return {company_id: int(count) for company_id, count in rows}

    def _device_counts(self, session: Session, company_ids: list[str]) -> dict[str, int]:
        if not company_ids:
            return {}
        rows = session.exec(
            select(Device.company_id, func.count())
            .where(col(Device.company_id).in_(company_ids))
            .where(Device.deleted == False)  # noqa: E712
            .group_by(col(Device.company_id))
        ).all()
        return {company_id: int(count) for company_id, count in rows}

    def _to_read(self, session: Session, companies: list[Company]) -> list[CompanyRead]:
        ids = [item.id for item in companies]
        users = self._user_counts(session, ids)
        devices = self._device_counts(session, ids)
        return [
            CompanyRead.model_validate(item).model_copy(
                update={"user_count": users.get(item.id, 0), "device_count": devices.get(item.id, 0)}
            )
            for item in companies
        ]

    def _next_position(self, session: Session, user_id: str) -> int:
        current = session.exec(
            select(func.max(UserCompany.position)).where(UserCompany.user_id == user_id)
        ).one()
        return 0 if current is None else int(current) + 1

    def create_company(self, caller: CallerIdentity, payload: CompanyCreate) -> CompanyRead:
        authorize_company_create(caller)
        with self._session() as session:
            self._invariants.ensure_company_name_available(session, payload.name)
            company = Company(
                name=payload.name,
                address=payload.address,
                pin_code=payload.pin_code,
                status=payload.status,
            )
            session.add(company)
            session.flush()
            if caller.role == Role.ADMIN:
                admin = session.get(User, caller.id)
                if admin is None or admin.deleted:
                    raise NotFoundError("User not found")
                session.add(
                    UserCompany(
                        user_id=admin.id,
                        company_id=company.id,
                        position=self._next_position(session, admin.id),
                    )
                )
                session.flush()
                assigned = session.exec(
                    select(func.count()).select_from(UserCompany).where(UserCompany.user_id == admin.id)
                ).one()
                if int(assigned) == 1:
                    admin.primary_company_id = company.id
                    admin.updated_at = now_utc()
                    session.add(admin)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Company with this name already exists") from exc
            session.refresh(company)
            read = self._to_read(session, [company])[0]

        event_bus.publish_dict(
            "company.created",
            company.id,
            {"company_id": company.id, "name": company.name},
            actor_id=caller.id,
        )
        return read

    def list_companies(
        self,
        caller: CallerIdentity,
        *,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        status: str | None = None,
    ) -> CompanyPage:
        authorize_company_list(caller)
        with self._session() as session:
            statement = select(Company).where(Company.deleted == False)  # noqa: E712
            if caller.role == Role.ADMIN:
                statement = statement.join(
                    UserCompany, col(UserCompany.company_id) == col(Company.id)
                ).where(UserCompany.user_id == caller.id)
            if status:
                statement = statement.where(Company.status == status)
            if search:
                pattern = f"%{search}%"
                statement = statement.where(
                    or_(col(Company.name).ilike(pattern), col(Company.address).ilike(pattern))
                )
            total = int(session.exec(select(func.count()).select_from(statement.subquery())).one())
            rows = list(
                session.exec(
                    statement.order_by(col(Company.created_at).desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).all()
            )
            items = self._to_read(session, rows)
        return CompanyPage(items=items, **page_meta(total, page, limit))

    def get_company(self, caller: CallerIdentity, company_id: str) -> CompanyRead:
        with self._session() as session:
            company = self._get_live_company(session, company_id)
            authorize_company_view(caller, company.id)
            return self._to_read(session, [company])[0]

    def update_company(
        self,
        caller: CallerIdentity,
        company_id: str,
        payload: CompanyUpdate,
    ) -> CompanyRead:
        with self._session() as session:
            company = self._get_live_company(session, company_id)
            authorize_company_update(caller, self._invariants.list_company_user_ids(session, company.id))

            updates = payload.model_dump(exclude_unset=True)
            if updates.get("name") is None:
                updates.pop("name", None)
            if "name" in updates and updates["name"] != company.name:
                self._invariants.ensure_company_name_available(
                    session, updates["name"], exclude_company_id=company.id
                )
            for key, value in updates.items():
                setattr(company, key, value)
            company.updated_at = now_utc()
            session.add(company)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("Company with this name already exists") from exc
            session.refresh(company)
            read = self._to_read(session, [company])[0]

        event_bus.publish_dict(
            "company.updated",
            company.id,
            {"company_id": company.id, "changed": sorted(updates)},
            actor_id=caller.id,
        )
        return read

    def delete_company(self, caller: CallerIdentity, company_id: str) -> None:
        with self._session() as session:
            company = self._get_live_company(session, company_id)
            user_ids = self._invariants.list_company_user_ids(session, company.id)
            authorize_company_delete(caller, user_ids)
            self._invariants.check_company_deletable(
                caller,
                self._invariants.count_company_devices(session, company.id),
                user_ids,
            )

            links = list(session.exec(select(UserCompany).where(UserCompany.company_id == company.id)).all())
            affected_user_ids = {link.user_id for link in links}
            for link in links:
                session.delete(link)
            session.flush()

            for user_id in affected_user_ids:
                user = session.get(User, user_id)
                if user is None or user.primary_company_id != company.id:
                    continue
                remaining = session.exec(
                    select(UserCompany.company_id)
                    .where(UserCompany.user_id == user_id)
                    .order_by(col(UserCompany.position))
                ).first()
                user.primary_company_id = remaining
                user.updated_at = now_utc()
                session.add(user)

            company.deleted = True
            company.updated_at = now_utc()
            session.add(company)
            session.commit()

        event_bus.publish_dict(
            "company.deleted",
            company.id,
            {"company_id": company.id, "name": company.name},
            actor_id=caller.id,
        )
