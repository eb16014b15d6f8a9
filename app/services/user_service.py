from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.authorization import (
    authorize_user_create,
    authorize_user_delete,
    authorize_user_update,
    authorize_user_view,
)
from app.domain.errors import ConflictError, NotFoundError
from app.domain.identity import CallerIdentity, UserTarget
from app.domain.models import (
    AuthSession,
    Company,
    CompanySummary,
    Device,
    DeviceSummary,
    User,
    UserCompany,
    UserCreate,
    UserDevice,
    UserPage,
    UserRead,
    UserStatus,
    UserUpdate,
    now_utc,
    page_meta,
)
from app.domain.permissions import Role
from app.infra.auth import hash_password
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.invariant_service import InvariantService

EMAIL_CONFLICT = "User with this email already exists"


def _unique(values: Sequence[str]) -> list[str]:
    return list(dict.fromkeys(values))


class UserService:
    def __init__(self) -> None:
        self._invariants = InvariantService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_live_user(self, session: Session, user_id: str) -> User:
        user = session.get(User, user_id)
        if user is None or user.deleted:
            raise NotFoundError("User not found")
        return user

    def _company_ids(self, session: Session, user_id: str) -> list[str]:
        return list(
            session.exec(
                select(UserCompany.company_id)
                .where(UserCompany.user_id == user_id)
                .order_by(col(UserCompany.position))
            ).all()
        )

    def _device_ids(self, session: Session, user_id: str) -> list[str]:
        return list(
            session.exec(
                select(UserDevice.device_id)
                .join(Device, col(Device.id) == col(UserDevice.device_id))
                .where(UserDevice.user_id == user_id)
                .where(Device.deleted == False)  # noqa: E712
            ).all()
        )

    def _target(self, session: Session, user: User) -> UserTarget:
        return UserTarget(id=user.id, role=user.role, company_ids=frozenset(self._company_ids(session, user.id)))

    def _to_read(self, session: Session, user: User) -> UserRead:
        companies = session.exec(
            select(Company)
            .join(UserCompany, col(UserCompany.company_id) == col(Company.id))
            .where(UserCompany.user_id == user.id)
            .order_by(col(UserCompany.position))
        ).all()
        devices = session.exec(
            select(Device)
            .join(UserDevice, col(UserDevice.device_id) == col(Device.id))
            .where(UserDevice.user_id == user.id)
            .where(Device.deleted == False)  # noqa: E712
            .order_by(col(Device.name))
        ).all()
        return UserRead.model_validate(user).model_copy(
            update={
                "companies": [CompanySummary.model_validate(item) for item in companies],
                "devices": [DeviceSummary.model_validate(item) for item in devices],
            }
        )

    def _check_device_assignment(
        self,
        session: Session,
        caller: CallerIdentity,
        role: Role,
        device_ids: list[str],
        company_ids: list[str],
    ) -> None:
        self._invariants.check_viewer_devices(role, device_ids)
        devices = self._invariants.load_active_devices(session, device_ids)
        self._invariants.check_device_company_access(caller, devices)
        self._invariants.check_devices_within_companies(devices, company_ids)

    def _replace_companies(self, session: Session, user_id: str, company_ids: list[str]) -> None:
        session.execute(delete(UserCompany).where(col(UserCompany.user_id) == user_id))
        for position, company_id in enumerate(company_ids):
            session.add(UserCompany(user_id=user_id, company_id=company_id, position=position))

    def _replace_devices(self, session: Session, user_id: str, device_ids: list[str]) -> None:
        session.execute(delete(UserDevice).where(col(UserDevice.user_id) == user_id))
        for device_id in device_ids:
            session.add(UserDevice(user_id=user_id, device_id=device_id))

    def _revoke_sessions(self, session: Session, user_id: str) -> None:
        session.execute(delete(AuthSession).where(col(AuthSession.user_id) == user_id))

    def create_user(self, caller: CallerIdentity, payload: UserCreate) -> UserRead:
        authorize_user_create(caller, payload.role)
        company_ids = _unique(payload.company_ids)
        device_ids = _unique(payload.device_ids)
        if not company_ids and not caller.is_super_admin:
            company_ids = list(caller.assigned_company_ids)

        with self._session() as session:
            self._invariants.ensure_email_available(session, payload.email)
            self._invariants.check_company_access(caller, company_ids)
            self._invariants.load_active_companies(session, company_ids)
            self._check_device_assignment(session, caller, payload.role, device_ids, company_ids)

            user = User(
                name=payload.name,
                email=payload.email,
                password_hash=hash_password(payload.password),
                phone_number=payload.phone_number,
                role=payload.role,
                position=payload.position,
                primary_company_id=company_ids[0] if len(company_ids) == 1 else None,
            )
            session.add(user)
            session.flush()
            self._replace_companies(session, user.id, company_ids)
            self._replace_devices(session, user.id, device_ids)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(EMAIL_CONFLICT) from exc
            session.refresh(user)
            read = self._to_read(session, user)

        event_bus.publish_dict(
            "user.created",
            user.primary_company_id,
            {"user_id": user.id, "role": str(user.role), "company_ids": company_ids},
            actor_id=caller.id,
        )
        return read

    def list_users(
        self,
        caller: CallerIdentity,
        active_company_id: str | None,
        *,
        page: int = 1,
        limit: int = 10,
        role: Role | None = None,
        status: UserStatus | None = None,
        search: str | None = None,
        company_id: str | None = None,
    ) -> UserPage:
        statement = select(User).where(User.deleted == False)  # noqa: E712
        scope = (company_id or active_company_id) if caller.is_super_admin else active_company_id
        if scope is None and not caller.is_super_admin:
            return UserPage(items=[], **page_meta(0, page, limit))
        if scope is not None:
            statement = statement.join(UserCompany, col(UserCompany.user_id) == col(User.id)).where(
                UserCompany.company_id == scope
            )
        if caller.role == Role.VIEWER:
            statement = statement.where(User.id == caller.id)
        if role is not None:
            statement = statement.where(User.role == role)
        if status is not None:
            statement = statement.where(User.status == status)
        if search:
            pattern = f"%{search}%"
            statement = statement.where(or_(col(User.name).ilike(pattern), col(User.email).ilike(pattern)))

        with self._session() as session:
            total = int(session.exec(select(func.count()).select_from(statement.subquery())).one())
            rows = session.exec(
                statement.order_by(col(User.created_at).desc()).offset((page - 1) * limit).limit(limit)
            ).all()
            items = [self._to_read(session, item) for item in rows]
        return UserPage(items=items, **page_meta(total, page, limit))

    def get_user(self, caller: CallerIdentity, user_id: str) -> UserRead:
        with self._session() as session:
            user = self._get_live_user(session, user_id)
            authorize_user_view(caller, self._target(session, user))
            return self._to_read(session, user)

    def update_user(self, caller: CallerIdentity, user_id: str, payload: UserUpdate) -> UserRead:
        fields = payload.model_fields_set
        with self._session() as session:
            user = self._get_live_user(session, user_id)
            target = self._target(session, user)
            new_role = payload.role if "role" in fields else None
            authorize_user_update(caller, target, new_role)

            if payload.email is not None and payload.email != user.email:
                self._invariants.ensure_email_available(session, payload.email, exclude_user_id=user.id)

            current_company_ids = self._company_ids(session, user.id)
            company_ids = current_company_ids
            if "company_ids" in fields and payload.company_ids is not None:
                company_ids = _unique(payload.company_ids)
                self._invariants.check_company_access(caller, set(company_ids) - set(current_company_ids))
                self._invariants.load_active_companies(session, company_ids)

            final_role = new_role or user.role
            touches_devices = "device_ids" in fields and payload.device_ids is not None
            if touches_devices:
                device_ids = _unique(payload.device_ids or [])
                self._invariants.check_viewer_devices(final_role, device_ids)
                devices = self._invariants.load_active_devices(session, device_ids)
                self._invariants.check_device_company_access(caller, devices)
                self._invariants.check_devices_within_companies(devices, company_ids)
                self._replace_devices(session, user.id, device_ids)
            elif new_role == Role.VIEWER:
                self._invariants.check_viewer_devices(final_role, self._device_ids(session, user.id))

            if company_ids != current_company_ids:
                self._replace_companies(session, user.id, company_ids)
                if len(company_ids) == 1:
                    user.primary_company_id = company_ids[0]
                elif user.primary_company_id not in company_ids:
                    user.primary_company_id = None

            previous_status = user.status
            for key in ("name", "email", "role", "status"):
                value = getattr(payload, key)
                if key in fields and value is not None:
                    setattr(user, key, value)
            for key in ("phone_number", "position"):
                if key in fields:
                    setattr(user, key, getattr(payload, key))
            if payload.password:
                user.password_hash = hash_password(payload.password)

            suspended = user.status == UserStatus.SUSPENDED and previous_status != UserStatus.SUSPENDED
            if suspended:
                self._revoke_sessions(session, user.id)
            user.updated_at = now_utc()
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(EMAIL_CONFLICT) from exc
            session.refresh(user)
            read = self._to_read(session, user)

        event_bus.publish_dict(
            "user.suspended" if suspended else "user.updated",
            user.primary_company_id,
            {"user_id": user.id, "changed": sorted(fields - {"password"})},
            actor_id=caller.id,
        )
        return read

    def delete_user(self, caller: CallerIdentity, user_id: str) -> None:
        with self._session() as session:
            user = self._get_live_user(session, user_id)
            authorize_user_delete(caller, self._target(session, user))
            self._revoke_sessions(session, user.id)
            user.deleted = True
            user.updated_at = now_utc()
            session.add(user)
            session.commit()

        event_bus.publish_dict(
            "user.deleted",
            user.primary_company_id,
            {"user_id": user.id, "role": str(user.role)},
            actor_id=caller.id,
        )
