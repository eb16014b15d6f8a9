from __future__ import annotations

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.authorization import (
    DEVICE_ADMIN_ROLES,
    authorize_device_create,
    authorize_device_delete,
    authorize_device_update,
    authorize_device_view,
    require_role,
)
from app.domain.errors import ConflictError, NotFoundError, ValidationError
from app.domain.identity import CallerIdentity
from app.domain.models import (
    Company,
    CompanySummary,
    Device,
    DeviceChildRead,
    DeviceCreate,
    DevicePage,
    DeviceRead,
    DeviceSummary,
    DeviceType,
    DeviceUpdate,
    User,
    UserDevice,
    now_utc,
    page_meta,
)
from app.domain.permissions import Role
from app.infra.db import get_engine
from app.infra.events import event_bus
from app.services.invariant_service import InvariantService

SERIAL_CONFLICT = "Device with this serial number already exists in this company"


class DeviceService:
    def __init__(self) -> None:
        self._invariants = InvariantService()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_live_device(self, session: Session, device_id: str) -> Device:
        device = session.get(Device, device_id)
        if device is None or device.deleted:
            raise NotFoundError("Device not found")
        return device

    def _get_live_company(self, session: Session, company_id: str) -> Company:
        company = session.get(Company, company_id)
        if company is None or company.deleted:
            raise NotFoundError("Company not found")
        return company

    def _is_assigned(self, session: Session, user_id: str, device_id: str) -> bool:
        return session.get(UserDevice, (user_id, device_id)) is not None

    def _assigned_user_counts(self, session: Session, device_ids: list[str]) -> dict[str, int]:
        if not device_ids:
            return {}
        rows = session.exec(
            select(UserDevice.device_id, func.count())
            .join(User, col(User.id) == col(UserDevice.user_id))
            .where(col(UserDevice.device_id).in_(device_ids))
            .where(User.deleted == False)  # noqa: E712
            .group_by(col(UserDevice.device_id))
        ).all()
        return {device_id: int(count) for device_id, count in rows}

    def _children_by_parent(self, session: Session, device_ids: list[str]) -> dict[str, list[Device]]:
        grouped: dict[str, list[Device]] = {item: [] for item in device_ids}
        if not device_ids:
            return grouped
        rows = session.exec(
            select(Device)
            .where(col(Device.parent_id).in_(device_ids))
            .where(Device.deleted == False)  # noqa: E712
            .order_by(col(Device.created_at))
        ).all()
        for child in rows:
            if child.parent_id is not None:
                grouped[child.parent_id].append(child)
        return grouped

    def _to_read(
        self,
        session: Session,
        devices: list[Device],
        *,
        include_children: bool,
    ) -> list[DeviceRead]:
        ids = [item.id for item in devices]
        company_ids = {item.company_id for item in devices}
        parent_ids = {item.parent_id for item in devices if item.parent_id is not None}
        companies = {
            item.id: item
            for item in session.exec(select(Company).where(col(Company.id).in_(company_ids))).all()
        } if company_ids else {}
        parents = {
            item.id: item
            for item in session.exec(select(Device).where(col(Device.id).in_(parent_ids))).all()
        } if parent_ids else {}
        counts = self._assigned_user_counts(session, ids)
        children = self._children_by_parent(session, ids) if include_children else {}

        reads: list[DeviceRead] = []
        for item in devices:
            company = companies.get(item.company_id)
            parent = parents.get(item.parent_id) if item.parent_id is not None else None
            extra = {
                "company": CompanySummary.model_validate(company) if company is not None else None,
                "parent": DeviceSummary.model_validate(parent) if parent is not None else None,
                "assigned_user_count": counts.get(item.id, 0),
                "children": (
                    [DeviceChildRead.model_validate(child) for child in children.get(item.id, [])]
                    if include_children
                    else None
                ),
            }
            reads.append(DeviceRead.model_validate(item).model_copy(update=extra))
        return reads

    def create_device(
        self,
        caller: CallerIdentity,
        payload: DeviceCreate,
        active_company_id: str | None,
    ) -> DeviceRead:
        authorize_device_create(caller, payload.company_id, active_company_id)
        with self._session() as session:
            company = self._get_live_company(session, payload.company_id)
            self._invariants.ensure_serial_number_available(session, company.id, payload.serial_number)
            if payload.parent_id is not None:
                self._invariants.resolve_device_parent(
                    session,
                    device_id=None,
                    company_id=company.id,
                    parent_id=payload.parent_id,
                )
            device = Device(**payload.model_dump())
            session.add(device)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(SERIAL_CONFLICT) from exc
            session.refresh(device)
            read = self._to_read(session, [device], include_children=False)[0]

        event_bus.publish_dict(
            "device.registered",
            device.company_id,
            {
                "device_id": device.id,
                "serial_number": device.serial_number,
                "type": str(device.type),
                "parent_id": device.parent_id,
            },
            actor_id=caller.id,
        )
        return read

    def list_devices(
        self,
        caller: CallerIdentity,
        active_company_id: str | None,
        *,
        page: int = 1,
        limit: int = 10,
        search: str | None = None,
        device_type: DeviceType | None = None,
        company_id: str | None = None,
        parent_id: str | None = None,
        include_children: bool = False,
    ) -> DevicePage:
        statement = select(Device).where(Device.deleted == False)  # noqa: E712
        if caller.is_super_admin:
            scope = company_id or active_company_id
            if scope is not None:
                statement = statement.where(Device.company_id == scope)
        elif caller.role in {Role.ADMIN, Role.MANAGER}:
            if active_company_id is not None:
                statement = statement.where(Device.company_id == active_company_id)
            else:
                statement = statement.where(col(Device.company_id).in_(list(caller.assigned_company_ids)))
        else:
            statement = statement.join(UserDevice, col(UserDevice.device_id) == col(Device.id)).where(
                UserDevice.user_id == caller.id
            )
            if active_company_id is not None:
                statement = statement.where(Device.company_id == active_company_id)

        if device_type is not None:
            statement = statement.where(Device.type == device_type)
        if parent_id:
            statement = statement.where(Device.parent_id == parent_id)
        if search:
            pattern = f"%{search}%"
            statement = statement.where(
                or_(
                    col(Device.name).ilike(pattern),
                    col(Device.serial_number).ilike(pattern),
                    col(Device.reg_number).ilike(pattern),
                    col(Device.location).ilike(pattern),
                )
            )

        with self._session() as session:
            total = int(session.exec(select(func.count()).select_from(statement.subquery())).one())
            rows = list(
                session.exec(
                    statement.order_by(col(Device.created_at).desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                ).all()
            )
            items = self._to_read(session, rows, include_children=include_children)
        return DevicePage(items=items, **page_meta(total, page, limit))

    def get_device(self, caller: CallerIdentity, device_id: str) -> DeviceRead:
        with self._session() as session:
            device = self._get_live_device(session, device_id)
            authorize_device_view(
                caller,
                device.company_id,
                assigned_to_caller=self._is_assigned(session, caller.id, device.id),
            )
            return self._to_read(session, [device], include_children=True)[0]

    def update_device(
        self,
        caller: CallerIdentity,
        device_id: str,
        payload: DeviceUpdate,
        active_company_id: str | None,
    ) -> DeviceRead:
        require_role(caller, DEVICE_ADMIN_ROLES, "Only ADMIN and SUPER_ADMIN can update devices")
        fields = payload.model_fields_set
        with self._session() as session:
            device = self._get_live_device(session, device_id)
            requested_company_id = payload.company_id if "company_id" in fields else None
            authorize_device_update(caller, device.company_id, active_company_id, requested_company_id)

            target_company_id = device.company_id
            relocating = requested_company_id is not None and requested_company_id != device.company_id
            if relocating:
                target_company_id = self._get_live_company(session, requested_company_id).id
                child_count = self._invariants.count_device_children(session, device.id)
                if child_count > 0:
                    raise ValidationError(
                        f"Cannot move device with {child_count} child devices to another company"
                    )

            serial_number = payload.serial_number if payload.serial_number is not None else device.serial_number
            if relocating or serial_number != device.serial_number:
                self._invariants.ensure_serial_number_available(
                    session,
                    target_company_id,
                    serial_number,
                    exclude_device_id=device.id,
                )

            if "parent_id" in fields and payload.parent_id is not None:
                self._invariants.resolve_device_parent(
                    session,
                    device_id=device.id,
                    company_id=target_company_id,
                    parent_id=payload.parent_id,
                )
            elif "parent_id" not in fields and relocating and device.parent_id is not None:
                raise ValidationError("Parent device must be in the same company")

            updates = payload.model_dump(exclude_unset=True, exclude={"company_id"})
            for key in ("name", "serial_number", "type"):
                if key in updates and updates[key] is None:
                    updates.pop(key)
            for key, value in updates.items():
                setattr(device, key, value)
            device.company_id = target_company_id
            device.updated_at = now_utc()
            session.add(device)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(SERIAL_CONFLICT) from exc
            session.refresh(device)
            read = self._to_read(session, [device], include_children=True)[0]

        event_bus.publish_dict(
            "device.updated",
            device.company_id,
            {
                "device_id": device.id,
                "changed": sorted({*updates, *(["company_id"] if relocating else [])}),
            },
            actor_id=caller.id,
        )
        return read

    def delete_device(
        self,
        caller: CallerIdentity,
        device_id: str,
        active_company_id: str | None,
    ) -> None:
        require_role(caller, DEVICE_ADMIN_ROLES, "Only ADMIN and SUPER_ADMIN can delete devices")
        with self._session() as session:
            device = self._get_live_device(session, device_id)
            authorize_device_delete(caller, device.company_id, active_company_id)
            self._invariants.check_device_deletable(self._invariants.count_device_children(session, device.id))
            device.deleted = True
            device.updated_at = now_utc()
            session.add(device)
            session.commit()

        event_bus.publish_dict(
            "device.deleted",
            device.company_id,
            {"device_id": device.id, "serial_number": device.serial_number},
            actor_id=caller.id,
        )
