from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy import func
from sqlmodel import Session, col, select

from app.domain.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from app.domain.identity import CallerIdentity
from app.domain.models import Company, Device, User, UserCompany
from app.domain.permissions import Role

MAX_PARENT_DEPTH = 1000


class InvariantService:
    """Structural checks run inside the mutating session before anything is written.

    Uniqueness checks here are the user-facing pre-check; concurrent writers are
    serialized by the surrounding transaction and the schema constraints.
    """

    # --- companies ---------------------------------------------------------

    def ensure_company_name_available(
        self,
        session: Session,
        name: str,
        *,
        exclude_company_id: str | None = None,
    ) -> None:
        # exact, case-sensitive match
        statement = select(Company.id).where(Company.name == name).where(Company.deleted == False)  # noqa: E712
        if exclude_company_id is not None:
            statement = statement.where(Company.id != exclude_company_id)
        if session.exec(statement).first() is not None:
            raise ConflictError("Company with this name already exists")

    def count_company_devices(self, session: Session, company_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(Device)
            .where(Device.company_id == company_id)
            .where(Device.deleted == False)  # noqa: E712
        )
        return int(session.exec(statement).one())

    def list_company_user_ids(self, session: Session, company_id: str) -> list[str]:
        statement = (
            select(UserCompany.user_id)
            .join(User, col(User.id) == col(UserCompany.user_id))
            .where(UserCompany.company_id == company_id)
            .where(User.deleted == False)  # noqa: E712
        )
        return list(session.exec(statement).all())

    def check_company_deletable(
        self,
        actor: CallerIdentity,
        device_count: int,
        user_ids: Sequence[str],
    ) -> None:
        if device_count > 0:
            raise ValidationError(
                f"Cannot delete company with {device_count} devices. "
                "Please delete or reassign devices first."
            )
        user_count = len(user_ids)
        if user_count == 0:
            return
        if user_count == 1 and actor.role == Role.ADMIN and user_ids[0] == actor.id:
            return
        raise ValidationError(
            f"Cannot delete company with {user_count} users. Please reassign users first."
        )

    def load_active_companies(self, session: Session, company_ids: Sequence[str]) -> list[Company]:
        if not company_ids:
            return []
        companies = list(
            session.exec(
                select(Company)
                .where(col(Company.id).in_(list(company_ids)))
                .where(Company.deleted == False)  # noqa: E712
            ).all()
        )
        if len(companies) != len(set(company_ids)):
            raise ValidationError("One or more company IDs are invalid")
        return companies

    def check_company_access(self, actor: CallerIdentity, company_ids: Iterable[str]) -> None:
        if actor.is_super_admin:
            return
        if any(not actor.is_assigned_to(item) for item in company_ids):
            raise ForbiddenError("You can only assign companies you have access to")

    # --- devices -----------------------------------------------------------

    def ensure_serial_number_available(
        self,
        session: Session,
        company_id: str,
        serial_number: str,
        *,
        exclude_device_id: str | None = None,
    ) -> None:
        statement = (
            select(Device.id)
            .where(Device.company_id == company_id)
            .where(Device.serial_number == serial_number)
            .where(Device.deleted == False)  # noqa: E712
        )
        if exclude_device_id is not None:
            statement = statement.where(Device.id != exclude_device_id)
        if session.exec(statement).first() is not None:
            raise ConflictError("Device with this serial number already exists in this company")

    def count_device_children(self, session: Session, device_id: str) -> int:
        statement = (
            select(func.count())
            .select_from(Device)
            .where(Device.parent_id == device_id)
            .where(Device.deleted == False)  # noqa: E712
        )
        return int(session.exec(statement).one())

    def check_device_deletable(self, child_count: int) -> None:
        if child_count > 0:
            raise ValidationError(
                f"Cannot delete device with {child_count} child devices. "
                "Please delete or reassign child devices first."
            )

    def _get_live_device(self, session: Session, device_id: str) -> Device | None:
        device = session.get(Device, device_id)
        if device is None or device.deleted:
            return None
        return device

    def resolve_device_parent(
        self,
        session: Session,
        *,
        device_id: str | None,
        company_id: str,
        parent_id: str,
    ) -> Device:
        """Validate ``parent_id`` as the parent of ``device_id`` in ``company_id``.

        ``device_id`` is ``None`` for a device that does not exist yet. The
        ancestor chain of the new parent is walked so that re-parenting can
        never close a loop.
        """
        if device_id is not None and parent_id == device_id:
            raise ValidationError("Device cannot be its own parent")
        parent = self._get_live_device(session, parent_id)
        if parent is None:
            raise NotFoundError("Parent device not found")
        if parent.company_id != company_id:
            raise ValidationError("Parent device must be in the same company")

        if device_id is not None:
            seen: set[str] = set()
            cursor: Device | None = parent
            while cursor is not None and cursor.parent_id is not None:
                if cursor.parent_id == device_id:
                    raise ValidationError("Device parent chain cannot contain a cycle")
                if cursor.parent_id in seen or len(seen) >= MAX_PARENT_DEPTH:
                    break
                seen.add(cursor.parent_id)
                cursor = session.get(Device, cursor.parent_id)
        return parent

    def load_active_devices(self, session: Session, device_ids: Sequence[str]) -> list[Device]:
        if not device_ids:
            return []
        devices = list(
            session.exec(
                select(Device)
                .where(col(Device.id).in_(list(device_ids)))
                .where(Device.deleted == False)  # noqa: E712
            ).all()
        )
        if len(devices) != len(set(device_ids)):
            raise ValidationError("One or more device IDs are invalid")
        return devices

    def check_device_company_access(self, actor: CallerIdentity, devices: Iterable[Device]) -> None:
        if actor.is_super_admin:
            return
        if any(not actor.is_assigned_to(item.company_id) for item in devices):
            raise ForbiddenError("You can only assign devices from companies you have access to")

    def check_devices_within_companies(
        self,
        devices: Iterable[Device],
        company_ids: Sequence[str],
    ) -> None:
        if not company_ids:
            return
        allowed = set(company_ids)
        if any(item.company_id not in allowed for item in devices):
            raise ValidationError("All assigned devices must belong to the user's assigned companies")

    # --- users -------------------------------------------------------------

    def check_viewer_devices(self, role: Role, device_ids: Sequence[str]) -> None:
        if role == Role.VIEWER and not device_ids:
            raise ValidationError("VIEWER users must have at least one device assigned")

    def ensure_email_available(
        self,
        session: Session,
        email: str,
        *,
        exclude_user_id: str | None = None,
    ) -> None:
        statement = select(User.id).where(User.email == email)
        if exclude_user_id is not None:
            statement = statement.where(User.id != exclude_user_id)
        if session.exec(statement).first() is not None:
            raise ConflictError("User with this email already exists")
