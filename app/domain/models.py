from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.domain.permissions import Role


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    company_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    company_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class UserStatus(StrEnum):
    ADDED = "ADDED"
    VALIDATED = "VALIDATED"
    SUSPENDED = "SUSPENDED"


class DeviceType(StrEnum):
    GATEWAY = "GATEWAY"
    SENSOR = "SENSOR"


class Company(SQLModel, table=True):
    __tablename__ = "companies"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    address: str | None = None
    pin_code: str | None = None
    status: str | None = None
    deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    phone_number: str | None = None
    role: Role = Field(index=True)
    status: UserStatus = Field(default=UserStatus.ADDED, index=True)
    position: str | None = None
    primary_company_id: str | None = Field(default=None, foreign_key="companies.id")
    deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class UserCompany(SQLModel, table=True):
    __tablename__ = "user_companies"
    __table_args__ = (Index("ix_user_companies_company_id", "company_id"),)

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    company_id: str = Field(foreign_key="companies.id", primary_key=True)
    position: int = Field(default=0)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class Device(SQLModel, table=True):
    __tablename__ = "devices"
    __table_args__ = (
        Index("ix_devices_company_serial", "company_id", "serial_number"),
        Index("ix_devices_parent_id", "parent_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True)
    serial_number: str
    reg_number: str | None = None
    type: DeviceType
    max_value: float | None = None
    min_value: float | None = None
    precision: float | None = None
    location: str | None = None
    manufacturer: str | None = None
    price: float | None = None
    company_id: str = Field(foreign_key="companies.id", index=True)
    parent_id: str | None = Field(default=None, foreign_key="devices.id")
    deleted: bool = Field(default=False, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)


class UserDevice(SQLModel, table=True):
    __tablename__ = "user_devices"
    __table_args__ = (Index("ix_user_devices_device_id", "device_id"),)

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    device_id: str = Field(foreign_key="devices.id", primary_key=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class AuthSession(SQLModel, table=True):
    __tablename__ = "sessions"
    __table_args__ = (UniqueConstraint("refresh_token", name="uq_sessions_refresh_token"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    token: str
    refresh_token: str
    expires_at: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    company_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PageMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


def page_meta(total: int, page: int, limit: int) -> dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit if limit > 0 else 0,
    }


# --- auth ------------------------------------------------------------------


class BootstrapRequest(BaseModel):
    name: str = PydanticField(min_length=1, max_length=255)
    email: str = PydanticField(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = PydanticField(min_length=8)


class LoginRequest(BaseModel):
    email: str = PydanticField(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = PydanticField(min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = PydanticField(min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = PydanticField(min_length=1)
    new_password: str = PydanticField(min_length=8)


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginUserRead(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    status: UserStatus
    company_ids: list[str]
    primary_company_id: str | None = None


class LoginResponse(BaseModel):
    user: LoginUserRead
    tokens: TokenPair


class SessionRead(ORMReadModel):
    id: str
    created_at: datetime
    expires_at: datetime


class CompanySummary(ORMReadModel):
    id: str
    name: str


class MeRead(BaseModel):
    id: str
    name: str
    email: str
    role: Role
    status: UserStatus
    position: str | None = None
    phone_number: str | None = None
    primary_company_id: str | None = None
    companies: list[CompanySummary]
    creatable_roles: list[Role]
    max_creatable_role: Role | None = None


# --- companies -------------------------------------------------------------


class CompanyCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=255)
    address: str | None = None
    pin_code: str | None = None
    status: str | None = None


class CompanyUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=255)
    address: str | None = None
    pin_code: str | None = None
    status: str | None = None


class CompanyRead(ORMReadModel):
    id: str
    name: str
    address: str | None = None
    pin_code: str | None = None
    status: str | None = None
    created_at: datetime
    updated_at: datetime
    user_count: int | None = None
    device_count: int | None = None


class CompanyPage(PageMeta):
    items: list[CompanyRead]


# --- devices ---------------------------------------------------------------


class DeviceCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=255)
    serial_number: str = PydanticField(min_length=1)
    reg_number: str | None = None
    type: DeviceType
    max_value: float | None = None
    min_value: float | None = None
    precision: float | None = None
    location: str | None = None
    manufacturer: str | None = None
    price: float | None = None
    company_id: str
    parent_id: str | None = None


class DeviceUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=255)
    serial_number: str | None = PydanticField(default=None, min_length=1)
    reg_number: str | None = None
    type: DeviceType | None = None
    max_value: float | None = None
    min_value: float | None = None
    precision: float | None = None
    location: str | None = None
    manufacturer: str | None = None
    price: float | None = None
    company_id: str | None = None
    parent_id: str | None = None


class DeviceSummary(ORMReadModel):
    id: str
    name: str
    serial_number: str


class DeviceChildRead(ORMReadModel):
    id: str
    name: str
    serial_number: str
    type: DeviceType


class DeviceRead(ORMReadModel):
    id: str
    name: str
    serial_number: str
    reg_number: str | None = None
    type: DeviceType
    max_value: float | None = None
    min_value: float | None = None
    precision: float | None = None
    location: str | None = None
    manufacturer: str | None = None
    price: float | None = None
    company_id: str
    company: CompanySummary | None = None
    parent_id: str | None = None
    parent: DeviceSummary | None = None
    children: list[DeviceChildRead] | None = None
    assigned_user_count: int | None = None
    created_at: datetime
    updated_at: datetime


class DevicePage(PageMeta):
    items: list[DeviceRead]


# --- users -----------------------------------------------------------------


class UserCreate(BaseModel):
    name: str = PydanticField(min_length=1, max_length=255)
    email: str = PydanticField(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = PydanticField(min_length=8)
    phone_number: str | None = None
    role: Role
    position: str | None = None
    company_ids: list[str] = PydanticField(default_factory=list)
    device_ids: list[str] = PydanticField(default_factory=list)


class UserUpdate(BaseModel):
    name: str | None = PydanticField(default=None, min_length=1, max_length=255)
    email: str | None = PydanticField(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str | None = PydanticField(default=None, min_length=8)
    phone_number: str | None = None
    role: Role | None = None
    status: UserStatus | None = None
    position: str | None = None
    company_ids: list[str] | None = None
    device_ids: list[str] | None = None


class UserRead(ORMReadModel):
    id: str
    name: str
    email: str
    phone_number: str | None = None
    role: Role
    status: UserStatus
    position: str | None = None
    primary_company_id: str | None = None
    created_at: datetime
    updated_at: datetime
    companies: list[CompanySummary] = PydanticField(default_factory=list)
    devices: list[DeviceSummary] = PydanticField(default_factory=list)


class UserPage(PageMeta):
    items: list[UserRead]


# --- analytics -------------------------------------------------------------


class AnalyticsCountsRead(BaseModel):
    users: int
    devices: int
    companies: int | None = None
