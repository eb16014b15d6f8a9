from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import (
    ActiveCompany,
    Caller,
    OptionalActiveCompany,
    get_optional_active_company,
    raise_http_error,
    require_roles,
)
from app.domain.errors import FleetError
from app.domain.models import DeviceCreate, DevicePage, DeviceRead, DeviceType, DeviceUpdate
from app.domain.permissions import Role
from app.services.device_service import DeviceService

router = APIRouter()


def get_device_service() -> DeviceService:
    return DeviceService()


Service = Annotated[DeviceService, Depends(get_device_service)]
ADMINS = Depends(require_roles(Role.ADMIN, Role.SUPER_ADMIN))


@router.post(
    "",
    response_model=DeviceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[ADMINS],
)
def create_device(
    payload: DeviceCreate,
    caller: Caller,
    active_company_id: ActiveCompany,
    service: Service,
) -> DeviceRead:
    try:
        return service.create_device(caller, payload, active_company_id)
    except FleetError as exc:
        raise_http_error(exc)


@router.get("", response_model=DevicePage)
def list_devices(
    caller: Caller,
    active_company_id: OptionalActiveCompany,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    search: str | None = None,
    device_type: Annotated[DeviceType | None, Query(alias="type")] = None,
    company_id: str | None = None,
    parent_id: str | None = None,
    include_children: bool = False,
) -> DevicePage:
    return service.list_devices(
        caller,
        active_company_id,
        page=page,
        limit=limit,
        search=search,
        device_type=device_type,
        company_id=company_id,
        parent_id=parent_id,
        include_children=include_children,
    )


@router.get(
    "/{device_id}",
    response_model=DeviceRead,
    dependencies=[Depends(get_optional_active_company)],
)
def get_device(device_id: str, caller: Caller, service: Service) -> DeviceRead:
    try:
        return service.get_device(caller, device_id)
    except FleetError as exc:
        raise_http_error(exc)


@router.put("/{device_id}", response_model=DeviceRead, dependencies=[ADMINS])
def update_device(
    device_id: str,
    payload: DeviceUpdate,
    caller: Caller,
    active_company_id: ActiveCompany,
    service: Service,
) -> DeviceRead:
    try:
        return service.update_device(caller, device_id, payload, active_company_id)
    except FleetError as exc:
        raise_http_error(exc)


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[ADMINS])
def delete_device(
    device_id: str,
    caller: Caller,
    active_company_id: ActiveCompany,
    service: Service,
) -> Response:
    try:
        service.delete_device(caller, device_id, active_company_id)
    except FleetError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
