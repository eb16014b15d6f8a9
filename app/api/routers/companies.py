from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import Caller, raise_http_error, require_roles
from app.domain.errors import FleetError
from app.domain.models import CompanyCreate, CompanyPage, CompanyRead, CompanyUpdate
from app.domain.permissions import Role
from app.services.company_service import CompanyService

router = APIRouter()


def get_company_service() -> CompanyService:
    return CompanyService()


Service = Annotated[CompanyService, Depends(get_company_service)]
ADMINS = Depends(require_roles(Role.ADMIN, Role.SUPER_ADMIN))


@router.post(
    "",
    response_model=CompanyRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[ADMINS],
)
def create_company(payload: CompanyCreate, caller: Caller, service: Service) -> CompanyRead:
    try:
        return service.create_company(caller, payload)
    except FleetError as exc:
        raise_http_error(exc)


@router.get("", response_model=CompanyPage, dependencies=[ADMINS])
def list_companies(
    caller: Caller,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    search: str | None = None,
    company_status: Annotated[str | None, Query(alias="status")] = None,
) -> CompanyPage:
    try:
        return service.list_companies(caller, page=page, limit=limit, search=search, status=company_status)
    except FleetError as exc:
        raise_http_error(exc)


@router.get("/{company_id}", response_model=CompanyRead, dependencies=[ADMINS])
def get_company(company_id: str, caller: Caller, service: Service) -> CompanyRead:
    try:
        return service.get_company(caller, company_id)
    except FleetError as exc:
        raise_http_error(exc)


@router.put("/{company_id}", response_model=CompanyRead, dependencies=[ADMINS])
def update_company(
    company_id: str,
    payload: CompanyUpdate,
    caller: Caller,
    service: Service,
) -> CompanyRead:
    try:
        return service.update_company(caller, company_id, payload)
    except FleetError as exc:
        raise_http_error(exc)


@router.delete("/{company_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[ADMINS])
def delete_company(company_id: str, caller: Caller, service: Service) -> Response:
    try:
        service.delete_company(caller, company_id)
    except FleetError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
