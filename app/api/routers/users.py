from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import ActiveCompany, Caller, raise_http_error, require_roles
from app.domain.errors import FleetError
from app.domain.models import UserCreate, UserPage, UserRead, UserStatus, UserUpdate
from app.domain.permissions import Role
from app.services.user_service import UserService

router = APIRouter()


def get_user_service() -> UserService:
    return UserService()


Service = Annotated[UserService, Depends(get_user_service)]
USER_ADMINS = Depends(require_roles(Role.MANAGER, Role.ADMIN, Role.SUPER_ADMIN))


@router.post(
    "",
    response_model=UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[USER_ADMINS],
)
def create_user(payload: UserCreate, caller: Caller, service: Service) -> UserRead:
    try:
        return service.create_user(caller, payload)
    except FleetError as exc:
        raise_http_error(exc)


@router.get("", response_model=UserPage)
def list_users(
    caller: Caller,
    active_company_id: ActiveCompany,
    service: Service,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    role: Role | None = None,
    user_status: Annotated[UserStatus | None, Query(alias="status")] = None,
    search: str | None = None,
    company_id: str | None = None,
) -> UserPage:
    return service.list_users(
        caller,
        active_company_id,
        page=page,
        limit=limit,
        role=role,
        status=user_status,
        search=search,
        company_id=company_id,
    )


@router.get("/{user_id}", response_model=UserRead)
def get_user(user_id: str, caller: Caller, service: Service) -> UserRead:
    try:
        return service.get_user(caller, user_id)
    except FleetError as exc:
        raise_http_error(exc)


@router.put("/{user_id}", response_model=UserRead, dependencies=[USER_ADMINS])
def update_user(user_id: str, payload: UserUpdate, caller: Caller, service: Service) -> UserRead:
    try:
        return service.update_user(caller, user_id, payload)
    except FleetError as exc:
        raise_http_error(exc)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[USER_ADMINS])
def delete_user(user_id: str, caller: Caller, service: Service) -> Response:
    try:
        service.delete_user(caller, user_id)
    except FleetError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
