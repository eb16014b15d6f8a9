from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request, Response, status

from app.api.deps import Caller, raise_http_error
from app.domain.errors import FleetError
from app.domain.models import (
    BootstrapRequest,
    ChangePasswordRequest,
    LoginRequest,
    LoginResponse,
    LoginUserRead,
    MeRead,
    RefreshRequest,
    SessionRead,
    TokenPair,
)
from app.infra.audit import set_audit_context
from app.services.auth_service import AuthService

router = APIRouter()


def get_auth_service() -> AuthService:
    return AuthService()


Service = Annotated[AuthService, Depends(get_auth_service)]


@router.post("/bootstrap", response_model=LoginUserRead, status_code=status.HTTP_201_CREATED)
def bootstrap(payload: BootstrapRequest, service: Service) -> LoginUserRead:
    try:
        return service.bootstrap(payload)
    except FleetError as exc:
        raise_http_error(exc)


@router.post("/login", response_model=LoginResponse)
def login(payload: LoginRequest, request: Request, service: Service) -> LoginResponse:
    try:
        result = service.login(payload)
    except FleetError as exc:
        set_audit_context(request, action="auth.login", detail={"what": {"email": payload.email}})
        raise_http_error(exc)
    set_audit_context(
        request,
        action="auth.login",
        detail={"who": {"actor_id": result.user.id, "role": str(result.user.role)}},
    )
    return result


@router.post("/refresh", response_model=TokenPair)
def refresh(payload: RefreshRequest, service: Service) -> TokenPair:
    try:
        return service.refresh(payload.refresh_token)
    except FleetError as exc:
        raise_http_error(exc)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(payload: RefreshRequest, service: Service) -> Response:
    service.logout(payload.refresh_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout-all", status_code=status.HTTP_204_NO_CONTENT)
def logout_all(caller: Caller, service: Service) -> Response:
    service.logout_all(caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/change-password", status_code=status.HTTP_204_NO_CONTENT)
def change_password(payload: ChangePasswordRequest, caller: Caller, service: Service) -> Response:
    try:
        service.change_password(caller, payload)
    except FleetError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/me", response_model=MeRead)
def me(caller: Caller, service: Service) -> MeRead:
    try:
        return service.me(caller)
    except FleetError as exc:
        raise_http_error(exc)


@router.get("/sessions", response_model=list[SessionRead])
def list_sessions(caller: Caller, service: Service) -> list[SessionRead]:
    return service.list_sessions(caller)


@router.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_session(session_id: str, caller: Caller, service: Service) -> Response:
    try:
        service.revoke_session(caller, session_id)
    except FleetError as exc:
        raise_http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
