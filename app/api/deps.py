from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, NoReturn

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.domain.errors import (
    AuthError,
    ConflictError,
    FleetError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from app.domain.identity import CallerIdentity
from app.domain.permissions import Role
from app.domain.tenancy import (
    ACTIVE_COMPANY_HEADER,
    resolve_active_company,
    resolve_optional_active_company,
)
from app.infra.audit import set_audit_context
from app.infra.auth import decode_access_token

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

_ERROR_STATUS: tuple[tuple[type[FleetError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthError, status.HTTP_401_UNAUTHORIZED),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
)


def raise_http_error(exc: FleetError) -> NoReturn:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
            raise HTTPException(status_code=status_code, detail=str(exc), headers=headers) from exc
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error") from exc


def get_current_caller(
    request: Request,
    token: str = Depends(oauth2_scheme),
) -> CallerIdentity:
    try:
        caller = CallerIdentity.from_claims(decode_access_token(token))
    except AuthError as exc:
        raise_http_error(exc)
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid access token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    request.state.caller = caller
    return caller


Caller = Annotated[CallerIdentity, Depends(get_current_caller)]


def require_roles(*roles: Role) -> Callable[[CallerIdentity], CallerIdentity]:
    allowed = frozenset(roles)

    def _checker(request: Request, caller: Caller) -> CallerIdentity:
        if caller.role not in allowed:
            set_audit_context(request, detail={"result": {"reason": "role_not_allowed"}})
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action",
            )
        return caller

    return _checker


def get_active_company(
    request: Request,
    caller: Caller,
    requested: Annotated[str | None, Header(alias=ACTIVE_COMPANY_HEADER)] = None,
) -> str | None:
    try:
        active_company_id = resolve_active_company(caller, requested)
    except FleetError as exc:
        set_audit_context(request, detail={"result": {"reason": "active_company_rejected"}})
        raise_http_error(exc)
    request.state.active_company_id = active_company_id
    return active_company_id


def get_optional_active_company(
    request: Request,
    caller: Caller,
    requested: Annotated[str | None, Header(alias=ACTIVE_COMPANY_HEADER)] = None,
) -> str | None:
    try:
        active_company_id = resolve_optional_active_company(caller, requested)
    except FleetError as exc:
        set_audit_context(request, detail={"result": {"reason": "active_company_rejected"}})
        raise_http_error(exc)
    request.state.active_company_id = active_company_id
    return active_company_id


ActiveCompany = Annotated[str | None, Depends(get_active_company)]
OptionalActiveCompany = Annotated[str | None, Depends(get_optional_active_company)]
