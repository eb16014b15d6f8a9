from __future__ import annotations

from typing import Any

from sqlmodel import Session
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from app.domain.models import AuditLog
from app.infra.db import engine

SYSTEM_SCOPE = "system"
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
VERBS = {"POST": "create", "PUT": "update", "PATCH": "update", "DELETE": "delete"}


def _merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def _outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    return "rejected" if status_code >= 400 else "success"


def resource_of(path: str) -> str:
    """``/api/devices/<id>`` -> ``devices``."""
    parts = [item for item in path.split("/") if item]
    if parts and parts[0] == "api":
        parts = parts[1:]
    return parts[0] if parts else "root"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context = dict(getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {}))
    if action is not None:
        context["action"] = action
    if detail:
        context["detail"] = _merge(context.get("detail", {}), detail)
    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def write_audit_log(log: AuditLog) -> None:
    with Session(engine) as session:
        session.add(log)
        session.commit()


class AuditMiddleware(BaseHTTPMiddleware):
    """Records every write request, and any read a dependency flagged as denied."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        context: dict[str, Any] = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        if request.method not in VERBS and not context:
            return response

        caller = getattr(request.state, "caller", None)
        active_company_id = getattr(request.state, "active_company_id", None)
        resource = resource_of(request.url.path)
        detail = {
            "who": {
                "actor_id": getattr(caller, "id", None),
                "role": str(caller.role) if caller is not None else None,
                "active_company_id": active_company_id,
            },
            "where": {
                "route": getattr(request.scope.get("route"), "path", request.url.path),
                "client_ip": request.client.host if request.client is not None else None,
            },
            "result": {"status_code": response.status_code, "outcome": _outcome(response.status_code)},
        }
        detail = _merge(detail, context.get("detail", {}))

        try:
            write_audit_log(
                AuditLog(
                    company_id=active_company_id or SYSTEM_SCOPE,
                    actor_id=detail["who"].get("actor_id"),
                    action=context.get("action", f"{resource}.{VERBS.get(request.method, 'read')}"),
                    resource=resource,
                    method=request.method,
                    status_code=response.status_code,
                    detail=detail,
                )
            )
        except Exception:
            # a failed audit write never fails the request
            return response
        return response
