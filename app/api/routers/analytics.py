from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from app.api.deps import ActiveCompany, Caller, raise_http_error, require_roles
from app.domain.errors import FleetError
from app.domain.models import AnalyticsCountsRead, UserStatus
from app.domain.permissions import Role
from app.services.analytics_service import AnalyticsService

router = APIRouter()


def get_analytics_service() -> AnalyticsService:
    return AnalyticsService()


Service = Annotated[AnalyticsService, Depends(get_analytics_service)]


@router.get(
    "/counts",
    response_model=AnalyticsCountsRead,
    response_model_exclude_none=True,
    dependencies=[Depends(require_roles(Role.MANAGER, Role.ADMIN, Role.SUPER_ADMIN))],
)
def counts(
    caller: Caller,
    active_company_id: ActiveCompany,
    service: Service,
    role: Role | None = None,
    user_status: Annotated[UserStatus | None, Query(alias="status")] = None,
) -> AnalyticsCountsRead:
    try:
        return service.counts(caller, active_company_id, role=role, status=user_status)
    except FleetError as exc:
        raise_http_error(exc)
