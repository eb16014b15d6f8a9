from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import analytics, auth, companies, devices, users
from app.infra.audit import AuditMiddleware
from app.infra.db import check_db_ready

app = FastAPI(
    title="iot-fleet-admin",
    description="Multi-tenant administration backend for IoT device fleets.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(companies.router, prefix="/api/companies", tags=["companies"])
app.include_router(devices.router, prefix="/api/devices", tags=["devices"])
app.include_router(analytics.router, prefix="/api/analytics", tags=["analytics"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
