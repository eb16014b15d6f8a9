from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import AuditLog, AuthSession, EventRecord, now_utc
from app.infra import audit, db, events

SUPER_EMAIL = "root@fleet.example.com"
SUPER_PASSWORD = "root-pass-123"


@pytest.fixture()
def auth_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Engine:
    db_path = tmp_path / "auth_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    return test_engine


@pytest.fixture()
def auth_client(auth_engine: Engine) -> Generator[TestClient, None, None]:
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _bootstrap(client: TestClient) -> None:
    response = client.post(
        "/api/auth/bootstrap",
        json={"name": "Root", "email": SUPER_EMAIL, "password": SUPER_PASSWORD},
    )
    assert response.status_code == 201


def _login(client: TestClient, email: str, password: str) -> dict[str, Any]:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def _create_company(client: TestClient, token: str, name: str) -> str:
    response = client.post("/api/companies", json={"name": name}, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _create_user(client: TestClient, token: str, payload: dict[str, Any]) -> dict[str, Any]:
    response = client.post("/api/users", json=payload, headers=_auth_header(token))
    assert response.status_code == 201, response.text
    return response.json()


def test_bootstrap_only_once(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    again = auth_client.post(
        "/api/auth/bootstrap",
        json={"name": "Other", "email": "other@fleet.example.com", "password": "other-pass-123"},
    )
    assert again.status_code == 409


def test_login_returns_identity_and_tokens(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    body = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)
    assert body["user"]["role"] == "SUPER_ADMIN"
    assert body["user"]["company_ids"] == []
    assert body["tokens"]["token_type"] == "bearer"
    assert body["tokens"]["expires_in"] == 15 * 60

    me = auth_client.get("/api/auth/me", headers=_auth_header(body["tokens"]["access_token"]))
    assert me.status_code == 200
    assert me.json()["creatable_roles"] == ["VIEWER", "MANAGER", "ADMIN", "SUPER_ADMIN"]
    assert me.json()["max_creatable_role"] == "SUPER_ADMIN"


def test_login_rejects_bad_credentials(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    wrong = auth_client.post("/api/auth/login", json={"email": SUPER_EMAIL, "password": "nope"})
    assert wrong.status_code == 401
    unknown = auth_client.post("/api/auth/login", json={"email": "ghost@fleet.example.com", "password": "nope"})
    assert unknown.status_code == 401
    assert wrong.json()["detail"] == unknown.json()["detail"]


def test_protected_routes_require_valid_token(auth_client: TestClient) -> None:
    assert auth_client.get("/api/auth/me").status_code == 401
    assert auth_client.get("/api/auth/me", headers=_auth_header("garbage")).status_code == 401


def test_refresh_rotates_tokens(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    tokens = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]

    rotated = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert rotated.status_code == 200
    new_tokens = rotated.json()
    assert new_tokens["refresh_token"] != tokens["refresh_token"]

    reused = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert reused.status_code == 401

    access_as_refresh = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["access_token"]})
    assert access_as_refresh.status_code == 401


def test_refresh_rejects_expired_session(auth_client: TestClient, auth_engine: Engine) -> None:
    _bootstrap(auth_client)
    tokens = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    with Session(auth_engine) as session:
        stored = session.exec(select(AuthSession)).one()
        stored.expires_at = now_utc() - timedelta(minutes=1)
        session.add(stored)
        session.commit()

    response = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 401
    assert response.json()["detail"] == "Refresh token has expired"
    with Session(auth_engine) as session:
        assert session.exec(select(AuthSession)).all() == []


def test_logout_is_idempotent(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    tokens = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    for _ in range(2):
        response = auth_client.post("/api/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert response.status_code == 204
    refreshed = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 401


def test_sessions_list_and_revoke_own_only(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    root = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    second = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    company_id = _create_company(auth_client, root["access_token"], "Acme")
    _create_user(
        auth_client,
        root["access_token"],
        {
            "name": "Alice",
            "email": "alice@fleet.example.com",
            "password": "alice-pass-123",
            "role": "ADMIN",
            "company_ids": [company_id],
        },
    )
    alice = _login(auth_client, "alice@fleet.example.com", "alice-pass-123")["tokens"]

    listed = auth_client.get("/api/auth/sessions", headers=_auth_header(root["access_token"]))
    assert listed.status_code == 200
    root_sessions = listed.json()
    assert len(root_sessions) == 2

    alice_sessions = auth_client.get("/api/auth/sessions", headers=_auth_header(alice["access_token"])).json()
    assert len(alice_sessions) == 1

    forbidden = auth_client.delete(
        f"/api/auth/sessions/{alice_sessions[0]['id']}",
        headers=_auth_header(root["access_token"]),
    )
    assert forbidden.status_code == 403

    missing = auth_client.delete("/api/auth/sessions/does-not-exist", headers=_auth_header(root["access_token"]))
    assert missing.status_code == 404

    revoked = auth_client.delete(
        f"/api/auth/sessions/{root_sessions[0]['id']}",
        headers=_auth_header(root["access_token"]),
    )
    assert revoked.status_code == 204
    remaining = auth_client.get("/api/auth/sessions", headers=_auth_header(second["access_token"])).json()
    assert len(remaining) == 1


def test_logout_all_clears_every_session(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    first = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    second = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]

    response = auth_client.post("/api/auth/logout-all", headers=_auth_header(first["access_token"]))
    assert response.status_code == 204
    for tokens in (first, second):
        refreshed = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 401


def test_change_password_revokes_sessions(auth_client: TestClient) -> None:
    _bootstrap(auth_client)
    tokens = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    headers = _auth_header(tokens["access_token"])

    wrong = auth_client.post(
        "/api/auth/change-password",
        json={"current_password": "not-it", "new_password": "brand-new-pass"},
        headers=headers,
    )
    assert wrong.status_code == 400
    same = auth_client.post(
        "/api/auth/change-password",
        json={"current_password": SUPER_PASSWORD, "new_password": SUPER_PASSWORD},
        headers=headers,
    )
    assert same.status_code == 400

    changed = auth_client.post(
        "/api/auth/change-password",
        json={"current_password": SUPER_PASSWORD, "new_password": "brand-new-pass"},
        headers=headers,
    )
    assert changed.status_code == 204
    refreshed = auth_client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 401
    _login(auth_client, SUPER_EMAIL, "brand-new-pass")


def test_suspension_blocks_login_and_revokes_sessions(auth_client: TestClient, auth_engine: Engine) -> None:
    _bootstrap(auth_client)
    root = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)["tokens"]
    company_id = _create_company(auth_client, root["access_token"], "Acme")
    bob = _create_user(
        auth_client,
        root["access_token"],
        {
            "name": "Bob",
            "email": "bob@fleet.example.com",
            "password": "bob-pass-1234",
            "role": "MANAGER",
            "company_ids": [company_id],
        },
    )
    bob_tokens = _login(auth_client, "bob@fleet.example.com", "bob-pass-1234")["tokens"]

    suspended = auth_client.put(
        f"/api/users/{bob['id']}",
        json={"status": "SUSPENDED"},
        headers=_auth_header(root["access_token"]),
    )
    assert suspended.status_code == 200
    assert suspended.json()["status"] == "SUSPENDED"

    refreshed = auth_client.post("/api/auth/refresh", json={"refresh_token": bob_tokens["refresh_token"]})
    assert refreshed.status_code == 401
    login = auth_client.post("/api/auth/login", json={"email": "bob@fleet.example.com", "password": "bob-pass-1234"})
    assert login.status_code == 403

    with Session(auth_engine) as session:
        event_types = [item.event_type for item in session.exec(select(EventRecord)).all()]
    assert "user.suspended" in event_types


def test_write_requests_are_audited(auth_client: TestClient, auth_engine: Engine) -> None:
    _bootstrap(auth_client)
    body = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)
    auth_client.post("/api/auth/login", json={"email": SUPER_EMAIL, "password": "nope"})

    with Session(auth_engine) as session:
        rows = session.exec(select(AuditLog).where(AuditLog.action == "auth.login")).all()
    assert sorted(row.status_code for row in rows) == [200, 401]
    success = next(row for row in rows if row.status_code == 200)
    assert success.company_id == "system"
    assert success.detail["who"]["actor_id"] == body["user"]["id"]
    failure = next(row for row in rows if row.status_code == 401)
    assert failure.detail["result"]["outcome"] == "denied"
    assert "password" not in str(failure.detail)


def test_audit_rows_name_resource_and_flag_denied_reads(auth_client: TestClient, auth_engine: Engine) -> None:
    _bootstrap(auth_client)
    root = _login(auth_client, SUPER_EMAIL, SUPER_PASSWORD)
    company_id = _create_company(auth_client, root["tokens"]["access_token"], "Acme")
    _create_user(
        auth_client,
        root["tokens"]["access_token"],
        {
            "name": "Bob",
            "email": "bob@fleet.example.com",
            "password": "bob-pass-1234",
            "role": "MANAGER",
            "company_ids": [company_id],
        },
    )
    bob = _login(auth_client, "bob@fleet.example.com", "bob-pass-1234")["tokens"]
    assert auth_client.get("/api/companies", headers=_auth_header(bob["access_token"])).status_code == 403
    assert auth_client.get("/api/auth/me", headers=_auth_header(bob["access_token"])).status_code == 200

    with Session(auth_engine) as session:
        created = session.exec(select(AuditLog).where(AuditLog.action == "companies.create")).one()
        reads = session.exec(select(AuditLog).where(AuditLog.method == "GET")).all()
    assert created.resource == "companies"
    assert created.actor_id == root["user"]["id"]
    assert created.detail["result"]["outcome"] == "success"
    assert [row.action for row in reads] == ["companies.read"]
    assert reads[0].detail["result"]["reason"] == "role_not_allowed"
    assert reads[0].detail["who"]["role"] == "MANAGER"
