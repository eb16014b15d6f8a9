from __future__ import annotations

from collections.abc import Generator
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from app import main as app_main
from app.infra import audit, db, events

PASSWORD = "user-pass-123"


@pytest.fixture()
def device_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "device_test.db"
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
    client = TestClient(app_main.app)
    yield client
    client.close()


def _headers(token: str, company_id: str | None = None) -> dict[str, str]:
    headers = {"Authorization": f"Bearer {token}"}
    if company_id is not None:
        headers["X-Active-Company"] = company_id
    return headers


def _login(client: TestClient, email: str, password: str = PASSWORD) -> str:
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["tokens"]["access_token"]


def _root_token(client: TestClient) -> str:
    response = client.post(
        "/api/auth/bootstrap",
        json={"name": "Root", "email": "root@fleet.example.com", "password": "root-pass-123"},
    )
    assert response.status_code == 201
    return _login(client, "root@fleet.example.com", "root-pass-123")


def _create_company(client: TestClient, token: str, name: str) -> str:
    response = client.post("/api/companies", json={"name": name}, headers=_headers(token))
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _create_user(
    client: TestClient,
    token: str,
    email: str,
    role: str,
    company_ids: list[str],
    device_ids: list[str] | None = None,
) -> dict[str, Any]:
    response = client.post(
        "/api/users",
        json={
            "name": email.split("@")[0],
            "email": email,
            "password": PASSWORD,
            "role": role,
            "company_ids": company_ids,
            "device_ids": device_ids or [],
        },
        headers=_headers(token),
    )
    assert response.status_code == 201, response.text
    return response.json()


def _device_payload(company_id: str, serial: str, **extra: Any) -> dict[str, Any]:
    return {
        "name": f"device-{serial}",
        "serial_number": serial,
        "type": "SENSOR",
        "company_id": company_id,
        **extra,
    }


def _create_device(
    client: TestClient,
    token: str,
    company_id: str,
    serial: str,
    active_company: str | None = None,
    **extra: Any,
) -> dict[str, Any]:
    response = client.post(
        "/api/devices",
        json=_device_payload(company_id, serial, **extra),
        headers=_headers(token, active_company),
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture()
def fleet(device_client: TestClient) -> dict[str, Any]:
    root = _root_token(device_client)
    company_a = _create_company(device_client, root, "Acme")
    company_b = _create_company(device_client, root, "Globex")
    _create_user(device_client, root, "admin@fleet.example.com", "ADMIN", [company_a, company_b])
    _create_user(device_client, root, "manager@fleet.example.com", "MANAGER", [company_a])
    return {
        "root": root,
        "company_a": company_a,
        "company_b": company_b,
        "admin": _login(device_client, "admin@fleet.example.com"),
        "manager": _login(device_client, "manager@fleet.example.com"),
    }


def test_admin_creates_device_only_in_active_company(device_client: TestClient, fleet: dict[str, Any]) -> None:
    admin = fleet["admin"]
    created = _create_device(device_client, admin, fleet["company_a"], "SN-1")
    assert created["company"]["name"] == "Acme"
    assert created["assigned_user_count"] == 0

    other = device_client.post(
        "/api/devices",
        json=_device_payload(fleet["company_b"], "SN-2"),
        headers=_headers(admin),
    )
    assert other.status_code == 403

    switched = _create_device(device_client, admin, fleet["company_b"], "SN-2", active_company=fleet["company_b"])
    assert switched["company_id"] == fleet["company_b"]


def test_manager_cannot_mutate_devices(device_client: TestClient, fleet: dict[str, Any]) -> None:
    response = device_client.post(
        "/api/devices",
        json=_device_payload(fleet["company_a"], "SN-1"),
        headers=_headers(fleet["manager"]),
    )
    assert response.status_code == 403


def test_active_company_header_is_validated(device_client: TestClient, fleet: dict[str, Any]) -> None:
    malformed = device_client.post(
        "/api/devices",
        json=_device_payload(fleet["company_a"], "SN-1"),
        headers=_headers(fleet["admin"], "not-a-company"),
    )
    assert malformed.status_code == 400
    unassigned = device_client.get("/api/devices", headers=_headers(fleet["manager"], fleet["company_b"]))
    assert unassigned.status_code == 403
    assert fleet["company_b"] in unassigned.json()["detail"]


def test_serial_unique_per_company(device_client: TestClient, fleet: dict[str, Any]) -> None:
    root = fleet["root"]
    first = _create_device(device_client, root, fleet["company_a"], "SN-1")
    clash = device_client.post("/api/devices", json=_device_payload(fleet["company_a"], "SN-1"), headers=_headers(root))
    assert clash.status_code == 409
    _create_device(device_client, root, fleet["company_b"], "SN-1")

    device_client.delete(f"/api/devices/{first['id']}", headers=_headers(root))
    _create_device(device_client, root, fleet["company_a"], "SN-1")


def test_parent_rules(device_client: TestClient, fleet: dict[str, Any]) -> None:
    root = fleet["root"]
    gateway = _create_device(device_client, root, fleet["company_a"], "GW-1", type="GATEWAY")
    foreign = _create_device(device_client, root, fleet["company_b"], "GW-2", type="GATEWAY")

    child = _create_device(device_client, root, fleet["company_a"], "SN-1", parent_id=gateway["id"])
    assert child["parent"]["serial_number"] == "GW-1"

    cross = device_client.post(
        "/api/devices",
        json=_device_payload(fleet["company_a"], "SN-2", parent_id=foreign["id"]),
        headers=_headers(root),
    )
    assert cross.status_code == 400
    missing = device_client.post(
        "/api/devices",
        json=_device_payload(fleet["company_a"], "SN-3", parent_id=str(uuid4())),
        headers=_headers(root),
    )
    assert missing.status_code == 404

    own_parent = device_client.put(
        f"/api/devices/{gateway['id']}",
        json={"parent_id": gateway["id"]},
        headers=_headers(root),
    )
    assert own_parent.status_code == 400
    cycle = device_client.put(
        f"/api/devices/{gateway['id']}",
        json={"parent_id": child["id"]},
        headers=_headers(root),
    )
    assert cycle.status_code == 400

    detached = device_client.put(f"/api/devices/{child['id']}", json={"parent_id": None}, headers=_headers(root))
    assert detached.status_code == 200
    assert detached.json()["parent_id"] is None


def test_delete_with_children_is_blocked(device_client: TestClient, fleet: dict[str, Any]) -> None:
    admin = fleet["admin"]
    gateway = _create_device(device_client, admin, fleet["company_a"], "GW-1", type="GATEWAY")
    child = _create_device(device_client, admin, fleet["company_a"], "SN-1", parent_id=gateway["id"])

    detail = device_client.get(f"/api/devices/{gateway['id']}", headers=_headers(admin)).json()
    assert [item["id"] for item in detail["children"]] == [child["id"]]

    blocked = device_client.delete(f"/api/devices/{gateway['id']}", headers=_headers(admin))
    assert blocked.status_code == 400
    assert device_client.delete(f"/api/devices/{child['id']}", headers=_headers(admin)).status_code == 204
    assert device_client.delete(f"/api/devices/{gateway['id']}", headers=_headers(admin)).status_code == 204
    assert device_client.get(f"/api/devices/{gateway['id']}", headers=_headers(admin)).status_code == 404


def test_admin_updates_only_active_company_devices(device_client: TestClient, fleet: dict[str, Any]) -> None:
    admin = fleet["admin"]
    in_b = _create_device(device_client, fleet["root"], fleet["company_b"], "SN-B")

    outside = device_client.put(f"/api/devices/{in_b['id']}", json={"name": "renamed"}, headers=_headers(admin))
    assert outside.status_code == 403
    inside = device_client.put(
        f"/api/devices/{in_b['id']}",
        json={"name": "renamed"},
        headers=_headers(admin, fleet["company_b"]),
    )
    assert inside.status_code == 200
    assert inside.json()["name"] == "renamed"


def test_relocation_rules(device_client: TestClient, fleet: dict[str, Any]) -> None:
    root = fleet["root"]
    device = _create_device(device_client, root, fleet["company_a"], "SN-1")
    _create_device(device_client, root, fleet["company_b"], "SN-1")

    clash = device_client.put(
        f"/api/devices/{device['id']}",
        json={"company_id": fleet["company_b"]},
        headers=_headers(root),
    )
    assert clash.status_code == 409

    moved = device_client.put(
        f"/api/devices/{device['id']}",
        json={"company_id": fleet["company_b"], "serial_number": "SN-9"},
        headers=_headers(root),
    )
    assert moved.status_code == 200
    assert moved.json()["company"]["name"] == "Globex"

    admin_move = device_client.put(
        f"/api/devices/{device['id']}",
        json={"company_id": fleet["company_a"]},
        headers=_headers(fleet["admin"], fleet["company_b"]),
    )
    assert admin_move.status_code == 403


def test_device_visibility_by_role(device_client: TestClient, fleet: dict[str, Any]) -> None:
    root = fleet["root"]
    in_a = _create_device(device_client, root, fleet["company_a"], "SN-A")
    other_a = _create_device(device_client, root, fleet["company_a"], "SN-A2")
    in_b = _create_device(device_client, root, fleet["company_b"], "SN-B")
    _create_user(device_client, root, "viewer@fleet.example.com", "VIEWER", [fleet["company_a"]], [in_a["id"]])
    viewer = _login(device_client, "viewer@fleet.example.com")

    everything = device_client.get("/api/devices", headers=_headers(root)).json()
    assert everything["total"] == 3
    scoped = device_client.get("/api/devices", headers=_headers(root, fleet["company_b"])).json()
    assert [item["id"] for item in scoped["items"]] == [in_b["id"]]

    manager_list = device_client.get("/api/devices", headers=_headers(fleet["manager"])).json()
    assert {item["id"] for item in manager_list["items"]} == {in_a["id"], other_a["id"]}
    assert device_client.get(f"/api/devices/{in_b['id']}", headers=_headers(fleet["manager"])).status_code == 403

    viewer_list = device_client.get("/api/devices", headers=_headers(viewer)).json()
    assert [item["id"] for item in viewer_list["items"]] == [in_a["id"]]
    assert device_client.get(f"/api/devices/{in_a['id']}", headers=_headers(viewer)).status_code == 200
    assert device_client.get(f"/api/devices/{other_a['id']}", headers=_headers(viewer)).status_code == 403

    detail = device_client.get(f"/api/devices/{in_a['id']}", headers=_headers(root)).json()
    assert detail["assigned_user_count"] == 1


def test_device_list_filters(device_client: TestClient, fleet: dict[str, Any]) -> None:
    root = fleet["root"]
    gateway = _create_device(device_client, root, fleet["company_a"], "GW-1", type="GATEWAY", location="Roof")
    _create_device(device_client, root, fleet["company_a"], "SN-1", parent_id=gateway["id"])
    _create_device(device_client, root, fleet["company_a"], "SN-2", parent_id=gateway["id"])

    gateways = device_client.get("/api/devices", params={"type": "GATEWAY"}, headers=_headers(root)).json()
    assert [item["id"] for item in gateways["items"]] == [gateway["id"]]
    assert gateways["items"][0]["children"] is None

    with_children = device_client.get(
        "/api/devices",
        params={"type": "GATEWAY", "include_children": "true"},
        headers=_headers(root),
    ).json()
    assert len(with_children["items"][0]["children"]) == 2

    children = device_client.get("/api/devices", params={"parent_id": gateway["id"]}, headers=_headers(root)).json()
    assert children["total"] == 2
    roof = device_client.get("/api/devices", params={"search": "roof"}, headers=_headers(root)).json()
    assert roof["total"] == 1

    too_big = device_client.get("/api/devices", params={"limit": 101}, headers=_headers(root))
    assert too_big.status_code == 422
