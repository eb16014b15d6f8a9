from __future__ import annotations

from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.models import EventEnvelope, EventRecord
from app.infra import events
from app.infra.events import SYSTEM_SCOPE, EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type="device.registered",
        company_id="company-a",
        payload={"device_id": "device-1"},
    )
    bus.subscribe("device.registered", handler)

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].company_id == "company-a"
    assert seen == [event.event_id]


def test_event_bus_wildcard_and_unsubscribe(monkeypatch) -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(events, "engine", engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_type)

    bus.subscribe("*", handler)
    bus.publish_dict("company.created", "company-a", {"company_id": "company-a"})
    bus.unsubscribe("*", handler)
    bus.publish_dict("session.revoked", None, {"session_id": "s-1"}, actor_id="user-1")

    assert seen == ["company.created"]
    with Session(engine) as session:
        stored = session.exec(select(EventRecord).order_by(EventRecord.ts)).all()
    assert [item.event_type for item in stored] == ["company.created", "session.revoked"]
    assert stored[1].company_id == SYSTEM_SCOPE
    assert stored[1].actor_id == "user-1"
