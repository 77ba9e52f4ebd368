import json

import pytest

from app import events
from app.reservations import ReservationStore
from conftest import NOW, FakePublisher, make_hold
from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher


def test_build_event_envelope():
    event = build_event("appointment.confirmed", {"appointment_id": "a-1"}, source="appointment-service")
    assert event["event_type"] == "appointment.confirmed"
    assert event["source"] == "appointment-service"
    assert event["data"] == {"appointment_id": "a-1"}
    assert json.loads(to_json(event))["event_id"] == event["event_id"]


@pytest.mark.asyncio
async def test_appointment_payload(store: ReservationStore):
    appt = await store.create(make_hold(booked_slots=["10:00"]), NOW)
    publisher = FakePublisher()

    await events.publish(publisher, events.APPOINTMENT_CANCELLED, events.appointment_payload(appt))

    routing_key, body = publisher.published[0]
    assert routing_key == "appointment.cancelled"
    data = json.loads(body)["data"]
    assert data["date"] == "2024-06-10"
    assert data["time"] == "10:00"
    assert data["booked_slots"] == ["10:00"]


@pytest.mark.asyncio
async def test_publisher_without_broker_is_disabled():
    publisher = RabbitPublisher(None, service_name="appointment-service")
    assert publisher.enabled is False
    await publisher.connect()
    await publisher.publish("appointment.confirmed", "{}")
    await publisher.close()
    assert publisher.connected is False


@pytest.mark.asyncio
async def test_publish_without_publisher_is_a_noop():
    await events.publish(None, events.HOLD_EXPIRED, {"deleted_count": 1})
