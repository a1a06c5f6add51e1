from __future__ import annotations

import asyncio

import pytest

from carelink.alerts.dispatcher import AlertDispatcher, BreachEvent
from carelink.errors import ChannelDeliveryError
from carelink.models import User
from carelink.realtime.hub import ConnectionHub
from carelink.realtime.presence import PresenceRegistry

from fakes import FakeEmail, FakeSms, FakeSocket, ManualClock


class Room:
    def __init__(self, *, sms: FakeSms | None = None, email: FakeEmail | None = None) -> None:
        self.presence = PresenceRegistry()
        self.hub = ConnectionHub()
        self.clock = ManualClock()
        self.sms = sms or FakeSms()
        self.email = email or FakeEmail()
        self.sockets: dict[str, FakeSocket] = {}
        self.dispatcher = AlertDispatcher(
            hub=self.hub,
            presence=self.presence,
            sms=self.sms,
            email=self.email,
            sms_cooldown_seconds=30,
            clock=self.clock,
        )

    def online(self, connection_id: str, user_id: str, role: str) -> FakeSocket:
        socket = FakeSocket()
        self.hub.attach(connection_id, socket)
        self.presence.register(connection_id, user_id, user_id.title(), role)
        self.sockets[connection_id] = socket
        return socket


def breach(user: User | None = None, distance: float = 222.4) -> BreachEvent:
    return BreachEvent(
        user_id="elder-1",
        patient_name="Alice",
        distance_m=distance,
        safe_radius_m=200,
        latitude=0.0,
        longitude=0.002,
        user=user,
    )


def test_alert_payload_rounds_distance() -> None:
    event = breach(distance=222.4)

    payload = event.alert_payload()

    assert payload["distance"] == 222
    assert payload["userId"] == "elder-1"
    assert payload["patientName"] == "Alice"
    assert payload["alertId"] == event.alert_id


@pytest.mark.asyncio
async def test_socket_alert_only_reaches_caregiving_roles() -> None:
    room = Room()
    caregiver = room.online("c1", "care-1", "caregiver")
    doctor = room.online("c2", "doc-1", "doctor")
    patient = room.online("c3", "elder-1", "elderly")

    report = await room.dispatcher.dispatch(breach())

    assert report.socket_deliveries == 2
    assert len(caregiver.of_type("geofence:alert")) == 1
    assert len(doctor.of_type("geofence:alert")) == 1
    assert patient.of_type("geofence:alert") == []


@pytest.mark.asyncio
async def test_sms_cooldown_suppresses_until_expired() -> None:
    room = Room()

    first = await room.dispatcher.dispatch(breach())
    room.clock.advance(1)
    second = await room.dispatcher.repeat(breach())
    room.clock.advance(29)
    boundary = await room.dispatcher.repeat(breach())
    room.clock.advance(0.5)
    third = await room.dispatcher.repeat(breach())

    assert first.sms_sent
    assert second.sms_suppressed and not second.sms_sent
    assert boundary.sms_suppressed
    assert third.sms_sent
    assert len(room.sms.sent) == 2


def test_cooldown_is_per_user() -> None:
    room = Room()

    assert room.dispatcher.claim_sms_slot("elder-1")
    assert room.dispatcher.claim_sms_slot("elder-2")
    assert not room.dispatcher.claim_sms_slot("elder-1")


@pytest.mark.asyncio
async def test_overlapping_repeats_send_one_sms() -> None:
    room = Room(sms=FakeSms(delay=0.01))

    reports = await asyncio.gather(*(room.dispatcher.repeat(breach()) for _ in range(5)))

    assert len(room.sms.sent) == 1
    assert sum(report.sms_sent for report in reports) == 1
    assert sum(report.sms_suppressed for report in reports) == 4


@pytest.mark.asyncio
async def test_sms_failure_does_not_stop_other_channels() -> None:
    user = User(id="elder-1", name="Alice", emergency_contacts=[{"email": "kin@example.com"}])
    room = Room(sms=FakeSms(error=ChannelDeliveryError("sms", "HTTP 500")))
    caregiver = room.online("c1", "care-1", "caregiver")

    report = await room.dispatcher.dispatch(breach(user))

    assert len(caregiver.of_type("geofence:alert")) == 1
    assert not report.sms_sent
    assert report.email_sent
    assert [failure.channel for failure in report.failures] == ["sms"]


@pytest.mark.asyncio
async def test_unexpected_email_error_is_reported_not_raised() -> None:
    user = User(id="elder-1", name="Alice")
    room = Room(email=FakeEmail(error=RuntimeError("boom")))

    report = await room.dispatcher.dispatch(breach(user))

    assert report.sms_sent
    assert not report.email_sent
    assert report.failures[0].channel == "email"
    assert "boom" in report.failures[0].message


@pytest.mark.asyncio
async def test_email_is_skipped_without_a_user_profile() -> None:
    room = Room()

    report = await room.dispatcher.dispatch(breach())

    assert room.email.sent == []
    assert not report.email_sent


@pytest.mark.asyncio
async def test_repeat_sends_no_socket_alert_or_email() -> None:
    user = User(id="elder-1", name="Alice")
    room = Room()
    caregiver = room.online("c1", "care-1", "caregiver")

    report = await room.dispatcher.repeat(breach(user))

    assert report.sms_sent
    assert caregiver.sent == []
    assert room.email.sent == []
