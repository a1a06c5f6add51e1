from __future__ import annotations

import pytest
from pydantic import ValidationError

from carelink.realtime.calls import CallSessionCoordinator
from carelink.realtime.hub import ConnectionHub
from carelink.realtime.presence import PresenceRegistry
from carelink.realtime.protocol import (
    CallAccept,
    CallInitiate,
    ChatSend,
    GeofenceResolution,
    UserOnline,
    parse_inbound,
)
from carelink.realtime.signaling import SignalingService

from fakes import FakeSocket, FakeStore


@pytest.fixture
def service() -> SignalingService:
    presence = PresenceRegistry()
    hub = ConnectionHub()
    calls = CallSessionCoordinator(presence=presence, hub=hub, store=FakeStore())
    return SignalingService(presence=presence, hub=hub, calls=calls)


def attach(service: SignalingService, connection_id: str) -> FakeSocket:
    socket = FakeSocket()
    service.hub.attach(connection_id, socket)
    return socket


async def go_online(service: SignalingService, connection_id: str, user_id: str, name: str, role: str) -> None:
    await service.handle(
        connection_id,
        parse_inbound({"type": "user:online", "userId": user_id, "name": name, "role": role}),
    )


def test_parse_inbound_reads_camel_case_fields() -> None:
    event = parse_inbound(
        {
            "type": "call:initiate",
            "callerId": "care-1",
            "callerName": "Bob",
            "callerRole": "caregiver",
            "calleeId": "elder-1",
        }
    )

    assert isinstance(event, CallInitiate)
    assert event.caller_id == "care-1"
    assert event.callee_id == "elder-1"


def test_parse_inbound_handles_both_geofence_resolutions() -> None:
    acknowledge = parse_inbound({"type": "geofence:acknowledge", "alertId": "a-1", "caregiverId": "care-1"})
    ignore = parse_inbound({"type": "geofence:ignore", "alertId": "a-1"})

    assert isinstance(acknowledge, GeofenceResolution)
    assert isinstance(ignore, GeofenceResolution)
    assert ignore.type == "geofence:ignore"


def test_parse_inbound_rejects_unknown_types_and_missing_fields() -> None:
    with pytest.raises(ValidationError):
        parse_inbound({"type": "call:teleport"})
    with pytest.raises(ValidationError):
        parse_inbound({"type": "call:accept"})
    with pytest.raises(ValidationError):
        parse_inbound({"type": "user:online", "userId": "u-1", "role": "administrator"})


@pytest.mark.asyncio
async def test_user_online_broadcasts_deduplicated_list(service: SignalingService) -> None:
    first = attach(service, "c1")
    second = attach(service, "c2")

    await go_online(service, "c1", "elder-1", "Alice", "elderly")
    await go_online(service, "c2", "care-1", "Bob", "caregiver")

    latest = first.of_type("users:online")[-1]["users"]
    assert latest == [
        {"userId": "elder-1", "name": "Alice", "role": "elderly"},
        {"userId": "care-1", "name": "Bob", "role": "caregiver"},
    ]
    assert second.of_type("users:online")[-1]["users"] == latest


@pytest.mark.asyncio
async def test_reconnect_supersedes_old_connection_in_broadcast(service: SignalingService) -> None:
    attach(service, "c1")
    newer = attach(service, "c2")

    await go_online(service, "c1", "elder-1", "Alice", "elderly")
    await go_online(service, "c2", "elder-1", "Alice", "elderly")

    assert service.presence.lookup_connection("elder-1") == "c2"
    assert newer.of_type("users:online")[-1]["users"] == [
        {"userId": "elder-1", "name": "Alice", "role": "elderly"}
    ]


@pytest.mark.asyncio
async def test_get_online_excludes_requesting_connection(service: SignalingService) -> None:
    first = attach(service, "c1")
    attach(service, "c2")
    await go_online(service, "c1", "elder-1", "Alice", "elderly")
    await go_online(service, "c2", "care-1", "Bob", "caregiver")
    first.sent.clear()

    await service.handle("c1", parse_inbound({"type": "users:getOnline"}))

    assert first.sent == [
        {"type": "users:online", "users": [{"userId": "care-1", "name": "Bob", "role": "caregiver"}]}
    ]


@pytest.mark.asyncio
async def test_disconnect_broadcasts_only_when_someone_left(service: SignalingService) -> None:
    remaining = attach(service, "c1")
    attach(service, "c2")
    await go_online(service, "c1", "elder-1", "Alice", "elderly")
    await go_online(service, "c2", "care-1", "Bob", "caregiver")
    service.hub.detach("c2")
    remaining.sent.clear()

    await service.disconnect("c2")
    await service.disconnect("c2")

    assert remaining.sent == [
        {"type": "users:online", "users": [{"userId": "elder-1", "name": "Alice", "role": "elderly"}]}
    ]


@pytest.mark.asyncio
async def test_chat_is_relayed_to_online_recipient(service: SignalingService) -> None:
    attach(service, "c1")
    recipient = attach(service, "c2")
    await go_online(service, "c1", "elder-1", "Alice", "elderly")
    await go_online(service, "c2", "care-1", "Bob", "caregiver")

    await service.handle(
        "c1",
        ChatSend(type="chat:send", to_user_id="care-1", text="Can you hear me?", sender_name="Alice"),
    )

    assert recipient.of_type("chat:receive") == [
        {
            "type": "chat:receive",
            "text": "Can you hear me?",
            "senderName": "Alice",
            "senderRole": "elderly",
            "fromUserId": "elder-1",
        }
    ]


@pytest.mark.asyncio
async def test_chat_to_offline_user_is_dropped(service: SignalingService) -> None:
    sender = attach(service, "c1")
    await go_online(service, "c1", "elder-1", "Alice", "elderly")
    sender.sent.clear()

    await service.handle("c1", ChatSend(type="chat:send", to_user_id="nobody", text="hello"))

    assert sender.sent == []


@pytest.mark.asyncio
async def test_call_to_offline_user_reports_user_offline(service: SignalingService) -> None:
    caller = attach(service, "c1")
    await go_online(service, "c1", "care-1", "Bob", "caregiver")

    await service.handle(
        "c1",
        CallInitiate(type="call:initiate", caller_id="care-1", callee_id="elder-9", caller_name="Bob"),
    )

    errors = caller.of_type("call:error")
    assert errors == [{"type": "call:error", "code": "UserOffline", "message": "User is offline"}]


@pytest.mark.asyncio
async def test_stale_accept_reports_call_already_resolved(service: SignalingService) -> None:
    caller = attach(service, "c1")
    callee = attach(service, "c2")
    await go_online(service, "c1", "care-1", "Bob", "caregiver")
    await go_online(service, "c2", "elder-1", "Alice", "elderly")
    await service.handle(
        "c1",
        CallInitiate(type="call:initiate", caller_id="care-1", callee_id="elder-1", caller_name="Bob"),
    )
    call_id = caller.of_type("call:ringing")[0]["callId"]
    await service.handle("c1", parse_inbound({"type": "call:cancel", "callId": call_id, "calleeId": "elder-1"}))

    await service.handle("c2", CallAccept(type="call:accept", call_id=call_id, caller_id="care-1"))

    error = callee.of_type("call:error")[0]
    assert error["code"] == "CallAlreadyResolved"
    assert error["status"] == "cancelled"
    assert caller.of_type("call:accepted") == []


@pytest.mark.asyncio
async def test_geofence_resolution_changes_no_state(service: SignalingService) -> None:
    socket = attach(service, "c1")
    await go_online(service, "c1", "care-1", "Bob", "caregiver")
    socket.sent.clear()

    await service.handle(
        "c1",
        parse_inbound({"type": "geofence:acknowledge", "alertId": "a-1", "userId": "elder-1", "caregiverId": "care-1"}),
    )

    assert socket.sent == []
    assert service.presence.list_online() == [{"userId": "care-1", "name": "Bob", "role": "caregiver"}]


@pytest.mark.asyncio
async def test_hub_skips_failing_sockets(service: SignalingService) -> None:
    healthy = attach(service, "c1")
    service.hub.attach("c2", FakeSocket(fail=True))

    delivered = await service.hub.broadcast({"type": "users:online", "users": []})

    assert delivered == 1
    assert healthy.sent == [{"type": "users:online", "users": []}]


def test_user_online_defaults() -> None:
    event = UserOnline(type="user:online", user_id="elder-1")

    assert event.name == "Unknown"
    assert event.role == "elderly"


@pytest.mark.asyncio
async def test_outsider_cancel_reports_not_call_participant(service: SignalingService) -> None:
    caller = attach(service, "c1")
    callee = attach(service, "c2")
    outsider = attach(service, "c3")
    await go_online(service, "c1", "care-1", "Bob", "caregiver")
    await go_online(service, "c2", "elder-1", "Alice", "elderly")
    await go_online(service, "c3", "elder-2", "Eve", "elderly")
    await service.handle(
        "c1",
        CallInitiate(type="call:initiate", caller_id="care-1", callee_id="elder-1", caller_name="Bob"),
    )
    call_id = caller.of_type("call:ringing")[0]["callId"]

    await service.handle("c3", parse_inbound({"type": "call:cancel", "callId": call_id, "calleeId": "elder-1"}))

    assert outsider.of_type("call:error")[0]["code"] == "NotCallParticipant"
    assert callee.of_type("call:cancelled") == []
