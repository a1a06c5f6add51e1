"""Message protocol for the CareLink signaling WebSocket.

Every frame is a JSON object whose ``type`` names the event; the rest
of the object is the payload, with camelCase field names.  Inbound
frames are validated into one of the models below before any handler
sees them, so handlers never deal with arbitrary shapes.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


# Types of events sent by the client
USER_ONLINE = "user:online"
CALL_INITIATE = "call:initiate"
CALL_ACCEPT = "call:accept"
CALL_REJECT = "call:reject"
CALL_CANCEL = "call:cancel"
CALL_END = "call:end"
CHAT_SEND = "chat:send"
USERS_GET_ONLINE = "users:getOnline"
GEOFENCE_ACKNOWLEDGE = "geofence:acknowledge"
GEOFENCE_IGNORE = "geofence:ignore"

# Types of events sent by the server
USERS_ONLINE = "users:online"
CALL_RINGING = "call:ringing"
CALL_INCOMING = "call:incoming"
CALL_ACCEPTED = "call:accepted"
CALL_REJECTED = "call:rejected"
CALL_CANCELLED = "call:cancelled"
CALL_ENDED = "call:ended"
CALL_MISSED = "call:missed"
CALL_ERROR = "call:error"
CHAT_RECEIVE = "chat:receive"
GEOFENCE_ALERT = "geofence:alert"
SERVER_ERROR = "error"

Role = Literal["elderly", "caregiver", "doctor"]
Identifier = Annotated[str, Field(min_length=1, max_length=128)]


class _Inbound(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        str_strip_whitespace=True,
    )


class UserOnline(_Inbound):
    type: Literal["user:online"]
    user_id: Identifier
    name: str = "Unknown"
    role: Role = "elderly"


class CallInitiate(_Inbound):
    type: Literal["call:initiate"]
    caller_id: Identifier
    callee_id: Identifier
    caller_name: str = "Unknown"
    caller_role: Role = "elderly"


class CallAccept(_Inbound):
    type: Literal["call:accept"]
    call_id: Identifier
    room_name: str | None = None
    caller_id: str | None = None


class CallReject(_Inbound):
    type: Literal["call:reject"]
    call_id: Identifier
    caller_id: str | None = None


class CallCancel(_Inbound):
    type: Literal["call:cancel"]
    call_id: Identifier
    callee_id: str | None = None


class CallEnd(_Inbound):
    type: Literal["call:end"]
    call_id: Identifier
    other_user_id: str | None = None


class ChatSend(_Inbound):
    type: Literal["chat:send"]
    to_user_id: Identifier
    text: Annotated[str, Field(max_length=4000)]
    sender_name: str = "Unknown"
    sender_role: Role | None = None


class UsersGetOnline(_Inbound):
    type: Literal["users:getOnline"]


class GeofenceResolution(_Inbound):
    """A caregiver acknowledging or dismissing a ``geofence:alert``."""

    type: Literal["geofence:acknowledge", "geofence:ignore"]
    alert_id: Identifier
    user_id: str | None = None
    caregiver_id: str | None = None


InboundEvent = Annotated[
    Union[
        UserOnline,
        CallInitiate,
        CallAccept,
        CallReject,
        CallCancel,
        CallEnd,
        ChatSend,
        UsersGetOnline,
        GeofenceResolution,
    ],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset(
    {
        USER_ONLINE,
        CALL_INITIATE,
        CALL_ACCEPT,
        CALL_REJECT,
        CALL_CANCEL,
        CALL_END,
        CHAT_SEND,
        USERS_GET_ONLINE,
        GEOFENCE_ACKNOWLEDGE,
        GEOFENCE_IGNORE,
    }
)

_inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def parse_inbound(message: dict) -> InboundEvent:
    """Validate a decoded client frame; raises ``pydantic.ValidationError``."""
    return _inbound_adapter.validate_python(message)


def server_event(event_type: str, **payload) -> dict:
    return {"type": event_type, **payload}


def error_event(message: str) -> dict:
    return server_event(SERVER_ERROR, message=message)
