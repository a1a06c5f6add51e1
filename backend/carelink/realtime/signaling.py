"""Routes validated inbound events to presence and call handling."""

from __future__ import annotations

import logging

from ..errors import CareLinkError
from .calls import CallSessionCoordinator
from .hub import ConnectionHub
from .presence import PresenceRegistry
from .protocol import (
    CALL_ERROR,
    CHAT_RECEIVE,
    USERS_ONLINE,
    CallAccept,
    CallCancel,
    CallEnd,
    CallInitiate,
    CallReject,
    ChatSend,
    GeofenceResolution,
    InboundEvent,
    UserOnline,
    UsersGetOnline,
    server_event,
)


logger = logging.getLogger("carelink")


class SignalingService:
    def __init__(
        self,
        *,
        presence: PresenceRegistry,
        hub: ConnectionHub,
        calls: CallSessionCoordinator,
    ) -> None:
        self.presence = presence
        self.hub = hub
        self.calls = calls

    async def handle(self, connection_id: str, event: InboundEvent) -> None:
        try:
            await self._dispatch(connection_id, event)
        except CareLinkError as exc:
            logger.info("%s from %s failed: %s", event.type, connection_id, exc.message)
            await self.hub.send(connection_id, server_event(CALL_ERROR, **exc.to_payload()))

    async def _dispatch(self, connection_id: str, event: InboundEvent) -> None:
        if isinstance(event, UserOnline):
            self.presence.register(connection_id, event.user_id, event.name, event.role)
            await self.broadcast_online_users()
        elif isinstance(event, CallInitiate):
            await self.calls.initiate(
                connection_id,
                caller_id=event.caller_id,
                callee_id=event.callee_id,
                caller_name=event.caller_name,
                caller_role=event.caller_role,
            )
        elif isinstance(event, CallAccept):
            await self.calls.accept(connection_id, event.call_id, caller_id=event.caller_id)
        elif isinstance(event, CallReject):
            await self.calls.reject(connection_id, event.call_id, caller_id=event.caller_id)
        elif isinstance(event, CallCancel):
            await self.calls.cancel(connection_id, event.call_id, callee_id=event.callee_id)
        elif isinstance(event, CallEnd):
            await self.calls.end(connection_id, event.call_id, other_user_id=event.other_user_id)
        elif isinstance(event, ChatSend):
            await self.relay_chat(connection_id, event)
        elif isinstance(event, UsersGetOnline):
            await self.hub.send(
                connection_id,
                server_event(USERS_ONLINE, users=self.presence.list_others(connection_id)),
            )
        elif isinstance(event, GeofenceResolution):
            logger.info(
                "Geofence alert %s for user %s: %s by caregiver %s",
                event.alert_id,
                event.user_id,
                event.type.split(":", 1)[1],
                event.caregiver_id,
            )

    async def relay_chat(self, connection_id: str, event: ChatSend) -> None:
        recipient = self.presence.lookup_connection(event.to_user_id)
        if recipient is None:
            logger.debug("Chat message to offline user %s dropped", event.to_user_id)
            return
        sender = self.presence.entry_for_connection(connection_id)
        await self.hub.send(
            recipient,
            server_event(
                CHAT_RECEIVE,
                text=event.text,
                senderName=event.sender_name,
                senderRole=event.sender_role or (sender.role if sender else None),
                fromUserId=sender.user_id if sender else None,
            ),
        )

    async def disconnect(self, connection_id: str) -> None:
        if self.presence.unregister(connection_id) is not None:
            await self.broadcast_online_users()

    async def broadcast_online_users(self) -> int:
        return await self.hub.broadcast(server_event(USERS_ONLINE, users=self.presence.list_online()))
