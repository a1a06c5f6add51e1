"""Call session state machine and its coordinator.

A call attempt moves ``ringing -> accepted -> ended`` or ends early as
``rejected`` (callee declines), ``cancelled`` (caller hangs up before
an answer) or ``missed`` (ring timeout).  Transitions are applied in
memory synchronously, so whichever of two competing signals the event
loop processes first wins and the other is reported as stale.  The
stored call record is the durable history; failing to write it is
reported to the acting connection but never undoes the transition or
holds back the peer notification.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import math
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import (
    CallAlreadyResolved,
    CallNotFound,
    CallPersistenceError,
    NotCallParticipant,
    UserOffline,
)
from ..models import CallRecord
from ..store import DocumentStore
from .hub import ConnectionHub
from .presence import PresenceRegistry
from .protocol import (
    CALL_ACCEPTED,
    CALL_CANCELLED,
    CALL_ENDED,
    CALL_ERROR,
    CALL_INCOMING,
    CALL_MISSED,
    CALL_REJECTED,
    CALL_RINGING,
    server_event,
)


logger = logging.getLogger("carelink")

RESOLVED_CACHE_SIZE = 4096


class CallStatus(str, enum.Enum):
    RINGING = "ringing"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    MISSED = "missed"
    ENDED = "ended"


TRANSITIONS: dict[CallStatus, frozenset[CallStatus]] = {
    CallStatus.RINGING: frozenset(
        {CallStatus.ACCEPTED, CallStatus.REJECTED, CallStatus.CANCELLED, CallStatus.MISSED}
    ),
    CallStatus.ACCEPTED: frozenset({CallStatus.ENDED}),
}


def generate_room_name() -> str:
    return f"consultation-{uuid.uuid4().hex[:8]}"


def call_duration_seconds(started_at: datetime | None, ended_at: datetime) -> int:
    if started_at is None:
        return 0
    return max(0, math.floor((ended_at - started_at).total_seconds()))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CallSession:
    call_id: str
    caller_id: str
    caller_name: str
    caller_role: str
    callee_id: str
    callee_name: str
    callee_role: str
    room_name: str
    status: CallStatus = CallStatus.RINGING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None

    @property
    def terminal(self) -> bool:
        return self.status not in TRANSITIONS

    def transition(self, target: CallStatus) -> None:
        if target not in TRANSITIONS.get(self.status, frozenset()):
            raise CallAlreadyResolved(self.call_id, self.status.value, target.value)
        self.status = target

    def other_party(self, user_id: str | None) -> str:
        return self.caller_id if user_id == self.callee_id else self.callee_id

    @classmethod
    def from_record(cls, record: CallRecord) -> "CallSession":
        return cls(
            call_id=record.id,
            caller_id=record.caller_id,
            caller_name=record.caller_name,
            caller_role=record.caller_role,
            callee_id=record.callee_id,
            callee_name=record.callee_name,
            callee_role=record.callee_role,
            room_name=record.room_name,
            status=CallStatus(record.status),
            started_at=record.started_at,
            ended_at=record.ended_at,
            duration_seconds=record.duration_seconds,
        )

    def to_record(self) -> CallRecord:
        return CallRecord(
            id=self.call_id,
            caller_id=self.caller_id,
            caller_name=self.caller_name,
            caller_role=self.caller_role,
            callee_id=self.callee_id,
            callee_name=self.callee_name,
            callee_role=self.callee_role,
            room_name=self.room_name,
            status=self.status.value,
            started_at=self.started_at,
            ended_at=self.ended_at,
            duration_seconds=self.duration_seconds,
        )


class CallSessionCoordinator:
    def __init__(
        self,
        *,
        presence: PresenceRegistry,
        hub: ConnectionHub,
        store: DocumentStore,
        ring_timeout_seconds: float = 0.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.presence = presence
        self.hub = hub
        self.store = store
        self.ring_timeout_seconds = ring_timeout_seconds
        self._clock = clock
        self._sessions: dict[str, CallSession] = {}
        self._resolved: OrderedDict[str, CallSession] = OrderedDict()
        self._ring_timers: dict[str, asyncio.Task[None]] = {}

    def active_session(self, call_id: str) -> CallSession | None:
        return self._sessions.get(call_id)

    async def initiate(
        self,
        connection_id: str,
        *,
        caller_id: str,
        callee_id: str,
        caller_name: str,
        caller_role: str,
    ) -> CallSession:
        callee = self.presence.entry_for_user(callee_id)
        if callee is None:
            raise UserOffline("User is offline")

        session = CallSession(
            call_id=str(uuid.uuid4()),
            caller_id=caller_id,
            caller_name=caller_name,
            caller_role=caller_role,
            callee_id=callee_id,
            callee_name=callee.name or "Unknown",
            callee_role=callee.role or "elderly",
            room_name=generate_room_name(),
        )
        self._sessions[session.call_id] = session
        self._start_ring_timer(session)

        persist_error = None
        try:
            await self.store.create_call_record(session.to_record())
        except Exception as exc:
            logger.exception("Failed to save call %s: %s", session.call_id, exc)
            persist_error = CallPersistenceError("Failed to save call", call_id=session.call_id)

        await self.hub.send(
            connection_id,
            server_event(
                CALL_RINGING,
                callId=session.call_id,
                roomName=session.room_name,
                calleeId=session.callee_id,
                calleeName=session.callee_name,
                calleeRole=session.callee_role,
            ),
        )
        await self._notify_user(
            session.callee_id,
            server_event(
                CALL_INCOMING,
                callId=session.call_id,
                roomName=session.room_name,
                callerId=session.caller_id,
                callerName=session.caller_name,
                callerRole=session.caller_role,
            ),
        )
        await self._report(connection_id, persist_error)
        logger.info(
            "Call initiated: %s -> %s [room %s]",
            session.caller_name,
            session.callee_name,
            session.room_name,
        )
        return session

    async def accept(
        self,
        connection_id: str,
        call_id: str,
        *,
        caller_id: str | None = None,
    ) -> CallSession:
        session = await self._load_session(call_id)
        self._require_party(connection_id, session, callee=True)
        session.transition(CallStatus.ACCEPTED)
        session.started_at = self._clock()
        self._cancel_ring_timer(call_id)

        persist_error = await self._persist(
            session, {"status": session.status.value, "started_at": session.started_at}
        )
        message = server_event(CALL_ACCEPTED, callId=call_id, roomName=session.room_name)
        await self._notify_user(session.caller_id or caller_id, message)
        await self.hub.send(connection_id, message)
        await self._report(connection_id, persist_error)
        logger.info("Call accepted [%s]", call_id)
        return session

    async def reject(
        self,
        connection_id: str,
        call_id: str,
        *,
        caller_id: str | None = None,
    ) -> CallSession:
        session = await self._load_session(call_id)
        self._require_party(connection_id, session, callee=True)
        session.transition(CallStatus.REJECTED)
        session.ended_at = self._clock()
        self._release(session)

        persist_error = await self._persist(
            session, {"status": session.status.value, "ended_at": session.ended_at}
        )
        await self._notify_user(session.caller_id or caller_id, server_event(CALL_REJECTED, callId=call_id))
        await self._report(connection_id, persist_error)
        logger.info("Call rejected [%s]", call_id)
        return session

    async def cancel(
        self,
        connection_id: str,
        call_id: str,
        *,
        callee_id: str | None = None,
    ) -> CallSession:
        session = await self._load_session(call_id)
        self._require_party(connection_id, session, caller=True)
        session.transition(CallStatus.CANCELLED)
        session.ended_at = self._clock()
        self._release(session)

        persist_error = await self._persist(
            session, {"status": session.status.value, "ended_at": session.ended_at}
        )
        await self._notify_user(session.callee_id or callee_id, server_event(CALL_CANCELLED, callId=call_id))
        await self._report(connection_id, persist_error)
        logger.info("Call cancelled [%s]", call_id)
        return session

    async def end(
        self,
        connection_id: str,
        call_id: str,
        *,
        other_user_id: str | None = None,
    ) -> CallSession:
        session = await self._load_session(call_id)
        self._require_party(connection_id, session, caller=True, callee=True)
        session.transition(CallStatus.ENDED)
        session.ended_at = self._clock()
        session.duration_seconds = call_duration_seconds(session.started_at, session.ended_at)
        self._release(session)

        persist_error = await self._persist(
            session,
            {
                "status": session.status.value,
                "ended_at": session.ended_at,
                "duration_seconds": session.duration_seconds,
            },
        )
        if other_user_id is None:
            entry = self.presence.entry_for_connection(connection_id)
            other_user_id = session.other_party(entry.user_id if entry else None)
        await self._notify_user(other_user_id, server_event(CALL_ENDED, callId=call_id))
        await self._report(connection_id, persist_error)
        logger.info("Call ended [%s] after %ss", call_id, session.duration_seconds)
        return session

    async def aclose(self) -> None:
        timers = list(self._ring_timers.values())
        self._ring_timers.clear()
        for task in timers:
            task.cancel()
        for task in timers:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _load_session(self, call_id: str) -> CallSession:
        session = self._sessions.get(call_id) or self._resolved.get(call_id)
        if session is not None:
            return session

        try:
            record = await self.store.find_call_record(call_id)
        except Exception as exc:
            logger.exception("Failed to load call %s: %s", call_id, exc)
            raise CallPersistenceError("Failed to load call", call_id=call_id) from exc
        if record is None:
            raise CallNotFound(f"Call {call_id} not found", call_id=call_id)

        # Another signal for the same call may have loaded it while we awaited.
        session = self._sessions.get(call_id) or self._resolved.get(call_id)
        if session is not None:
            return session
        session = CallSession.from_record(record)
        if session.terminal:
            self._remember_resolved(session)
        else:
            self._sessions[call_id] = session
            if session.status is CallStatus.RINGING:
                self._start_ring_timer(session)
        return session

    def _require_party(
        self,
        connection_id: str,
        session: CallSession,
        *,
        caller: bool = False,
        callee: bool = False,
    ) -> None:
        entry = self.presence.entry_for_connection(connection_id)
        user_id = entry.user_id if entry is not None else None
        if caller and user_id == session.caller_id:
            return
        if callee and user_id == session.callee_id:
            return
        raise NotCallParticipant(
            f"User {user_id or '(anonymous)'} may not change call {session.call_id}",
            call_id=session.call_id,
        )

    def _release(self, session: CallSession) -> None:
        self._cancel_ring_timer(session.call_id)
        self._sessions.pop(session.call_id, None)
        self._remember_resolved(session)

    def _remember_resolved(self, session: CallSession) -> None:
        self._resolved[session.call_id] = session
        self._resolved.move_to_end(session.call_id)
        while len(self._resolved) > RESOLVED_CACHE_SIZE:
            self._resolved.popitem(last=False)

    async def _persist(self, session: CallSession, fields: dict[str, Any]) -> CallPersistenceError | None:
        try:
            record = await self.store.update_call_record(session.call_id, fields)
            if record is None:
                # The row was never created (initiate failed to save it).
                await self.store.create_call_record(session.to_record())
        except Exception as exc:
            logger.exception("Failed to save call %s as %s: %s", session.call_id, session.status.value, exc)
            return CallPersistenceError(
                f"Failed to save call as {session.status.value}", call_id=session.call_id
            )
        return None

    async def _notify_user(self, user_id: str | None, message: dict) -> bool:
        if not user_id:
            return False
        connection_id = self.presence.lookup_connection(user_id)
        if connection_id is None:
            logger.info("%s not delivered: user %s is offline", message["type"], user_id)
            return False
        return await self.hub.send(connection_id, message)

    async def _report(self, connection_id: str, error: CallPersistenceError | None) -> None:
        if error is not None:
            await self.hub.send(connection_id, server_event(CALL_ERROR, **error.to_payload()))

    def _start_ring_timer(self, session: CallSession) -> None:
        if self.ring_timeout_seconds <= 0:
            return
        self._ring_timers[session.call_id] = asyncio.create_task(
            self._expire_ringing(session.call_id)
        )

    def _cancel_ring_timer(self, call_id: str) -> None:
        task = self._ring_timers.pop(call_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _expire_ringing(self, call_id: str) -> None:
        await asyncio.sleep(self.ring_timeout_seconds)
        self._ring_timers.pop(call_id, None)
        session = self._sessions.get(call_id)
        if session is None or session.status is not CallStatus.RINGING:
            return
        session.transition(CallStatus.MISSED)
        session.ended_at = self._clock()
        self._release(session)
        await self._persist(session, {"status": session.status.value, "ended_at": session.ended_at})
        message = server_event(CALL_MISSED, callId=call_id)
        await self._notify_user(session.caller_id, message)
        await self._notify_user(session.callee_id, message)
        logger.info("Call missed after %ss of ringing [%s]", self.ring_timeout_seconds, call_id)
