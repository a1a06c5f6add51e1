"""Connection hub: addresses live WebSocket connections by id."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from starlette.websockets import WebSocketState


logger = logging.getLogger("carelink")


class JsonSocket(Protocol):
    client_state: WebSocketState

    async def send_json(self, data: Any) -> None: ...


class ConnectionHub:
    """Per-connection addressing and broadcast-to-all over attached sockets.

    Sends never raise: a socket that fails is reported as undelivered
    and left for its own receive loop to clean up.
    """

    def __init__(self) -> None:
        self._sockets: dict[str, JsonSocket] = {}

    def attach(self, connection_id: str, socket: JsonSocket) -> None:
        self._sockets[connection_id] = socket

    def detach(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    def __len__(self) -> int:
        return len(self._sockets)

    async def send(self, connection_id: str, message: dict) -> bool:
        socket = self._sockets.get(connection_id)
        if socket is None:
            return False
        if socket.client_state != WebSocketState.CONNECTED:
            return False
        try:
            await socket.send_json(message)
        except Exception as exc:
            logger.warning(
                "Dropping %s for connection %s: %s", message.get("type"), connection_id, exc
            )
            return False
        return True

    async def broadcast(self, message: dict) -> int:
        delivered = 0
        for connection_id in list(self._sockets):
            if await self.send(connection_id, message):
                delivered += 1
        return delivered
