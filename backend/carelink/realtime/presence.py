"""Who is online, and on which connection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable


logger = logging.getLogger("carelink")


@dataclass(frozen=True)
class PresenceEntry:
    connection_id: str
    user_id: str
    name: str
    role: str

    def public(self) -> dict[str, str]:
        return {"userId": self.user_id, "name": self.name, "role": self.role}


class PresenceRegistry:
    """Bidirectional connection <-> user mapping.

    A user holds at most one live connection; registering again from a
    new connection evicts the older one (last writer wins).
    """

    def __init__(self) -> None:
        self._by_connection: dict[str, PresenceEntry] = {}
        self._by_user: dict[str, str] = {}

    def register(self, connection_id: str, user_id: str, name: str, role: str) -> PresenceEntry:
        stale_connection = self._by_user.get(user_id)
        if stale_connection is not None and stale_connection != connection_id:
            self._by_connection.pop(stale_connection, None)
            logger.info("Removed stale connection %s for user %s", stale_connection, user_id)

        previous = self._by_connection.get(connection_id)
        if previous is not None and previous.user_id != user_id:
            if self._by_user.get(previous.user_id) == connection_id:
                del self._by_user[previous.user_id]

        entry = PresenceEntry(connection_id, user_id, name, role)
        self._by_connection[connection_id] = entry
        self._by_user[user_id] = connection_id
        logger.info("%s (%s) came online [%s]", name, role, connection_id)
        return entry

    def unregister(self, connection_id: str) -> PresenceEntry | None:
        entry = self._by_connection.pop(connection_id, None)
        if entry is None:
            return None
        if self._by_user.get(entry.user_id) == connection_id:
            del self._by_user[entry.user_id]
        logger.info("%s (%s) went offline", entry.name, entry.role)
        return entry

    def lookup_connection(self, user_id: str) -> str | None:
        return self._by_user.get(user_id)

    def entry_for_connection(self, connection_id: str) -> PresenceEntry | None:
        return self._by_connection.get(connection_id)

    def entry_for_user(self, user_id: str) -> PresenceEntry | None:
        connection_id = self._by_user.get(user_id)
        if connection_id is None:
            return None
        return self._by_connection.get(connection_id)

    def list_online(self) -> list[dict[str, str]]:
        return self.list_others(None)

    def list_others(self, excluding_connection_id: str | None) -> list[dict[str, str]]:
        seen: set[str] = set()
        users = []
        for entry in self._by_connection.values():
            if entry.connection_id == excluding_connection_id or entry.user_id in seen:
                continue
            seen.add(entry.user_id)
            users.append(entry.public())
        return users

    def connections_for_roles(self, roles: Iterable[str]) -> list[str]:
        wanted = set(roles)
        return [
            entry.connection_id
            for entry in self._by_connection.values()
            if entry.role in wanted
        ]
