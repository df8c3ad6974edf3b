"""In-memory presence registry.

Tracks which connections are currently joined to which room, and the reverse
mapping from a display name to the set of its connections (one identity may
hold several connections, e.g. browser tabs).

Every operation is a single synchronous step, so the maps are never observed
in an intermediate state by another coroutine on the event loop.
"""
from typing import Dict, List, Optional, Set


class _RoomPresence:
    __slots__ = ("connections", "by_name")

    def __init__(self) -> None:
        # connection id -> display name
        self.connections: Dict[str, str] = {}
        # display name -> connection ids
        self.by_name: Dict[str, Set[str]] = {}


class PresenceRegistry:
    """Authoritative "who is in this room right now" map, scoped per room.

    Per-room entries are created lazily and kept for the life of the process.
    """

    def __init__(self) -> None:
        self._rooms: Dict[str, _RoomPresence] = {}

    def _room(self, room_id: str) -> _RoomPresence:
        presence = self._rooms.get(room_id)
        if presence is None:
            presence = _RoomPresence()
            self._rooms[room_id] = presence
        return presence

    def join(self, room_id: str, connection_id: str, name: str) -> None:
        """Register ``connection_id`` as ``name`` in the room.

        A no-op if the connection is already present under the same name.
        If it is present under a different name the old mapping is replaced.
        """
        presence = self._room(room_id)
        current = presence.connections.get(connection_id)
        if current == name:
            return
        if current is not None:
            self._unlink(presence, connection_id, current)
        presence.connections[connection_id] = name
        presence.by_name.setdefault(name, set()).add(connection_id)

    def leave(self, room_id: str, connection_id: str) -> bool:
        """Remove a connection. Returns False if it was not present."""
        presence = self._rooms.get(room_id)
        if presence is None:
            return False
        name = presence.connections.pop(connection_id, None)
        if name is None:
            return False
        self._unlink(presence, connection_id, name)
        return True

    @staticmethod
    def _unlink(presence: _RoomPresence, connection_id: str, name: str) -> None:
        sockets = presence.by_name.get(name)
        if sockets is None:
            return
        sockets.discard(connection_id)
        if not sockets:
            del presence.by_name[name]

    def count(self, room_id: str) -> int:
        presence = self._rooms.get(room_id)
        return len(presence.connections) if presence else 0

    def names(self, room_id: str) -> List[str]:
        """Distinct display names present in the room, sorted."""
        presence = self._rooms.get(room_id)
        if presence is None:
            return []
        return sorted(presence.by_name)

    def sockets_for(self, room_id: str, name: str) -> Set[str]:
        """Connection ids held by ``name`` in the room (a copy)."""
        presence = self._rooms.get(room_id)
        if presence is None:
            return set()
        return set(presence.by_name.get(name, ()))

    def connections(self, room_id: str) -> List[str]:
        """All connection ids in the room, in join order."""
        presence = self._rooms.get(room_id)
        return list(presence.connections) if presence else []

    def name_of(self, room_id: str, connection_id: str) -> Optional[str]:
        presence = self._rooms.get(room_id)
        return presence.connections.get(connection_id) if presence else None

    def snapshot(self, room_id: str) -> dict:
        return {"roomId": room_id, "count": self.count(room_id), "names": self.names(room_id)}
