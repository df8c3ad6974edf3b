"""Room records and invite tokens, persisted in DuckDB.

Database Schema:
    rooms table:
        - room_id: Normalized room slug (primary key)
        - payload: Full Room record as JSON
        - created_at: Creation timestamp
    room_invites table:
        - token: Random urlsafe token (primary key)
        - room_id, created_by
        - single_use, expires_at, used_at, created_at

Room records are cached in memory after the first read. Every mutation is
a synchronous read-modify-write of the cached record followed by a write
through to DuckDB, so multi-valued fields (bans, moderators, members, pins)
get add/remove-element semantics on the event loop.
"""
import logging
import re
import secrets
import time
from typing import Callable, Dict, Optional

import duckdb

from .errors import ChatError, ErrorCode
from .schemas import Announcement, InviteToken, Room

logger = logging.getLogger(__name__)

ROOM_ID_RE = re.compile(r"^[a-z0-9\-_.]{2,50}$")

# Set-valued Room fields that support add/remove element updates
_SET_FIELDS = ("banned", "mods", "members")


def normalize_room_id(raw: Optional[str]) -> str:
    """Lowercase and trim a room id.

    Raises:
        ChatError: VALIDATION if the result is not a valid slug.
    """
    if raw is not None and not isinstance(raw, str):
        raise ChatError(ErrorCode.VALIDATION, "Room id must be a string")
    room_id = (raw or "").strip().lower()
    if not ROOM_ID_RE.match(room_id):
        raise ChatError(
            ErrorCode.VALIDATION,
            "Room id must be 2-50 chars of a-z, 0-9, '-', '_' or '.'",
        )
    return room_id


class RoomStore:
    """Repository of Room records and their invite tokens."""

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connection = connection
        self._clock = clock
        self._cache: Dict[str, Room] = {}
        self._initialize_db()

    def _initialize_db(self) -> None:
        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS rooms (
                room_id VARCHAR PRIMARY KEY,
                payload VARCHAR NOT NULL,
                created_at DOUBLE NOT NULL
            )
        """)
        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS room_invites (
                token VARCHAR PRIMARY KEY,
                room_id VARCHAR NOT NULL,
                created_by VARCHAR NOT NULL,
                single_use BOOLEAN NOT NULL,
                expires_at DOUBLE,
                used_at DOUBLE,
                created_at DOUBLE NOT NULL
            )
        """)

    # -------------------------------------------------------------------------
    # Lookup / creation
    # -------------------------------------------------------------------------

    async def get(self, room_id: str) -> Optional[Room]:
        room = self._cache.get(room_id)
        if room is not None:
            return room
        row = self._connection.execute(
            "SELECT payload FROM rooms WHERE room_id = ?", [room_id]
        ).fetchone()
        if row is None:
            return None
        room = Room.model_validate_json(row[0])
        self._cache[room_id] = room
        return room

    async def require(self, room_id: str) -> Room:
        room = await self.get(room_id)
        if room is None:
            raise ChatError(ErrorCode.NOT_FOUND, "Room not found")
        return room

    def _insert(self, room: Room) -> None:
        self._connection.execute(
            "INSERT INTO rooms (room_id, payload, created_at) VALUES (?, ?, ?)",
            [room.roomId, room.model_dump_json(), room.createdAt],
        )
        self._cache[room.roomId] = room

    def _save(self, room: Room) -> None:
        self._connection.execute(
            "UPDATE rooms SET payload = ? WHERE room_id = ?",
            [room.model_dump_json(), room.roomId],
        )

    async def ensure(self, room_id: str) -> Room:
        """Return the room, lazily creating an open one on first access."""
        room = await self.get(room_id)
        if room is None:
            room = Room(roomId=room_id, createdAt=self._clock())
            self._insert(room)
            logger.info(f"[Rooms] Created open room {room_id}")
        return room

    async def create(self, room_id: str, owner: str, secret_hash: str) -> Room:
        """Explicitly create a protected room owned by ``owner``.

        Raises:
            ChatError: CONFLICT if the room already exists.
        """
        if await self.get(room_id) is not None:
            raise ChatError(ErrorCode.CONFLICT, "Room already exists")
        room = Room(
            roomId=room_id,
            secretHash=secret_hash,
            owner=owner,
            createdAt=self._clock(),
        )
        self._insert(room)
        logger.info(f"[Rooms] Created protected room {room_id} owned by {owner}")
        return room

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def update(self, room_id: str, mutator: Callable[[Room], None]) -> Room:
        """Apply ``mutator`` to the room record and persist it.

        If the mutator raises, the cached record is left untouched.
        """
        current = await self.require(room_id)
        room = current.model_copy(deep=True)
        mutator(room)
        room.roomId = room_id
        self._save(room)
        self._cache[room_id] = room
        return room

    async def add_to(self, room_id: str, field: str, identity: str) -> Room:
        """Add ``identity`` to one of the set-valued fields (banned/mods/members)."""
        if field not in _SET_FIELDS:
            raise ValueError(f"Unknown room set field: {field}")

        def _add(room: Room) -> None:
            values = getattr(room, field)
            if identity not in values:
                values.append(identity)

        return await self.update(room_id, _add)

    async def remove_from(self, room_id: str, field: str, identity: str) -> Room:
        if field not in _SET_FIELDS:
            raise ValueError(f"Unknown room set field: {field}")

        def _remove(room: Room) -> None:
            setattr(room, field, [value for value in getattr(room, field) if value != identity])

        return await self.update(room_id, _remove)

    async def set_fields(self, room_id: str, **fields) -> Room:
        """Last-writer-wins update of scalar metadata (topic, rules, ...)."""

        def _set(room: Room) -> None:
            for name, value in fields.items():
                setattr(room, name, value)

        return await self.update(room_id, _set)

    async def pin(self, room_id: str, message_id: str, max_pins: int) -> Room:
        """Append a pinned id. Already-pinned ids are a no-op.

        Raises:
            ChatError: CONFLICT when ``max_pins`` is reached.
        """

        def _pin(room: Room) -> None:
            if message_id in room.pinnedMessageIds:
                return
            if len(room.pinnedMessageIds) >= max_pins:
                raise ChatError(ErrorCode.CONFLICT, f"At most {max_pins} pinned messages")
            room.pinnedMessageIds.append(message_id)

        return await self.update(room_id, _pin)

    async def unpin(self, room_id: str, message_id: str) -> Room:
        def _unpin(room: Room) -> None:
            room.pinnedMessageIds = [mid for mid in room.pinnedMessageIds if mid != message_id]

        return await self.update(room_id, _unpin)

    async def announce(self, room_id: str, text: str, keep: int) -> Room:
        """Append an announcement, keeping only the latest ``keep``."""

        def _announce(room: Room) -> None:
            room.announcements.append(Announcement(text=text, ts=self._clock()))
            room.announcements = room.announcements[-keep:] if keep > 0 else []

        return await self.update(room_id, _announce)

    # -------------------------------------------------------------------------
    # Invites
    # -------------------------------------------------------------------------

    async def create_invite(
        self,
        room_id: str,
        created_by: str,
        ttl_minutes: Optional[int] = None,
        single_use: bool = True,
    ) -> InviteToken:
        now = self._clock()
        invite = InviteToken(
            token=secrets.token_urlsafe(24),
            roomId=room_id,
            createdBy=created_by,
            singleUse=single_use,
            expiresAt=now + ttl_minutes * 60 if ttl_minutes else None,
            createdAt=now,
        )
        self._connection.execute(
            """
            INSERT INTO room_invites
                (token, room_id, created_by, single_use, expires_at, used_at, created_at)
            VALUES (?, ?, ?, ?, ?, NULL, ?)
            """,
            [
                invite.token,
                invite.roomId,
                invite.createdBy,
                invite.singleUse,
                invite.expiresAt,
                invite.createdAt,
            ],
        )
        return invite

    async def get_invite(self, token: str) -> Optional[InviteToken]:
        row = self._connection.execute(
            """
            SELECT token, room_id, created_by, single_use, expires_at, used_at, created_at
            FROM room_invites WHERE token = ?
            """,
            [token],
        ).fetchone()
        if row is None:
            return None
        return InviteToken(
            token=row[0],
            roomId=row[1],
            createdBy=row[2],
            singleUse=row[3],
            expiresAt=row[4],
            usedAt=row[5],
            createdAt=row[6],
        )

    async def consume_invite(self, room_id: str, token: str) -> bool:
        """Atomically validate and mark an invite as used.

        The token is marked before the join completes; a failure after this
        point leaves a single-use token spent.

        Returns:
            True if the token was valid for ``room_id`` and is now consumed.
        """
        now = self._clock()
        rows = self._connection.execute(
            """
            UPDATE room_invites SET used_at = ?
            WHERE token = ?
              AND room_id = ?
              AND (expires_at IS NULL OR expires_at > ?)
              AND (NOT single_use OR used_at IS NULL)
            RETURNING token
            """,
            [now, token, room_id, now],
        ).fetchall()
        return bool(rows)
