"""Room session manager for real-time chat.

Owns the state machine every live connection goes through and orchestrates
the presence registry, the room repository and the message store.

Connection states:
    Disconnected -> Unjoined -> InRoom(roomId) -> Unjoined -> ...
    Any state -> Disconnected (terminal) on connection loss.

Key features:
    - Explicit resume step on connect (rejoin the last-known room)
    - Lazy creation of open rooms, explicit creation of protected rooms
    - Credential or single-use/expiring invite checks for protected rooms
    - Ban enforcement, including forcibly dropping live connections
    - Presence broadcasts (count + names) after every join/leave
    - Initial history page and room metadata pushed on join

Ordering:
    Each room has an asyncio lock held while a message is appended and
    fanned out, and while a joining connection reads its initial history
    and enters presence. Fan-out itself is a synchronous enqueue on every
    connection, so broadcast order equals append order, and a joiner sees
    each message exactly once (in its history page or as a live push).

Thread Safety:
    Designed for a single event loop. NOT thread-safe.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from app.audit.schemas import AuditAction, AuditLogCreate
from app.audit.service import AuditLogService
from app.auth.passwords import PasswordHasher

from .connection import Connection
from .errors import ChatError, ErrorCode
from .presence import PresenceRegistry
from .rooms import RoomStore, normalize_room_id
from .schemas import Room
from .store import MessageStore

logger = logging.getLogger(__name__)


class RoomSessionManager:
    """Tracks live connections and moves them between rooms.

    Args:
        presence: Presence registry (injected, owned by this manager).
        rooms: Room repository.
        store: Message store.
        hasher: Room secret hasher.
        global_room_id: Id of the always-open default room.
        admins: Identities with owner-level rights in every room.
        page_size: Size of the initial history page pushed on join.
        audit_log: Optional moderation audit log.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        rooms: RoomStore,
        store: MessageStore,
        hasher: PasswordHasher,
        global_room_id: str = "global",
        admins: Iterable[str] = (),
        page_size: int = 50,
        audit_log: Optional[AuditLogService] = None,
    ) -> None:
        self.presence = presence
        self.rooms = rooms
        self.store = store
        self.hasher = hasher
        self.global_room_id = global_room_id
        self.admins = set(admins)
        self.page_size = page_size
        self.audit_log = audit_log

        # connection id -> Connection, for every non-disconnected connection
        self.connections: Dict[str, Connection] = {}
        # room id -> lock serializing append+broadcast and joins
        self._room_locks: Dict[str, asyncio.Lock] = {}

    # =========================================================================
    # Fan-out
    # =========================================================================

    def room_lock(self, room_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(room_id)
        if lock is None:
            lock = self._room_locks[room_id] = asyncio.Lock()
        return lock

    def connections_in(self, room_id: str) -> List[Connection]:
        return [
            self.connections[cid]
            for cid in self.presence.connections(room_id)
            if cid in self.connections
        ]

    def broadcast(
        self, room_id: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> int:
        """Enqueue an event on every connection in the room.

        Args:
            room_id: Room to broadcast to.
            event: Server-to-client event name.
            data: JSON-serializable payload.
            exclude: Connection id to skip (e.g. the typist).

        Returns:
            Number of connections the event was queued for.
        """
        sent = 0
        for conn in self.connections_in(room_id):
            if conn.id == exclude:
                continue
            conn.push(event, data)
            sent += 1
        return sent

    def send_to(self, connection_ids: Iterable[str], event: str, data: Any) -> int:
        sent = 0
        for cid in connection_ids:
            conn = self.connections.get(cid)
            if conn is not None:
                conn.push(event, data)
                sent += 1
        return sent

    def broadcast_presence(self, room_id: str) -> None:
        self.broadcast(
            room_id, "presenceCount",
            {"roomId": room_id, "count": self.presence.count(room_id)},
        )
        self.broadcast(
            room_id, "presenceNames",
            {"roomId": room_id, "names": self.presence.names(room_id)},
        )

    # =========================================================================
    # Permissions
    # =========================================================================

    def is_admin(self, identity: str) -> bool:
        return identity in self.admins

    def can_moderate(self, room: Room, identity: str) -> bool:
        return self.is_admin(identity) or room.is_moderator(identity)

    def can_own(self, room: Room, identity: str) -> bool:
        return self.is_admin(identity) or room.is_owner(identity)

    def has_access(self, room: Room, identity: str) -> bool:
        """Whether ``identity`` may read the room without presenting a secret."""
        if room.is_banned(identity):
            return False
        return not room.is_protected or self.is_admin(identity) or room.is_member(identity)

    async def authorize_read(self, room_id: str, identity: Optional[str]) -> Room:
        """Resolve a room for a read-only request (history, search, export).

        Raises:
            ChatError: NOT_FOUND, BANNED or FORBIDDEN.
        """
        room = await self.rooms.get(room_id)
        if room is None:
            raise ChatError(ErrorCode.NOT_FOUND, "Room not found")
        if identity and room.is_banned(identity):
            raise ChatError(ErrorCode.BANNED)
        if room.is_protected and not (identity and self.has_access(room, identity)):
            raise ChatError(ErrorCode.FORBIDDEN)
        return room

    def audit(
        self,
        action: AuditAction,
        room_id: str,
        actor: str,
        target: Optional[str] = None,
        **meta: Any,
    ) -> None:
        if self.audit_log is None:
            return
        self.audit_log.try_record(
            AuditLogCreate(type=action, room_id=room_id, actor=actor, target=target, meta=meta)
        )

    # =========================================================================
    # Room metadata
    # =========================================================================

    async def room_metadata(self, room: Room) -> dict:
        """Metadata payload with pinned ids resolved (deleted pins filtered)."""
        pins = await self.store.get_many(room.pinnedMessageIds)
        return {
            "roomId": room.roomId,
            "topic": room.topic,
            "rules": room.rules,
            "slowModeSec": room.slowModeSec,
            "theme": room.theme.model_dump(),
            "pins": [m.model_dump(mode="json") for m in pins if m.roomId == room.roomId],
            "announcements": [a.model_dump() for a in room.announcements],
            "owner": room.owner,
            "mods": list(room.mods),
            "isProtected": room.is_protected,
        }

    async def broadcast_room_metadata(self, room: Room) -> None:
        metadata = await self.room_metadata(room)
        self.broadcast(room.roomId, "roomMetadata", metadata)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, conn: Connection, last_room: Optional[str] = None) -> dict:
        """Register a new connection and perform the resume step.

        The connection is told it is connected, then rejoins ``last_room``
        when allowed, or the global room otherwise.
        """
        self.connections[conn.id] = conn
        logger.info(f"[Session] {conn.identity} connected ({conn.id}), last room={last_room}")
        conn.push("connectionStateChanged", {"state": "connected", "username": conn.identity})
        return await self.resume(conn, last_room)

    async def resume(self, conn: Connection, last_room: Optional[str]) -> dict:
        """Rejoin ``last_room`` without a credential, falling back to global.

        Protected rooms admit only identities recorded as members (or the
        owner, moderators and admins). Banned identities fall back as well.
        """
        if last_room:
            try:
                room_id = normalize_room_id(last_room)
            except ChatError:
                room_id = None
            room = await self.rooms.get(room_id) if room_id else None
            if room is not None and room.roomId != self.global_room_id:
                if self.has_access(room, conn.identity):
                    return await self._enter(conn, room.roomId)
                logger.info(f"[Session] Resume of {conn.identity} into {room.roomId} denied")
        try:
            return await self.join_global(conn)
        except ChatError as e:
            # banned from the global room: stay Unjoined
            logger.info(f"[Session] {conn.identity} could not join global: {e.code.value}")
            return e.to_result()

    async def disconnect(self, conn: Connection) -> None:
        """Terminal cleanup: leave the room, drop ephemeral state, close."""
        if conn.closed and conn.id not in self.connections:
            return
        self.leave_room(conn)
        self.connections.pop(conn.id, None)
        conn.close()
        logger.info(f"[Session] {conn.identity} disconnected ({conn.id})")

    # =========================================================================
    # Transitions
    # =========================================================================

    async def join_global(self, conn: Connection) -> dict:
        self.leave_room(conn)
        await self.rooms.ensure(self.global_room_id)
        return await self._enter(conn, self.global_room_id)

    async def join_room(
        self,
        conn: Connection,
        room_id: Optional[str],
        secret: Optional[str] = None,
        invite: Optional[str] = None,
    ) -> dict:
        """Move the connection into ``room_id``.

        Leaves the current room first; a rejected join leaves the connection
        Unjoined. Open rooms are created lazily. Protected rooms require a
        valid secret or invite token.

        Raises:
            ChatError: VALIDATION, BANNED or FORBIDDEN.
        """
        room_id = normalize_room_id(room_id)
        self.leave_room(conn)
        room = await self.rooms.ensure(room_id)
        if room.is_banned(conn.identity):
            logger.info(f"[Session] Banned identity {conn.identity} tried to join {room_id}")
            raise ChatError(ErrorCode.BANNED)
        if room.is_protected:
            await self._check_credentials(conn, room, secret, invite)
            await self.rooms.add_to(room_id, "members", conn.identity)
        return await self._enter(conn, room_id)

    async def _check_credentials(
        self, conn: Connection, room: Room, secret: Optional[str], invite: Optional[str]
    ) -> None:
        if invite:
            if await self.rooms.consume_invite(room.roomId, str(invite)):
                logger.info(f"[Session] {conn.identity} joined {room.roomId} via invite")
                return
            raise ChatError(ErrorCode.FORBIDDEN, "Invalid or expired invite")
        if secret and await self.hasher.verify_async(str(secret), room.secretHash):
            return
        raise ChatError(ErrorCode.FORBIDDEN, "Wrong room secret")

    async def create_room(
        self, conn: Connection, room_id: Optional[str], secret: Optional[str]
    ) -> dict:
        """Create a protected room owned by the caller and auto-join it.

        Raises:
            ChatError: VALIDATION for a bad id or empty secret, CONFLICT if
                the room already exists.
        """
        room_id = normalize_room_id(room_id)
        if not isinstance(secret, str) or not secret:
            raise ChatError(ErrorCode.VALIDATION, "A room secret is required")
        if room_id == self.global_room_id or await self.rooms.get(room_id) is not None:
            raise ChatError(ErrorCode.CONFLICT, "Room already exists")
        secret_hash = await self.hasher.hash_async(secret)
        await self.rooms.create(room_id, owner=conn.identity, secret_hash=secret_hash)
        self.audit(AuditAction.ROOM_CREATE, room_id, conn.identity)
        self.leave_room(conn)
        return await self._enter(conn, room_id)

    async def _enter(self, conn: Connection, room_id: str) -> dict:
        async with self.room_lock(room_id):
            room = await self.rooms.require(room_id)
            if room.is_banned(conn.identity):
                raise ChatError(ErrorCode.BANNED)
            page = await self.store.history_page(room_id, None, self.page_size)
            metadata = await self.room_metadata(room)
            if conn.closed:
                raise ChatError(ErrorCode.NOT_FOUND, "Connection closed")
            self.leave_room(conn)
            self.presence.join(room_id, conn.id, conn.identity)
            conn.room_id = room_id
            conn.push("historyPage", {"roomId": room_id, **page.model_dump(mode="json")})
            conn.push("roomMetadata", metadata)
            self.broadcast_presence(room_id)
        logger.info(
            f"[Session] {conn.identity} joined {room_id}. "
            f"Room now has {self.presence.count(room_id)} connections"
        )
        return {"ok": True, "roomId": room_id}

    def leave_room(self, conn: Connection) -> dict:
        """Leave the current room. Idempotent no-op when Unjoined."""
        room_id = conn.room_id
        if room_id is None:
            return {"ok": True}
        self.presence.leave(room_id, conn.id)
        conn.room_id = None
        self._clear_typing(conn, room_id)
        self.broadcast_presence(room_id)
        logger.info(f"[Session] {conn.identity} left {room_id}")
        return {"ok": True, "roomId": room_id}

    def _clear_typing(self, conn: Connection, room_id: str) -> None:
        if conn.typing:
            conn.typing = False
            self.broadcast(
                room_id, "typingIndicator",
                {"roomId": room_id, "username": conn.identity, "isTyping": False},
                exclude=conn.id,
            )

    def drop_identity(self, room_id: str, identity: str, state: str) -> int:
        """Forcibly remove every live connection of ``identity`` from a room.

        Each dropped connection is told why (``state`` is "banned" or
        "kicked") and becomes Unjoined; the socket itself stays open.

        Returns:
            Number of connections dropped.
        """
        dropped = 0
        for cid in self.presence.sockets_for(room_id, identity):
            self.presence.leave(room_id, cid)
            conn = self.connections.get(cid)
            if conn is None:
                continue
            conn.room_id = None
            self._clear_typing(conn, room_id)
            conn.push("connectionStateChanged", {"state": state, "roomId": room_id})
            dropped += 1
        if dropped:
            self.broadcast_presence(room_id)
            logger.info(f"[Session] Dropped {dropped} connection(s) of {identity} from {room_id} ({state})")
        return dropped
