"""Moderation slash commands.

``slashCommand(name, args)`` mutates the caller's current room. Every
command requires the owner or a moderator (or a configured admin); ``mod``
and ``unmod`` are owner-only. A successful mutation of the room record is
followed by a ``roomMetadata`` broadcast to the whole room.

Commands:
    topic <text...>          Set the topic
    rules <text...>          Set the rules
    slow <seconds>           Set the slow-mode interval (0 disables)
    theme <light|dark> [#rrggbb]
    announce <text...>       Add an announcement
    pin|unpin <messageId>
    ban|unban|kick <name>
    mod|unmod <name>         Promote/demote a moderator
    invite [ttlMinutes] [multi]
    export                   Link to a full export of the room
"""
import logging
import re
from typing import Awaitable, Callable, Dict, List

from app.audit.schemas import AuditAction
from app.auth.identity import is_valid_username

from .connection import Connection
from .errors import ChatError, ErrorCode
from .manager import RoomSessionManager
from .relay import MessageRelay
from .schemas import Room, Theme

logger = logging.getLogger(__name__)

MAX_TOPIC_LENGTH = 500
MAX_RULES_LENGTH = 1000
MAX_ANNOUNCEMENT_LENGTH = 500
MAX_SLOW_MODE_SECONDS = 3600
MAX_INVITE_TTL_MINUTES = 60 * 24 * 30
ACCENT_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

Handler = Callable[[Connection, Room, List[str]], Awaitable[dict]]


class SlashCommands:
    """Dispatches slash commands for connections in a room.

    Args:
        relay: Message relay (used for the current-room and ban re-check).
        max_pins: Upper bound on pinned messages per room.
        max_announcements: Announcements kept per room.
        invite_ttl_minutes: Default invite lifetime.
    """

    def __init__(
        self,
        relay: MessageRelay,
        max_pins: int = 20,
        max_announcements: int = 5,
        invite_ttl_minutes: int = 1440,
    ) -> None:
        self.relay = relay
        self.sessions: RoomSessionManager = relay.sessions
        self.rooms = relay.rooms
        self.store = relay.store
        self.max_pins = max_pins
        self.max_announcements = max_announcements
        self.invite_ttl_minutes = invite_ttl_minutes

        self._handlers: Dict[str, Handler] = {
            "topic": self._topic,
            "rules": self._rules,
            "slow": self._slow,
            "theme": self._theme,
            "announce": self._announce,
            "pin": self._pin,
            "unpin": self._unpin,
            "ban": self._ban,
            "unban": self._unban,
            "kick": self._kick,
            "mod": self._mod,
            "unmod": self._unmod,
            "invite": self._invite,
            "export": self._export,
        }
        self._owner_only = {"mod", "unmod"}

    async def execute(self, conn: Connection, data: dict) -> dict:
        """Run ``data["name"]`` with ``data["args"]``.

        Raises:
            ChatError: VALIDATION for unknown commands or bad arguments,
                FORBIDDEN when the caller lacks the required role.
        """
        name = data.get("name")
        args = data.get("args") or []
        if not isinstance(name, str) or not isinstance(args, list):
            raise ChatError(ErrorCode.VALIDATION, "Expected name and args[]")
        name = name.strip().lstrip("/").lower()
        handler = self._handlers.get(name)
        if handler is None:
            raise ChatError(ErrorCode.VALIDATION, f"Unknown command: {name}")

        room = await self.relay.current_room(conn)
        if name in self._owner_only:
            allowed = self.sessions.can_own(room, conn.identity)
        else:
            allowed = self.sessions.can_moderate(room, conn.identity)
        if not allowed:
            logger.info(f"[Commands] {conn.identity} not allowed to /{name} in {room.roomId}")
            raise ChatError(ErrorCode.FORBIDDEN)

        result = await handler(conn, room, [str(arg) for arg in args])
        logger.info(f"[Commands] {conn.identity} ran /{name} in {room.roomId}")
        return result

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _changed(self, room: Room) -> dict:
        await self.sessions.broadcast_room_metadata(room)
        return {"ok": True}

    @staticmethod
    def _target_name(args: List[str]) -> str:
        if not args or not is_valid_username(args[0].lstrip("@")):
            raise ChatError(ErrorCode.VALIDATION, "Expected a user name")
        return args[0].lstrip("@")

    @staticmethod
    def _target_message(args: List[str]) -> str:
        if not args or not args[0]:
            raise ChatError(ErrorCode.VALIDATION, "Expected a message id")
        return args[0]

    def _settings_changed(self, conn: Connection, room: Room, **meta) -> None:
        self.sessions.audit(AuditAction.ROOM_SETTINGS, room.roomId, conn.identity, **meta)

    # =========================================================================
    # Room settings
    # =========================================================================

    async def _topic(self, conn: Connection, room: Room, args: List[str]) -> dict:
        topic = " ".join(args).strip()[:MAX_TOPIC_LENGTH]
        room = await self.rooms.set_fields(room.roomId, topic=topic)
        self._settings_changed(conn, room, topic=topic)
        return await self._changed(room)

    async def _rules(self, conn: Connection, room: Room, args: List[str]) -> dict:
        rules = " ".join(args).strip()[:MAX_RULES_LENGTH]
        room = await self.rooms.set_fields(room.roomId, rules=rules)
        self._settings_changed(conn, room, rules=rules)
        return await self._changed(room)

    async def _slow(self, conn: Connection, room: Room, args: List[str]) -> dict:
        try:
            seconds = int(args[0])
        except (IndexError, ValueError):
            raise ChatError(ErrorCode.VALIDATION, "Expected seconds") from None
        if not 0 <= seconds <= MAX_SLOW_MODE_SECONDS:
            raise ChatError(ErrorCode.VALIDATION, f"Slow mode must be 0-{MAX_SLOW_MODE_SECONDS}s")
        room = await self.rooms.set_fields(room.roomId, slowModeSec=seconds)
        self._settings_changed(conn, room, slowModeSec=seconds)
        self.sessions.broadcast(room.roomId, "slowModeChanged", {"roomId": room.roomId, "seconds": seconds})
        return await self._changed(room)

    async def _theme(self, conn: Connection, room: Room, args: List[str]) -> dict:
        mode = args[0].lower() if args else ""
        if mode not in ("light", "dark"):
            raise ChatError(ErrorCode.VALIDATION, "Theme must be light or dark")
        accent = room.theme.accent
        if len(args) > 1:
            if not ACCENT_RE.match(args[1]):
                raise ChatError(ErrorCode.VALIDATION, "Accent must be #rrggbb")
            accent = args[1].lower()
        theme = Theme(mode=mode, accent=accent)
        room = await self.rooms.set_fields(room.roomId, theme=theme)
        self._settings_changed(conn, room, theme=theme.model_dump())
        return await self._changed(room)

    async def _announce(self, conn: Connection, room: Room, args: List[str]) -> dict:
        text = " ".join(args).strip()[:MAX_ANNOUNCEMENT_LENGTH]
        if not text:
            raise ChatError(ErrorCode.VALIDATION, "Announcement text is required")
        room = await self.rooms.announce(room.roomId, text, self.max_announcements)
        self.sessions.audit(AuditAction.ROOM_ANNOUNCE, room.roomId, conn.identity, text=text)
        return await self._changed(room)

    # =========================================================================
    # Pins
    # =========================================================================

    async def _pin(self, conn: Connection, room: Room, args: List[str]) -> dict:
        message_id = self._target_message(args)
        await self.store.get_in_room(room.roomId, message_id)
        room = await self.rooms.pin(room.roomId, message_id, self.max_pins)
        self.sessions.audit(AuditAction.PIN, room.roomId, conn.identity, target=message_id)
        return await self._changed(room)

    async def _unpin(self, conn: Connection, room: Room, args: List[str]) -> dict:
        message_id = self._target_message(args)
        room = await self.rooms.unpin(room.roomId, message_id)
        self.sessions.audit(AuditAction.UNPIN, room.roomId, conn.identity, target=message_id)
        return await self._changed(room)

    # =========================================================================
    # Membership
    # =========================================================================

    async def _ban(self, conn: Connection, room: Room, args: List[str]) -> dict:
        target = self._target_name(args)
        if room.is_owner(target) or self.sessions.is_admin(target):
            raise ChatError(ErrorCode.FORBIDDEN, "Cannot ban the room owner")
        if room.is_moderator(target) and not self.sessions.can_own(room, conn.identity):
            raise ChatError(ErrorCode.FORBIDDEN)
        await self.rooms.remove_from(room.roomId, "members", target)
        await self.rooms.remove_from(room.roomId, "mods", target)
        room = await self.rooms.add_to(room.roomId, "banned", target)
        dropped = self.sessions.drop_identity(room.roomId, target, "banned")
        self.sessions.audit(AuditAction.BAN, room.roomId, conn.identity, target=target)
        result = await self._changed(room)
        return {**result, "dropped": dropped}

    async def _unban(self, conn: Connection, room: Room, args: List[str]) -> dict:
        target = self._target_name(args)
        room = await self.rooms.remove_from(room.roomId, "banned", target)
        self.sessions.audit(AuditAction.UNBAN, room.roomId, conn.identity, target=target)
        return await self._changed(room)

    async def _kick(self, conn: Connection, room: Room, args: List[str]) -> dict:
        target = self._target_name(args)
        if room.is_owner(target) or self.sessions.is_admin(target):
            raise ChatError(ErrorCode.FORBIDDEN, "Cannot kick the room owner")
        dropped = self.sessions.drop_identity(room.roomId, target, "kicked")
        self.sessions.audit(AuditAction.KICK, room.roomId, conn.identity, target=target)
        return {"ok": True, "dropped": dropped}

    async def _mod(self, conn: Connection, room: Room, args: List[str]) -> dict:
        target = self._target_name(args)
        if room.is_banned(target):
            raise ChatError(ErrorCode.CONFLICT, "User is banned")
        room = await self.rooms.add_to(room.roomId, "mods", target)
        self.sessions.audit(AuditAction.MOD_ADD, room.roomId, conn.identity, target=target)
        return await self._changed(room)

    async def _unmod(self, conn: Connection, room: Room, args: List[str]) -> dict:
        target = self._target_name(args)
        room = await self.rooms.remove_from(room.roomId, "mods", target)
        self.sessions.audit(AuditAction.MOD_REMOVE, room.roomId, conn.identity, target=target)
        return await self._changed(room)

    # =========================================================================
    # Links
    # =========================================================================

    async def _invite(self, conn: Connection, room: Room, args: List[str]) -> dict:
        ttl_minutes = self.invite_ttl_minutes
        numeric = [arg for arg in args if arg.isdigit()]
        if numeric:
            ttl_minutes = int(numeric[0])
            if not 1 <= ttl_minutes <= MAX_INVITE_TTL_MINUTES:
                raise ChatError(ErrorCode.VALIDATION, f"TTL must be 1-{MAX_INVITE_TTL_MINUTES} minutes")
        single_use = "multi" not in (arg.lower() for arg in args)
        invite = await self.rooms.create_invite(
            room.roomId, conn.identity, ttl_minutes=ttl_minutes, single_use=single_use
        )
        self.sessions.audit(
            AuditAction.INVITE_CREATE, room.roomId, conn.identity,
            ttlMinutes=ttl_minutes, singleUse=single_use,
        )
        return {
            "ok": True,
            "token": invite.token,
            "url": f"/?room={room.roomId}&invite={invite.token}",
            "expiresAt": invite.expiresAt,
            "singleUse": invite.singleUse,
        }

    async def _export(self, conn: Connection, room: Room, args: List[str]) -> dict:
        self.sessions.audit(AuditAction.EXPORT, room.roomId, conn.identity)
        return {"ok": True, "url": f"/chat/{room.roomId}/export"}
