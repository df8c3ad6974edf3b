"""Message relay: the real-time events of an established session.

Pipeline for a new message:
    1. Require InRoom and re-check the ban set
    2. Validate the payload (text | imageUrl | fileRef | poll)
    3. Rate limit + slow mode (synchronous check-and-commit)
    4. Resolve the parent snapshot, apply the word filter, fetch a link preview
    5. Under the room lock: append to the store, broadcast, notify mentions

Mutations (edit, delete, react, vote, close) are applied through
``MessageStore.update`` and broadcast as patch events only after the store
write has completed. Every rejection is a ``ChatError`` delivered to the
acting connection only.
"""
import logging
import re
import time
from typing import Any, Callable, Optional, Set

from pydantic import ValidationError

from app.audit.schemas import AuditAction

from .connection import Connection
from .content_filter import ContentFilter
from .cursor import cursor_for
from .errors import ChatError, ErrorCode
from .governor import RateGovernor
from .link_preview import LinkPreviewFetcher
from .manager import RoomSessionManager
from .schemas import ChatMessage, EditRecord, FileRef, MessageType, Poll, PollOption, Room

logger = logging.getLogger(__name__)

MENTION_RE = re.compile(r"(?:^|\s)@([A-Za-z0-9_]+)\b")
IMAGE_URL_RE = re.compile(r"^(https?://|/)\S+$")

MIN_POLL_OPTIONS = 2
MAX_POLL_OPTIONS = 10
MAX_EMOJI_LENGTH = 32
MAX_URL_LENGTH = 2048


def extract_mentions(text: Optional[str]) -> Set[str]:
    """Distinct names @mentioned in ``text``."""
    if not text:
        return set()
    return set(MENTION_RE.findall(text))


class MessageRelay:
    """Handles message events for connections managed by ``sessions``."""

    def __init__(
        self,
        sessions: RoomSessionManager,
        governor: RateGovernor,
        content_filter: ContentFilter,
        previews: LinkPreviewFetcher,
        max_text_length: int = 4000,
        max_poll_question: int = 300,
        max_poll_option: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.sessions = sessions
        self.store = sessions.store
        self.rooms = sessions.rooms
        self.governor = governor
        self.content_filter = content_filter
        self.previews = previews
        self.max_text_length = max_text_length
        self.max_poll_question = max_poll_question
        self.max_poll_option = max_poll_option
        self._clock = clock

    # =========================================================================
    # Helpers
    # =========================================================================

    async def current_room(self, conn: Connection) -> Room:
        """The room the connection is in, re-checking the ban set.

        Raises:
            ChatError: VALIDATION when Unjoined, BANNED if banned meanwhile.
        """
        if conn.room_id is None:
            raise ChatError(ErrorCode.VALIDATION, "Not in a room")
        room = await self.rooms.require(conn.room_id)
        if room.is_banned(conn.identity):
            self.sessions.drop_identity(room.roomId, conn.identity, "banned")
            raise ChatError(ErrorCode.BANNED)
        return room

    @staticmethod
    def _required_text(value: Any, limit: int, field: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ChatError(ErrorCode.VALIDATION, f"{field} is required")
        return value[:limit]

    @staticmethod
    def _message_id(data: dict) -> str:
        message_id = data.get("id")
        if not isinstance(message_id, str) or not message_id:
            raise ChatError(ErrorCode.VALIDATION, "Message id is required")
        return message_id

    def _build_message(self, room: Room, conn: Connection, data: dict) -> ChatMessage:
        """Validate a send payload into an unsaved ChatMessage."""
        variants = [key for key in ("text", "imageUrl", "fileRef") if data.get(key) is not None]
        if len(variants) != 1:
            raise ChatError(ErrorCode.VALIDATION, "Exactly one of text, imageUrl or fileRef")
        base = {"roomId": room.roomId, "username": conn.identity}

        if variants[0] == "text":
            text = self._required_text(data["text"], self.max_text_length, "Text")
            return ChatMessage(type=MessageType.TEXT, text=text, **base)

        if variants[0] == "imageUrl":
            url = data["imageUrl"]
            if not isinstance(url, str) or len(url) > MAX_URL_LENGTH or not IMAGE_URL_RE.match(url):
                raise ChatError(ErrorCode.VALIDATION, "Invalid image URL")
            return ChatMessage(type=MessageType.IMAGE, imageUrl=url, **base)

        try:
            file_ref = FileRef.model_validate(data["fileRef"])
        except ValidationError:
            raise ChatError(ErrorCode.VALIDATION, "Invalid file reference") from None
        return ChatMessage(type=MessageType.FILE, file=file_ref, **base)

    async def _publish(self, conn: Connection, room_id: str, message: ChatMessage) -> ChatMessage:
        """Append and broadcast under the room lock (append order == broadcast order)."""
        async with self.sessions.room_lock(room_id):
            if conn.room_id != room_id:
                raise ChatError(ErrorCode.VALIDATION, "Not in a room")
            room = await self.rooms.require(room_id)
            if room.is_banned(conn.identity):
                raise ChatError(ErrorCode.BANNED)
            await self.store.append(message)
            self.sessions.broadcast(room_id, "newMessage", message.model_dump(mode="json"))
            self._notify_mentions(room_id, message)
        return message

    def _notify_mentions(self, room_id: str, message: ChatMessage) -> int:
        """Send one mentionNotification per connection of each mentioned name."""
        targets: Set[str] = set()
        for name in extract_mentions(message.text):
            targets |= self.sessions.presence.sockets_for(room_id, name)
        if not targets:
            return 0
        return self.sessions.send_to(
            sorted(targets),
            "mentionNotification",
            {
                "from": message.username,
                "text": message.text,
                "messageId": message.id,
                "roomId": room_id,
            },
        )

    def _edit_patch(self, message: ChatMessage) -> dict:
        return {
            "id": message.id,
            "roomId": message.roomId,
            "text": message.text,
            "editedAt": message.editedAt,
            "linkPreview": message.linkPreview.model_dump() if message.linkPreview else None,
            "flagged": message.flagged,
            "reactions": message.reactions,
            "seenBy": message.seenBy,
        }

    # =========================================================================
    # Events
    # =========================================================================

    async def send(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        message = self._build_message(room, conn, data)
        self.governor.admit(room.roomId, conn.identity, room.slowModeSec)

        parent_id = data.get("parentId")
        if parent_id:
            parent = await self.store.get(str(parent_id))
            if parent is not None and parent.roomId == room.roomId:
                message.parent = parent.snapshot()

        if message.type == MessageType.TEXT:
            result = self.content_filter.apply(message.text)
            message.text, message.flagged = result.text, result.flagged
            message.linkPreview = await self.previews.preview_for(message.text)

        await self._publish(conn, room.roomId, message)
        logger.info(f"[Relay] {conn.identity} sent {message.type.value} {message.id} to {room.roomId}")
        return {"ok": True, "id": message.id}

    async def edit(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        message_id = self._message_id(data)
        new_text = data.get("newText", data.get("text"))
        new_text = self._required_text(new_text, self.max_text_length, "Text")
        message = await self.store.get_in_room(room.roomId, message_id)
        if message.type != MessageType.TEXT:
            raise ChatError(ErrorCode.VALIDATION, "Only text messages can be edited")
        if message.username != conn.identity:
            raise ChatError(ErrorCode.FORBIDDEN)

        filtered = self.content_filter.apply(new_text)
        preview = await self.previews.preview_for(filtered.text)
        edited_at = self._clock()

        def _apply(msg: ChatMessage) -> None:
            if msg.username != conn.identity:
                raise ChatError(ErrorCode.FORBIDDEN)
            msg.edits.append(EditRecord(text=msg.text or "", editedAt=edited_at))
            msg.text = filtered.text
            msg.flagged = filtered.flagged
            msg.editedAt = edited_at
            msg.linkPreview = preview

        updated = await self.store.update(message_id, _apply)
        await self.store.refresh_parent_snapshots(updated)
        self.sessions.broadcast(room.roomId, "messageEdited", self._edit_patch(updated))
        return {"ok": True}

    async def delete(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        message_id = self._message_id(data)
        message = await self.store.get_in_room(room.roomId, message_id)
        is_author = message.username == conn.identity
        if not is_author and not self.sessions.can_moderate(room, conn.identity):
            raise ChatError(ErrorCode.FORBIDDEN)

        if not await self.store.delete(message_id):
            raise ChatError(ErrorCode.NOT_FOUND, "Message not found")
        await self.store.mark_parent_deleted(message_id)
        if not is_author:
            self.sessions.audit(
                AuditAction.MESSAGE_DELETE, room.roomId, conn.identity,
                target=message_id, author=message.username,
            )
        self.sessions.broadcast(room.roomId, "messageDeleted", {"id": message_id, "roomId": room.roomId})
        return {"ok": True}

    async def react(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        message_id = self._message_id(data)
        emoji = data.get("emoji")
        if not isinstance(emoji, str) or not emoji.strip() or len(emoji) > MAX_EMOJI_LENGTH:
            raise ChatError(ErrorCode.VALIDATION, "Invalid emoji")
        await self.store.get_in_room(room.roomId, message_id)

        added = []
        updated = await self.store.update(
            message_id, lambda msg: added.append(msg.toggle_reaction(emoji, conn.identity))
        )
        self.sessions.broadcast(
            room.roomId, "messageEdited",
            {"id": updated.id, "roomId": room.roomId, "reactions": updated.reactions},
        )
        return {"ok": True, "added": added[0]}

    async def mark_seen_up_to(self, conn: Connection, data: dict) -> dict:
        """Mark every message up to and including ``lastMessageId`` as seen.

        Read receipts are not broadcast; ``seenBy`` is attached on reads.
        """
        room = await self.current_room(conn)
        last_id = data.get("lastMessageId")
        if not isinstance(last_id, str) or not last_id:
            raise ChatError(ErrorCode.VALIDATION, "lastMessageId is required")
        message = await self.store.get_in_room(room.roomId, last_id)
        marked = await self.store.mark_seen_up_to(room.roomId, cursor_for(message), conn.identity)
        return {"ok": True, "marked": marked}

    async def create_poll(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        question = self._required_text(data.get("question"), self.max_poll_question, "Question")
        options = data.get("options")
        if not isinstance(options, list) or not MIN_POLL_OPTIONS <= len(options) <= MAX_POLL_OPTIONS:
            raise ChatError(
                ErrorCode.VALIDATION,
                f"A poll needs {MIN_POLL_OPTIONS} to {MAX_POLL_OPTIONS} options",
            )
        poll = Poll(
            question=self.content_filter.apply(question).text,
            options=[
                PollOption(text=self._required_text(option, self.max_poll_option, "Option"))
                for option in options
            ],
        )
        self.governor.admit(room.roomId, conn.identity, room.slowModeSec)
        message = ChatMessage(
            roomId=room.roomId, username=conn.identity, type=MessageType.POLL, poll=poll
        )
        await self._publish(conn, room.roomId, message)
        return {"ok": True, "id": message.id}

    async def _poll_message(self, room: Room, data: dict) -> ChatMessage:
        message = await self.store.get_in_room(room.roomId, self._message_id(data))
        if message.type != MessageType.POLL or message.poll is None:
            raise ChatError(ErrorCode.NOT_FOUND, "Poll not found")
        return message

    def _broadcast_poll(self, message: ChatMessage) -> None:
        self.sessions.broadcast(
            message.roomId, "pollUpdated",
            {"id": message.id, "roomId": message.roomId, "poll": message.poll.model_dump()},
        )

    async def vote_poll(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        option_index = data.get("optionIndex")
        if isinstance(option_index, bool) or not isinstance(option_index, int):
            raise ChatError(ErrorCode.VALIDATION, "optionIndex must be an integer")
        message = await self._poll_message(room, data)

        updated = await self.store.update(
            message.id, lambda msg: msg.poll.vote(conn.identity, option_index)
        )
        self._broadcast_poll(updated)
        return {"ok": True}

    async def close_poll(self, conn: Connection, data: dict) -> dict:
        room = await self.current_room(conn)
        message = await self._poll_message(room, data)
        if message.username != conn.identity:
            raise ChatError(ErrorCode.FORBIDDEN)

        updated = await self.store.update(message.id, lambda msg: msg.poll.close())
        self._broadcast_poll(updated)
        return {"ok": True}

    def set_typing(self, conn: Connection, data: dict) -> None:
        """Relay a typing notice to everyone else in the room. Fire-and-forget."""
        if conn.room_id is None:
            return
        conn.typing = bool(data.get("isTyping"))
        self.sessions.broadcast(
            conn.room_id, "typingIndicator",
            {"roomId": conn.room_id, "username": conn.identity, "isTyping": conn.typing},
            exclude=conn.id,
        )
