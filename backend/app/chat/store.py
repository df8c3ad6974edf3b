"""DuckDB-backed message store.

An append-only, ordered log of messages per room with point lookup,
reverse-chronological range scans, in-place field updates and keyword search.

Database Schema:
    messages table:
        - id: Message id (fixed-width lowercase hex, creation ordered)
        - room_id: Room the message belongs to (immutable)
        - ts: Creation timestamp, seconds since epoch (immutable)
        - parent_id: Id of the replied-to message, if any
        - body: Lowercased searchable text
        - payload: Full ChatMessage as JSON

Ordering:
    The sort key is the pair ``(ts, id)``, fixed at append time. Range scans
    compare lexicographically on that pair, so messages appended during a
    scan can never make an earlier page repeat or skip an entry.

Concurrency:
    The DuckDB connection is used from the event loop thread only. Updates
    to one message are serialized through a per-id asyncio lock, and every
    read-modify-write runs without yielding in between.
"""
import asyncio
import itertools
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

import duckdb

from .cursor import Cursor, decode_cursor, next_cursor
from .errors import ChatError, ErrorCode
from .schemas import ChatMessage, HistoryPage

logger = logging.getLogger(__name__)

# Mutator applied by MessageStore.update; may raise ChatError to abort
Mutator = Callable[[ChatMessage], None]


class MessageStore:
    """Durable message log for all rooms.

    Args:
        connection: An open DuckDB connection (file-backed or ``:memory:``).
        clock: Time source used to stamp new messages.
    """

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connection = connection
        self._clock = clock
        self._sequence = itertools.count()
        # message id -> [lock, holders]
        self._locks: Dict[str, list] = {}
        self._initialize_db()

    def _initialize_db(self) -> None:
        """Create the messages table if it doesn't exist (idempotent)."""
        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id VARCHAR PRIMARY KEY,
                room_id VARCHAR NOT NULL,
                ts DOUBLE NOT NULL,
                parent_id VARCHAR,
                body VARCHAR NOT NULL,
                payload VARCHAR NOT NULL
            )
        """)
        self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_room_id ON messages(room_id)
        """)

    def new_id(self, ts: float) -> str:
        """Creation-ordered id: 12 hex digits of epoch millis + 8 of sequence."""
        millis = int(ts * 1000) & 0xFFFFFFFFFFFF
        return f"{millis:012x}{next(self._sequence) & 0xFFFFFFFF:08x}"

    @staticmethod
    def _load(payload: str) -> ChatMessage:
        return ChatMessage.model_validate_json(payload)

    def _write(self, message: ChatMessage) -> None:
        self._connection.execute(
            "UPDATE messages SET body = ?, payload = ? WHERE id = ?",
            [message.searchable_text().lower(), message.model_dump_json(), message.id],
        )

    # -------------------------------------------------------------------------
    # Append / lookup
    # -------------------------------------------------------------------------

    async def append(self, message: ChatMessage) -> ChatMessage:
        """Persist a new message, assigning ``ts`` (if unset) and ``id``."""
        if not message.ts:
            message.ts = self._clock()
        if not message.id:
            message.id = self.new_id(message.ts)
        self._connection.execute(
            """
            INSERT INTO messages (id, room_id, ts, parent_id, body, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                message.id,
                message.roomId,
                message.ts,
                message.parent.id if message.parent else None,
                message.searchable_text().lower(),
                message.model_dump_json(),
            ],
        )
        logger.debug(f"[Store] Appended {message.id} to room {message.roomId}")
        return message

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        row = self._connection.execute(
            "SELECT payload FROM messages WHERE id = ?", [message_id]
        ).fetchone()
        return self._load(row[0]) if row else None

    async def get_in_room(self, room_id: str, message_id: str) -> ChatMessage:
        """Fetch a message that must belong to ``room_id``.

        Raises:
            ChatError: NOT_FOUND if absent or in another room.
        """
        message = await self.get(message_id) if message_id else None
        if message is None or message.roomId != room_id:
            raise ChatError(ErrorCode.NOT_FOUND, "Message not found")
        return message

    async def get_many(self, message_ids: List[str]) -> List[ChatMessage]:
        """Fetch messages in the given order, silently skipping missing ids."""
        if not message_ids:
            return []
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._connection.execute(
            f"SELECT id, payload FROM messages WHERE id IN ({placeholders})",
            list(message_ids),
        ).fetchall()
        found = {row[0]: self._load(row[1]) for row in rows}
        return [found[mid] for mid in message_ids if mid in found]

    # -------------------------------------------------------------------------
    # Range queries
    # -------------------------------------------------------------------------

    async def range_before(
        self, room_id: str, cursor: Optional[Cursor], limit: int
    ) -> List[ChatMessage]:
        """Up to ``limit`` messages older than ``cursor``, oldest-first.

        Without a cursor the newest messages are returned.
        """
        if limit <= 0:
            return []
        if cursor is None:
            rows = self._connection.execute(
                """
                SELECT payload FROM messages
                WHERE room_id = ?
                ORDER BY ts DESC, id DESC
                LIMIT ?
                """,
                [room_id, limit],
            ).fetchall()
        else:
            rows = self._connection.execute(
                """
                SELECT payload FROM messages
                WHERE room_id = ?
                  AND (ts < ? OR (ts = ? AND id < ?))
                ORDER BY ts DESC, id DESC
                LIMIT ?
                """,
                [room_id, cursor.ts, cursor.ts, cursor.id, limit],
            ).fetchall()
        newest_first = [self._load(row[0]) for row in rows]
        newest_first.reverse()
        return newest_first

    async def history_page(
        self, room_id: str, cursor_token: Optional[str], limit: int
    ) -> HistoryPage:
        """One page of history for an opaque cursor token.

        A malformed token is treated as no cursor.
        """
        items = await self.range_before(room_id, decode_cursor(cursor_token), limit)
        return HistoryPage(items=items, nextCursor=next_cursor(items))

    async def all_for_room(self, room_id: str) -> List[ChatMessage]:
        rows = self._connection.execute(
            "SELECT payload FROM messages WHERE room_id = ? ORDER BY ts, id",
            [room_id],
        ).fetchall()
        return [self._load(row[0]) for row in rows]

    async def count(self, room_id: str) -> int:
        row = self._connection.execute(
            "SELECT COUNT(*) FROM messages WHERE room_id = ?", [room_id]
        ).fetchone()
        return int(row[0])

    async def search(self, room_id: str, query: str, limit: int) -> List[ChatMessage]:
        """Keyword search, newest-first. Every whitespace-separated term must match."""
        terms = [term for term in query.lower().split() if term]
        if not terms or limit <= 0:
            return []
        clauses = " AND ".join("contains(body, ?)" for _ in terms)
        rows = self._connection.execute(
            f"""
            SELECT payload FROM messages
            WHERE room_id = ? AND {clauses}
            ORDER BY ts DESC, id DESC
            LIMIT ?
            """,
            [room_id, *terms, limit],
        ).fetchall()
        return [self._load(row[0]) for row in rows]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, message_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(message_id)
        if entry is None:
            entry = self._locks[message_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(message_id, None)

    async def update(self, message_id: str, mutator: Mutator) -> ChatMessage:
        """Apply ``mutator`` to the stored message and persist the result.

        If the mutator raises, nothing is written.

        Raises:
            ChatError: NOT_FOUND if the message does not exist, or whatever
                the mutator raises.
        """
        async with self._serialized(message_id):
            message = await self.get(message_id)
            if message is None:
                raise ChatError(ErrorCode.NOT_FOUND, "Message not found")
            room_id, ts = message.roomId, message.ts
            mutator(message)
            # room reference and sort key are immutable
            message.roomId, message.ts, message.id = room_id, ts, message_id
            self._write(message)
            return message

    async def delete(self, message_id: str) -> bool:
        async with self._serialized(message_id):
            row = self._connection.execute(
                "DELETE FROM messages WHERE id = ? RETURNING id", [message_id]
            ).fetchall()
        return bool(row)

    async def mark_seen_up_to(self, room_id: str, cursor: Cursor, identity: str) -> int:
        """Add ``identity`` to seenBy of every message with key <= ``cursor``.

        Returns the number of messages that changed.
        """
        rows = self._connection.execute(
            """
            SELECT payload FROM messages
            WHERE room_id = ?
              AND (ts < ? OR (ts = ? AND id <= ?))
            """,
            [room_id, cursor.ts, cursor.ts, cursor.id],
        ).fetchall()
        changed = []
        for (payload,) in rows:
            message = self._load(payload)
            if message.mark_seen(identity):
                changed.append([message.model_dump_json(), message.id])
        if changed:
            self._connection.executemany(
                "UPDATE messages SET payload = ? WHERE id = ?", changed
            )
        return len(changed)

    async def _children(self, parent_id: str) -> List[ChatMessage]:
        rows = self._connection.execute(
            "SELECT payload FROM messages WHERE parent_id = ?", [parent_id]
        ).fetchall()
        return [self._load(row[0]) for row in rows]

    async def refresh_parent_snapshots(self, parent: ChatMessage) -> int:
        """Best-effort: copy the parent's new text into replies' snapshots."""
        children = await self._children(parent.id)
        for child in children:
            if child.parent is not None:
                child.parent.text = parent.text
                self._write(child)
        return len(children)

    async def mark_parent_deleted(self, parent_id: str) -> int:
        """Best-effort: mark replies' snapshots of a deleted parent."""
        children = await self._children(parent_id)
        for child in children:
            if child.parent is not None:
                child.parent.deleted = True
                child.parent.text = None
                self._write(child)
        return len(children)
