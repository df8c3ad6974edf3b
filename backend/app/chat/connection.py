"""A live client connection and its ordered outbound queue.

Every frame for a client (pushes and acks alike) goes through one
``asyncio.Queue`` drained by a single writer task (``pump``). Enqueueing is
synchronous, so a broadcast to a whole room happens in one event-loop step
and two broadcasts can never interleave on any connection: every client of
a room observes pushes in the order they were enqueued.

The queue is bounded. A client that stops reading is cut off once
``send_queue_size`` frames are pending: later frames are dropped and the
socket is closed with code 1013.
"""
import asyncio
import logging
import uuid
from typing import Any, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

# Sentinel that stops the writer task
_CLOSE = object()

DEFAULT_SEND_QUEUE_SIZE = 1000

# Sent when a client falls too far behind (RFC 6455 "Try Again Later")
SLOW_CONSUMER_CLOSE_CODE = 1013


class Connection:
    """Session state plus outbound queue for one WebSocket.

    Attributes:
        id: Server-assigned connection handle.
        identity: Authenticated display name.
        room_id: Current room, or None while Unjoined.
        typing: Whether the client last announced it is typing.
        closed: True once the connection is Disconnected (terminal).
    """

    def __init__(
        self,
        identity: str,
        websocket: Optional[WebSocket] = None,
        connection_id: Optional[str] = None,
        send_queue_size: int = DEFAULT_SEND_QUEUE_SIZE,
    ) -> None:
        self.id = connection_id or uuid.uuid4().hex
        self.identity = identity
        self.websocket = websocket
        self.room_id: Optional[str] = None
        self.typing = False
        self.closed = False
        self.overflowed = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=send_queue_size)

    @property
    def state(self) -> str:
        if self.closed:
            return "disconnected"
        return "in_room" if self.room_id else "unjoined"

    def send_frame(self, frame: dict) -> None:
        """Queue a raw frame. Frames for a closed connection are dropped."""
        if self.closed:
            return
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(f"[WS] Send queue full for {self.identity} ({self.id}), closing")
            self.overflowed = True
            self._stop(discard_pending=True)

    def push(self, event: str, data: Any) -> None:
        self.send_frame({"type": event, "data": data})

    def ack(self, ref: Any, result: dict) -> None:
        self.send_frame({"type": "ack", "ref": ref, "data": result})

    async def pump(self) -> None:
        """Write queued frames to the socket until closed or a send fails."""
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                if self.overflowed:
                    await self._close_socket()
                return
            try:
                await self.websocket.send_json(frame)
            except Exception as e:
                logger.debug(f"[WS] Failed to send to connection {self.id}: {e}")
                self.closed = True
                return

    async def _close_socket(self) -> None:
        try:
            await self.websocket.close(code=SLOW_CONSUMER_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"[WS] Failed to close connection {self.id}: {e}")

    def _stop(self, discard_pending: bool = False) -> None:
        self.closed = True
        if not discard_pending:
            try:
                self._queue.put_nowait(_CLOSE)
                return
            except asyncio.QueueFull:
                pass
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSE)

    def close(self) -> None:
        """Mark Disconnected and stop the writer task."""
        if self.closed:
            return
        self._stop()


class RecordingConnection(Connection):
    """Connection that records frames instead of writing to a socket.

    Used by in-process clients (tests, tooling) that drive the session
    manager directly.
    """

    def __init__(self, identity: str, connection_id: Optional[str] = None) -> None:
        super().__init__(identity, websocket=None, connection_id=connection_id)
        self.frames: List[dict] = []

    def send_frame(self, frame: dict) -> None:
        if self.closed:
            return
        self.frames.append(frame)

    def events(self, event: Optional[str] = None) -> List[dict]:
        """Recorded pushes, optionally filtered by event type."""
        return [
            frame for frame in self.frames
            if frame["type"] != "ack" and (event is None or frame["type"] == event)
        ]

    def data(self, event: str) -> List[Any]:
        return [frame["data"] for frame in self.events(event)]

    def clear(self) -> None:
        self.frames.clear()

    def close(self) -> None:
        self.closed = True
