"""Chat router providing WebSocket and HTTP endpoints.

This module provides:
    - WebSocket /ws/chat: Real-time chat session
    - GET /chat/{room_id}/history: Cursor-paginated message history
    - GET /chat/{room_id}/search: Keyword search
    - GET /chat/{room_id}/export: Full room export (owner/moderators)

Protocol Frames:
    Client -> server: {"type": <event>, "ref": <any>, "data": {...}}
    Server -> client ack: {"type": "ack", "ref": <ref>, "data": <result>}
    Server -> client push: {"type": <event>, "data": {...}}

Client Events:
    - joinGlobalRoom, createRoom, joinRoom, leaveRoom
    - sendMessage, editMessage, deleteMessage, reactToMessage, markSeenUpTo
    - createPoll, votePoll, closePoll
    - slashCommand
    - setTyping (fire-and-forget, never acknowledged)

Every command event is acknowledged with {ok: bool, error?: code, ...};
failures never escape as unstructured exceptions.
"""
import asyncio
import json
import logging
from typing import Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Query, Request, WebSocket, WebSocketDisconnect

from app.auth.identity import resolve_identity, resolve_last_room

from .connection import Connection
from .errors import ChatError, ErrorCode
from .rooms import normalize_room_id
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()

EventHandler = Callable[[ChatService, Connection, dict], Awaitable[dict]]


async def _leave_room(chat: ChatService, conn: Connection, data: dict) -> dict:
    return chat.sessions.leave_room(conn)


# Command events: each resolves to a result dict sent back as an ack
EVENT_HANDLERS: Dict[str, EventHandler] = {
    "joinGlobalRoom": lambda chat, conn, data: chat.sessions.join_global(conn),
    "createRoom": lambda chat, conn, data: chat.sessions.create_room(
        conn, data.get("roomId"), data.get("secret")
    ),
    "joinRoom": lambda chat, conn, data: chat.sessions.join_room(
        conn, data.get("roomId"), secret=data.get("secret"), invite=data.get("invite")
    ),
    "leaveRoom": _leave_room,
    "sendMessage": lambda chat, conn, data: chat.relay.send(conn, data),
    "editMessage": lambda chat, conn, data: chat.relay.edit(conn, data),
    "deleteMessage": lambda chat, conn, data: chat.relay.delete(conn, data),
    "reactToMessage": lambda chat, conn, data: chat.relay.react(conn, data),
    "markSeenUpTo": lambda chat, conn, data: chat.relay.mark_seen_up_to(conn, data),
    "createPoll": lambda chat, conn, data: chat.relay.create_poll(conn, data),
    "votePoll": lambda chat, conn, data: chat.relay.vote_poll(conn, data),
    "closePoll": lambda chat, conn, data: chat.relay.close_poll(conn, data),
    "slashCommand": lambda chat, conn, data: chat.commands.execute(conn, data),
}


async def handle_event(chat: ChatService, conn: Connection, frame: dict) -> Optional[dict]:
    """Run one client event and normalise its outcome.

    Returns:
        The result to acknowledge, or None for fire-and-forget notices.
    """
    event = frame.get("type")
    data = frame.get("data")
    if data is None:
        data = {}

    if event == "setTyping":
        if isinstance(data, dict):
            chat.relay.set_typing(conn, data)
        return None

    try:
        handler = EVENT_HANDLERS.get(event) if isinstance(event, str) else None
        if handler is None:
            raise ChatError(ErrorCode.VALIDATION, f"Unknown event: {event}")
        if not isinstance(data, dict):
            raise ChatError(ErrorCode.VALIDATION, "Event data must be an object")
        return await handler(chat, conn, data)
    except ChatError as e:
        logger.info(f"[WS] {event} from {conn.identity} rejected: {e.code.value}")
        return e.to_result()
    except Exception:
        logger.exception(f"[WS] {event} from {conn.identity} failed")
        return ChatError(ErrorCode.INTERNAL).to_result()


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for a chat session.

    Protocol Flow:
        1. Identity resolved from the X-Chat-User header or ?username=
           (closed with 1008 when missing)
        2. Server sends connectionStateChanged {state: "connected"}, then
           resumes the last room (rid cookie / ?room=) or joins global
           -> historyPage, roomMetadata, presenceCount, presenceNames
        3. Client sends command frames, each answered by an ack
        4. On disconnect the connection leaves its room and presence is
           re-broadcast
    """
    chat: ChatService = websocket.app.state.chat
    identity = resolve_identity(websocket)
    if identity is None:
        logger.warning("[WS] Rejecting connection without a valid identity")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    conn = Connection(identity, websocket, send_queue_size=chat.config.server.send_queue_size)
    writer = asyncio.create_task(conn.pump())
    logger.info(f"[WS] Connection accepted for {identity} ({conn.id})")

    try:
        await chat.sessions.connect(conn, resolve_last_room(websocket))

        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                frame = None
            if not isinstance(frame, dict):
                conn.ack(None, ChatError(ErrorCode.VALIDATION, "Malformed frame").to_result())
                continue
            logger.debug("[WS] %s received: type=%s", conn.identity, frame.get("type", "?"))
            result = await handle_event(chat, conn, frame)
            if result is not None:
                conn.ack(frame.get("ref"), result)

    except WebSocketDisconnect:
        logger.info(f"[WS] {identity} disconnected ({conn.id})")
    finally:
        await chat.sessions.disconnect(conn)
        await writer


# =============================================================================
# HTTP endpoints
# =============================================================================


def _chat(request: Request) -> ChatService:
    return request.app.state.chat


@router.get("/chat/{room_id}/history")
async def get_message_history(
    request: Request,
    room_id: str,
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
    cursor: Optional[str] = Query(None, description="Opaque cursor from a previous page"),
) -> dict:
    """Get one page of history, oldest-first.

    Pass the ``nextCursor`` of a page to get the page before it. An empty
    page has a null ``nextCursor``. A malformed cursor starts from the
    newest message.

    Example:
        GET /chat/global/history?limit=50
        GET /chat/global/history?limit=50&cursor=MTcwNzMyMTYwMC4xMjN8...
    """
    chat = _chat(request)
    room_id = normalize_room_id(room_id)
    await chat.sessions.authorize_read(room_id, resolve_identity(request))
    history = chat.config.history
    limit = min(limit or history.page_size, history.max_page_size)
    page = await chat.store.history_page(room_id, cursor, limit)
    return page.model_dump(mode="json")


@router.get("/chat/{room_id}/search")
async def search_messages(
    request: Request,
    room_id: str,
    q: str = Query(..., min_length=1, description="Whitespace-separated keywords"),
    limit: Optional[int] = Query(None, ge=1, description="Maximum number of results"),
) -> dict:
    """Keyword search over a room's messages, newest-first."""
    chat = _chat(request)
    room_id = normalize_room_id(room_id)
    await chat.sessions.authorize_read(room_id, resolve_identity(request))
    search_limit = chat.config.history.search_limit
    items = await chat.store.search(room_id, q, min(limit or search_limit, search_limit))
    return {"items": [m.model_dump(mode="json") for m in items]}


@router.get("/chat/{room_id}/export")
async def export_room(request: Request, room_id: str) -> dict:
    """Every message of the room, oldest-first. Owner/moderators only."""
    chat = _chat(request)
    room_id = normalize_room_id(room_id)
    identity = resolve_identity(request)
    room = await chat.sessions.authorize_read(room_id, identity)
    if not identity or not chat.sessions.can_moderate(room, identity):
        raise ChatError(ErrorCode.FORBIDDEN)
    items = await chat.store.all_for_room(room_id)
    logger.info(f"[HTTP] {identity} exported {len(items)} messages from {room_id}")
    return {"roomId": room_id, "items": [m.model_dump(mode="json") for m in items]}
