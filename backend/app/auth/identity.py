"""Identity and last-room resolution for incoming connections.

Authentication itself happens upstream (a reverse proxy or login service).
By the time a request reaches the chat core it carries an already
authenticated display name, either in the ``X-Chat-User`` header or, for
browser WebSockets that cannot set headers, the ``username`` query
parameter. The last room a client was in travels in the ``rid`` cookie
(or the ``room`` query parameter).
"""
import re
from typing import Optional

from starlette.requests import HTTPConnection

IDENTITY_HEADER = "x-chat-user"
LAST_ROOM_COOKIE = "rid"

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{2,32}$")


def is_valid_username(value: Optional[str]) -> bool:
    return bool(value) and USERNAME_RE.match(value) is not None


def resolve_identity(conn: HTTPConnection) -> Optional[str]:
    """Return the caller's display name, or None if absent or malformed."""
    candidate = conn.headers.get(IDENTITY_HEADER) or conn.query_params.get("username")
    if candidate is None:
        return None
    candidate = candidate.strip()
    return candidate if is_valid_username(candidate) else None


def resolve_last_room(conn: HTTPConnection) -> Optional[str]:
    """Last-known room id supplied by the session side channel, if any."""
    room = conn.cookies.get(LAST_ROOM_COOKIE) or conn.query_params.get("room")
    if not room:
        return None
    return room.strip() or None
