"""Opaque cursor over the ordered message log.

A cursor marks the oldest message of the page a client already has; the
next request returns everything strictly older under ``(ts, id)`` ordering.

Format: urlsafe base64 of ``"<repr(ts)>|<id>"``. ``repr`` of a float
round-trips exactly, so decoding never shifts the position.
"""
import base64
import binascii
import math
import re
from typing import NamedTuple, Optional

from .schemas import ChatMessage

# Message ids are lowercase hex (see MessageStore.new_id)
_ID_RE = re.compile(r"^[0-9a-f]{1,64}$")


class Cursor(NamedTuple):
    ts: float
    id: str


def encode_cursor(cursor: Cursor) -> str:
    raw = f"{cursor.ts!r}|{cursor.id}".encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(token: Optional[str]) -> Optional[Cursor]:
    """Decode a cursor token.

    Malformed input is treated as "no cursor" (start from the newest
    message) and returns None instead of raising.
    """
    if not token:
        return None
    try:
        padded = token + "=" * (-len(token) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    ts_part, sep, id_part = raw.partition("|")
    if not sep or not _ID_RE.match(id_part):
        return None
    try:
        ts = float(ts_part)
    except ValueError:
        return None
    if not math.isfinite(ts):
        return None
    return Cursor(ts, id_part)


def cursor_for(message: ChatMessage) -> Cursor:
    return Cursor(message.ts, message.id)


def next_cursor(page_oldest_first: list) -> Optional[str]:
    """Cursor for the page after ``page_oldest_first``; None when it is empty."""
    if not page_oldest_first:
        return None
    return encode_cursor(cursor_for(page_oldest_first[0]))
