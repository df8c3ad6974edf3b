"""Pydantic schemas for the moderation audit log.

Every privileged action taken in a room (creating it, banning, pinning,
changing its settings, ...) is recorded for accountability.

These schemas are used by:
    - GET /audit/logs: Retrieve audit history
    - AuditLogService: DuckDB storage layer
    - RoomSessionManager / slash commands: create entries
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    """Kind of moderation action recorded."""
    ROOM_CREATE = "room.create"
    ROOM_SETTINGS = "room.settings"
    ROOM_ANNOUNCE = "room.announce"
    MESSAGE_DELETE = "message.delete"
    PIN = "pin"
    UNPIN = "unpin"
    BAN = "ban"
    UNBAN = "unban"
    KICK = "kick"
    MOD_ADD = "mod.add"
    MOD_REMOVE = "mod.remove"
    INVITE_CREATE = "invite.create"
    EXPORT = "export"


class AuditLogEntry(BaseModel):
    """A single audit log entry.

    Attributes:
        type: The action performed.
        room_id: Room the action applies to.
        actor: Identity who performed it.
        target: Affected identity or message id, if any.
        meta: Action-specific details (new topic, ttl, ...).
        timestamp: When it happened (UTC).
    """
    type: AuditAction = Field(..., description="Action performed")
    room_id: str = Field(..., description="Room identifier")
    actor: str = Field(..., description="Identity who acted")
    target: Optional[str] = Field(None, description="Affected identity or message")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Action details")
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When it happened (UTC)"
    )


class AuditLogCreate(BaseModel):
    """Input schema for a new audit entry. The timestamp is set by the service."""
    type: AuditAction = Field(..., description="Action performed")
    room_id: str = Field(..., min_length=1, description="Room identifier")
    actor: str = Field(..., min_length=1, description="Identity who acted")
    target: Optional[str] = Field(None, description="Affected identity or message")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Action details")
