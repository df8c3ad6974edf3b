"""Audit logging API endpoints.

Endpoints:
    GET /audit/logs: Retrieve moderation audit entries for a room

Access:
    Only the room owner, its moderators and configured admins may read a
    room's audit log. The caller is identified like every other chat
    request (X-Chat-User header or ``username`` query parameter).

Data Storage:
    Audit logs are stored in a local DuckDB database (audit_logs.duckdb).
"""
from typing import List

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from app.auth.identity import resolve_identity
from app.chat.errors import ChatError, ErrorCode
from app.chat.rooms import normalize_room_id

from .schemas import AuditLogEntry

router = APIRouter(prefix="/audit", tags=["audit"])


class GetLogsResponse(BaseModel):
    """Response from the get-logs endpoint.

    Attributes:
        logs: List of audit log entries (newest first).
        count: Number of entries returned.
    """
    logs: List[AuditLogEntry] = Field(..., description="Log entries")
    count: int = Field(..., description="Number of entries")


@router.get("/logs", response_model=GetLogsResponse)
async def get_logs(
    request: Request,
    room_id: str = Query(..., min_length=1, description="Room to read"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum entries"),
) -> GetLogsResponse:
    """Retrieve a room's audit entries in reverse chronological order.

    Args:
        room_id: Room to read the audit log of.
        limit: Maximum entries to return (default 100, max 1000).

    Returns:
        GetLogsResponse with list of audit entries and count.
    """
    chat = request.app.state.chat
    room_id = normalize_room_id(room_id)
    identity = resolve_identity(request)
    room = await chat.rooms.get(room_id)
    if room is None:
        raise ChatError(ErrorCode.NOT_FOUND, "Room not found")
    if not identity or not chat.sessions.can_moderate(room, identity):
        raise ChatError(ErrorCode.FORBIDDEN)

    if chat.audit_log is None:
        return GetLogsResponse(logs=[], count=0)
    logs = chat.audit_log.get_logs(room_id=room_id, limit=limit)
    return GetLogsResponse(logs=logs, count=len(logs))
