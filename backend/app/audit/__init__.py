"""Audit log module for tracking moderation actions."""

from .schemas import AuditAction, AuditLogCreate, AuditLogEntry
from .service import AuditLogService

__all__ = [
    "AuditAction",
    "AuditLogCreate",
    "AuditLogEntry",
    "AuditLogService",
]
