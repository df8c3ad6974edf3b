"""DuckDB-based moderation audit log storage.

Database Schema:
    audit_logs table:
        - id: Auto-incrementing primary key
        - type: Action performed (see AuditAction)
        - room_id: Room identifier
        - actor: Identity who performed the action
        - target: Affected identity or message id
        - meta: JSON-encoded action details
        - timestamp: When the action happened (UTC)

Thread Safety:
    The DuckDB connection is NOT thread-safe. It is only used from the
    event loop thread.

Usage:
    service = AuditLogService("audit_logs.duckdb")
    service.record(AuditLogCreate(type=AuditAction.BAN, room_id="priv", ...))
    logs = service.get_logs(room_id="priv")
"""
import json
import logging
from datetime import datetime
from typing import List, Optional

import duckdb

from .schemas import AuditAction, AuditLogCreate, AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLogService:
    """Service for recording and reading moderation audit entries.

    Attributes:
        _db_path: Path to the DuckDB database file (or ``:memory:``).
    """

    _db_path: str = "audit_logs.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the audit log service.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to DuckDB file. Defaults to "audit_logs.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get the DuckDB connection, creating if needed."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the audit_logs table and sequence if they don't exist."""
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS audit_logs_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER DEFAULT nextval('audit_logs_seq') PRIMARY KEY,
                type VARCHAR NOT NULL,
                room_id VARCHAR NOT NULL,
                actor VARCHAR NOT NULL,
                target VARCHAR,
                meta VARCHAR NOT NULL,
                timestamp TIMESTAMP NOT NULL
            )
        """)

    def record(self, entry: AuditLogCreate) -> AuditLogEntry:
        """Append an audit entry.

        Args:
            entry: The audit log entry to create.

        Returns:
            The stored entry with its timestamp.
        """
        timestamp = datetime.utcnow()
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO audit_logs (type, room_id, actor, target, meta, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                entry.type.value,
                entry.room_id,
                entry.actor,
                entry.target,
                json.dumps(entry.meta, sort_keys=True),
                timestamp,
            ]
        )
        return AuditLogEntry(timestamp=timestamp, **entry.model_dump())

    def try_record(self, entry: AuditLogCreate) -> Optional[AuditLogEntry]:
        """Record an entry without ever failing the calling operation."""
        try:
            return self.record(entry)
        except Exception as e:
            logger.error(f"[Audit] Failed to record {entry.type.value} in {entry.room_id}: {e}")
            return None

    def get_logs(
        self,
        room_id: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLogEntry]:
        """Get audit logs newest-first, optionally filtered by room_id.

        Args:
            room_id: Optional room ID to filter by.
            limit: Maximum number of logs to return.

        Returns:
            List of audit log entries.
        """
        conn = self._get_connection()

        if room_id:
            result = conn.execute(
                """
                SELECT type, room_id, actor, target, meta, timestamp
                FROM audit_logs
                WHERE room_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                [room_id, limit]
            ).fetchall()
        else:
            result = conn.execute(
                """
                SELECT type, room_id, actor, target, meta, timestamp
                FROM audit_logs
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                [limit]
            ).fetchall()

        return [
            AuditLogEntry(
                type=AuditAction(row[0]),
                room_id=row[1],
                actor=row[2],
                target=row[3],
                meta=json.loads(row[4]),
                timestamp=row[5]
            )
            for row in result
        ]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
