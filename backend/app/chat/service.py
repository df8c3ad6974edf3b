"""Wiring for the chat core.

``build_chat_service`` creates every component from an ``AppConfig`` and
injects them into each other. The resulting ``ChatService`` is owned by the
FastAPI application (``app.state.chat``) for the lifetime of the process;
there are no module-level singletons, so tests build isolated instances.
"""
import logging
import time
from typing import Callable, Optional

import duckdb
import httpx

from app.audit.service import AuditLogService
from app.auth.passwords import PasswordHasher
from app.config import AppConfig

from .commands import SlashCommands
from .content_filter import ContentFilter
from .governor import RateGovernor
from .link_preview import LinkPreviewFetcher
from .manager import RoomSessionManager
from .presence import PresenceRegistry
from .relay import MessageRelay
from .rooms import RoomStore
from .store import MessageStore

logger = logging.getLogger(__name__)


class ChatService:
    """All chat components for one process."""

    def __init__(
        self,
        config: AppConfig,
        connection: duckdb.DuckDBPyConnection,
        sessions: RoomSessionManager,
        relay: MessageRelay,
        commands: SlashCommands,
        audit_log: Optional[AuditLogService] = None,
    ) -> None:
        self.config = config
        self.connection = connection
        self.sessions = sessions
        self.relay = relay
        self.commands = commands
        self.audit_log = audit_log

    @property
    def store(self) -> MessageStore:
        return self.sessions.store

    @property
    def rooms(self) -> RoomStore:
        return self.sessions.rooms

    @property
    def presence(self) -> PresenceRegistry:
        return self.sessions.presence

    @property
    def governor(self) -> RateGovernor:
        return self.relay.governor

    async def start(self) -> None:
        """Make sure the global room exists before accepting connections."""
        await self.rooms.ensure(self.sessions.global_room_id)
        logger.info(f"[Chat] Ready (global room={self.sessions.global_room_id})")

    def close(self) -> None:
        if self.audit_log is not None:
            self.audit_log.close()
        self.connection.close()


def build_chat_service(
    config: AppConfig,
    clock: Callable[[], float] = time.time,
    preview_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ChatService:
    """Create and inject every chat component.

    Args:
        config: Application configuration.
        clock: Time source shared by the store, rooms, governor and relay.
        preview_transport: Optional httpx transport for link previews.
    """
    connection = duckdb.connect(config.store.db_path)
    audit_log = AuditLogService(config.logging.audit_path) if config.logging.audit_enabled else None

    sessions = RoomSessionManager(
        presence=PresenceRegistry(),
        rooms=RoomStore(connection, clock=clock),
        store=MessageStore(connection, clock=clock),
        hasher=PasswordHasher(
            scheme=config.security.password_hash_scheme,
            pepper=config.secrets.password_pepper,
        ),
        global_room_id=config.rooms.global_room_id,
        admins=config.rooms.admins,
        page_size=config.history.page_size,
        audit_log=audit_log,
    )
    relay = MessageRelay(
        sessions,
        governor=RateGovernor(
            window_seconds=config.rate_limit.window_seconds,
            max_messages=config.rate_limit.max_messages,
            clock=clock,
        ),
        content_filter=ContentFilter(
            config.moderation.banned_words, mask_char=config.moderation.mask_char
        ),
        previews=LinkPreviewFetcher(
            timeout_seconds=config.link_preview.timeout_seconds,
            max_bytes=config.link_preview.max_bytes,
            user_agent=config.link_preview.user_agent,
            enabled=config.link_preview.enabled,
            block_private_hosts=config.link_preview.block_private_hosts,
            transport=preview_transport,
        ),
        max_text_length=config.messages.max_text_length,
        max_poll_question=config.messages.max_poll_question,
        max_poll_option=config.messages.max_poll_option,
        clock=clock,
    )
    commands = SlashCommands(
        relay,
        max_pins=config.rooms.max_pins,
        max_announcements=config.rooms.max_announcements,
        invite_ttl_minutes=config.rooms.invite_ttl_minutes,
    )
    return ChatService(config, connection, sessions, relay, commands, audit_log=audit_log)
