"""Pydantic models for rooms, messages and invites.

These are both the persisted records (serialized to JSON in DuckDB) and the
payloads broadcast to clients. Field names are camelCase to match the wire
format the browser client consumes.

Message variants:
    - text: ``text`` (+ optional ``linkPreview``)
    - image: ``imageUrl``
    - file: ``file`` (a reference returned by the upload collaborator)
    - poll: ``poll``
"""
import time
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ChatError, ErrorCode


class MessageType(str, Enum):
    """Variant of a chat message payload."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    POLL = "poll"


class ParentSnapshot(BaseModel):
    """Denormalized copy of the message being replied to.

    Captured at send time. Refreshed best-effort when the parent is edited
    and marked ``deleted`` when the parent is removed.
    """
    id: str
    username: str
    text: Optional[str] = None
    ts: float
    deleted: bool = False


class EditRecord(BaseModel):
    """A previous text value of an edited message."""
    text: str
    editedAt: float


class LinkPreview(BaseModel):
    url: str
    title: Optional[str] = None
    image: Optional[str] = None
    description: Optional[str] = None
    siteName: Optional[str] = None


class FileRef(BaseModel):
    """Reference to a file already persisted by the upload collaborator."""
    url: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=255)
    mime: str = ""
    size: int = Field(default=0, ge=0)


class PollOption(BaseModel):
    text: str
    votes: List[str] = Field(default_factory=list)


class Poll(BaseModel):
    """Poll sub-object: Open -> Closed (terminal)."""
    question: str
    options: List[PollOption]
    isClosed: bool = False

    def vote(self, identity: str, option_index: int) -> None:
        """Record ``identity``'s single vote, retracting any earlier one.

        Raises:
            ChatError: CONFLICT if the poll is closed, NOT_FOUND if the
                option index is out of range.
        """
        if self.isClosed:
            raise ChatError(ErrorCode.CONFLICT, "Poll is closed")
        if option_index < 0 or option_index >= len(self.options):
            raise ChatError(ErrorCode.NOT_FOUND, "No such poll option")
        for option in self.options:
            option.votes = [voter for voter in option.votes if voter != identity]
        self.options[option_index].votes.append(identity)

    def close(self) -> None:
        if self.isClosed:
            raise ChatError(ErrorCode.CONFLICT, "Poll is already closed")
        self.isClosed = True


class ChatMessage(BaseModel):
    """A message in a room's log.

    ``id`` and ``ts`` are assigned by the store on append; together they
    form the immutable sort key ``(ts, id)``.
    """
    id: str = ""
    roomId: str
    username: str
    type: MessageType = MessageType.TEXT
    ts: float = 0.0

    text: Optional[str] = None
    imageUrl: Optional[str] = None
    file: Optional[FileRef] = None
    poll: Optional[Poll] = None

    parent: Optional[ParentSnapshot] = None
    linkPreview: Optional[LinkPreview] = None

    editedAt: Optional[float] = None
    edits: List[EditRecord] = Field(default_factory=list)

    # emoji -> reactor identities (kept duplicate-free)
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    seenBy: List[str] = Field(default_factory=list)
    flagged: bool = False

    def searchable_text(self) -> str:
        """Text indexed for search: message text, poll question or file name."""
        if self.type == MessageType.TEXT:
            return self.text or ""
        if self.type == MessageType.POLL and self.poll:
            return self.poll.question
        if self.type == MessageType.FILE and self.file:
            return self.file.name
        return ""

    def snapshot(self) -> ParentSnapshot:
        return ParentSnapshot(id=self.id, username=self.username, text=self.text, ts=self.ts)

    def toggle_reaction(self, emoji: str, identity: str) -> bool:
        """Add or remove ``identity`` under ``emoji``. Returns True if added."""
        reactors = self.reactions.get(emoji, [])
        if identity in reactors:
            reactors = [r for r in reactors if r != identity]
            added = False
        else:
            reactors = reactors + [identity]
            added = True
        if reactors:
            self.reactions[emoji] = reactors
        else:
            self.reactions.pop(emoji, None)
        return added

    def mark_seen(self, identity: str) -> bool:
        if identity in self.seenBy:
            return False
        self.seenBy.append(identity)
        return True


class Theme(BaseModel):
    mode: Literal["light", "dark"] = "light"
    accent: str = "#7b1fa2"


class Announcement(BaseModel):
    text: str
    ts: float = Field(default_factory=time.time)


class Room(BaseModel):
    """A chat room record.

    ``secretHash`` is None for open rooms (including the global room).
    ``members`` holds identities that passed the credential or invite check
    and may resume into the room without presenting the secret again.
    """
    roomId: str
    secretHash: Optional[str] = None
    owner: Optional[str] = None
    mods: List[str] = Field(default_factory=list)
    members: List[str] = Field(default_factory=list)
    banned: List[str] = Field(default_factory=list)

    topic: str = ""
    rules: str = ""
    slowModeSec: int = 0
    pinnedMessageIds: List[str] = Field(default_factory=list)
    announcements: List[Announcement] = Field(default_factory=list)
    theme: Theme = Field(default_factory=Theme)
    createdAt: float = Field(default_factory=time.time)

    @property
    def is_protected(self) -> bool:
        return self.secretHash is not None

    def is_owner(self, identity: str) -> bool:
        return self.owner is not None and self.owner == identity

    def is_moderator(self, identity: str) -> bool:
        return self.is_owner(identity) or identity in self.mods

    def is_banned(self, identity: str) -> bool:
        return identity in self.banned

    def is_member(self, identity: str) -> bool:
        return self.is_moderator(identity) or identity in self.members


class InviteToken(BaseModel):
    """Single-use or multi-use, optionally expiring invite into a room."""
    token: str
    roomId: str
    createdBy: str
    singleUse: bool = True
    expiresAt: Optional[float] = None
    usedAt: Optional[float] = None
    createdAt: float = Field(default_factory=time.time)


class HistoryPage(BaseModel):
    """A page of history, oldest-first, with the cursor for the next older page."""
    items: List[ChatMessage] = Field(default_factory=list)
    nextCursor: Optional[str] = None
