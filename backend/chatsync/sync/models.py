"""Typed view model for synchronized rooms.

Documents arrive from the store as loosely-shaped dicts. They are validated
here into ``StoredMessage`` before anything reaches the grouper or the
reaction merger, so the rest of the sync layer only handles complete data.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

# emoji -> sender ids who reacted with it
ReactionMap = Dict[str, List[str]]


def normalize_reactions(raw: Any) -> ReactionMap:
    """Coerce a store reaction payload into a clean ``ReactionMap``.

    Drops non-string keys and senders, removes duplicate senders per emoji
    (first occurrence wins) and removes emojis left with no senders.
    ``None`` or any non-mapping value means "no reactions".
    """
    if not isinstance(raw, dict):
        return {}
    reactions: ReactionMap = {}
    for emoji, senders in raw.items():
        if not isinstance(emoji, str) or not isinstance(senders, (list, tuple, set)):
            continue
        unique = list(dict.fromkeys(s for s in senders if isinstance(s, str) and s))
        if unique:
            reactions[emoji] = unique
    return reactions


class SyncState(str, Enum):
    """Lifecycle of a room's sync engine.

    Attributes:
        UNSTARTED: Engine created, nothing requested yet.
        LOADING_HISTORY: Historical fetch in flight (or waiting to be retried).
        LIVE: History folded, live subscription attached.
        STOPPED: Torn down; every later fold is discarded.
    """
    UNSTARTED = "unstarted"
    LOADING_HISTORY = "loading_history"
    LIVE = "live"
    STOPPED = "stopped"


class Message(BaseModel):
    """A single message as shown in a room.

    Attributes:
        messageId: Store-assigned id, unique within the room.
        content: Message text.
        reacts: Reaction map; the only field updated after creation.
    """
    messageId: str = Field(..., description="Store-assigned message ID")
    content: str = Field(..., description="Message text")
    reacts: ReactionMap = Field(default_factory=dict, description="emoji -> sender ids")


class MessageBlock(BaseModel):
    """A maximal run of consecutive messages from one sender."""
    senderId: str = Field(..., description="uid of the sender")
    messages: List[Message] = Field(default_factory=list)


class StoredMessage(BaseModel):
    """A message document as delivered by the store, after validation."""
    id: str = Field(..., min_length=1)
    text: str
    senderId: str = Field(..., min_length=1)
    createdAt: Optional[float] = None
    reacts: ReactionMap = Field(default_factory=dict)

    @field_validator("reacts", mode="before")
    @classmethod
    def _clean_reacts(cls, value: Any) -> ReactionMap:
        return normalize_reactions(value)

    @classmethod
    def from_document(cls, document: Any) -> Optional["StoredMessage"]:
        """Validate a raw store document; return None (and log) if unusable."""
        if not isinstance(document, dict):
            logger.warning("[Sync] Ignoring non-mapping document: %r", document)
            return None
        try:
            return cls.model_validate(document)
        except ValidationError as exc:
            logger.warning(
                "[Sync] Ignoring malformed document %s: %s",
                document.get("id", "<no id>"),
                exc.errors(include_url=False),
            )
            return None

    def to_message(self) -> Message:
        return Message(messageId=self.id, content=self.text, reacts=dict(self.reacts))


class RoomStatus(BaseModel):
    """Per-room sync status exposed to the UI."""
    roomId: str
    state: SyncState
    degraded: bool = False
    lastError: Optional[str] = None
    cursor: Optional[float] = None
    blockCount: int = 0
    messageCount: int = 0
