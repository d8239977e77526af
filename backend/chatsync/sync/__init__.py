"""Message synchronization and grouping engine.

Components, leaves first:
    - models: validated view model (Message, MessageBlock, ReactionMap)
    - grouper: per-sender block merging
    - reactions: reaction merging with an id index
    - engine: one RoomSyncEngine per room (history, cursor, live feed)
    - session: explicit identity + desired room set
    - lifecycle: ListenerManager reconciling engines against the session
    - client: ChatClient facade for the presentation layer
"""
from .client import ChatClient
from .engine import RoomSyncEngine
from .grouper import merge_message
from .lifecycle import ListenerManager
from .models import Message, MessageBlock, ReactionMap, RoomStatus, StoredMessage, SyncState
from .reactions import MessageIndex, apply_reaction
from .session import Identity, SessionContext

__all__ = [
    "ChatClient",
    "Identity",
    "ListenerManager",
    "Message",
    "MessageBlock",
    "MessageIndex",
    "ReactionMap",
    "RoomStatus",
    "RoomSyncEngine",
    "SessionContext",
    "StoredMessage",
    "SyncState",
    "apply_reaction",
    "merge_message",
]
