"""DocumentStore abstract interface.

Every backing store (DuckDB, a hosted document database, test fakes) must
implement this interface so the sync layer stays store-agnostic.

Documents crossing this boundary are plain dicts shaped like::

    {"id": str, "text": str, "senderId": str, "createdAt": float,
     "reacts": {emoji: [senderId, ...]}}   # "reacts" may be absent

``createdAt`` is the store-assigned creation-order token. It is strictly
increasing per store, so it doubles as the sync cursor.
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

Document = Dict[str, Any]
ReactsPayload = Dict[str, List[str]]

OnAdded = Callable[[Document], None]
OnModifiedReacts = Callable[[str, ReactsPayload], None]
OnError = Callable[[Exception], None]
Unsubscribe = Callable[[], None]
RoomIdsCallback = Callable[[List[str]], None]
UserCallback = Callable[[Dict[str, Any]], None]

DEFAULT_HISTORY_LIMIT = 25


class StoreError(Exception):
    """Raised when the backing store rejects a read or write."""


class DocumentStore(ABC):
    """Abstract ordered document collection with a change feed."""

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    @abstractmethod
    async def fetch_recent(
        self, room_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> List[Document]:
        """Return the ``limit`` most recent messages of a room, newest first.

        Raises:
            StoreError: If the query fails.
        """

    @abstractmethod
    def subscribe(
        self,
        room_id: str,
        after: Optional[float],
        on_added: OnAdded,
        on_modified_reacts: OnModifiedReacts,
        on_error: Optional[OnError] = None,
    ) -> Unsubscribe:
        """Attach a live listener to a room.

        ``on_added`` receives every message with ``createdAt > after`` (all
        messages when ``after`` is None), existing ones first, in creation
        order. ``on_modified_reacts`` receives ``(message_id, reacts)``
        whenever the reaction map of any message in the room changes.

        Returns:
            A callable that detaches the listener. After it returns no
            further callbacks are delivered, including queued ones.
        """

    @abstractmethod
    async def send(self, room_id: str, text: str, sender_id: str) -> None:
        """Append a message; the store assigns ``id`` and ``createdAt``."""

    @abstractmethod
    async def patch_reaction(
        self,
        room_id: str,
        message_id: str,
        emoji: str,
        sender_id: str,
        add: bool,
    ) -> None:
        """Add or remove ``sender_id`` from the ``emoji`` set of a message."""

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    @abstractmethod
    async def load_user(self, uid: str) -> Optional[Dict[str, Any]]:
        """Return ``{uid, displayName, colour, pronouns, bio, roomIds}`` or None."""

    @abstractmethod
    async def create_user(self, record: Dict[str, Any]) -> None:
        """Persist a new user record."""

    @abstractmethod
    async def update_room_ids(self, uid: str, room_ids: List[str]) -> None:
        """Replace the user's persisted listener list."""

    @abstractmethod
    def watch_room_ids(self, uid: str, callback: RoomIdsCallback) -> Unsubscribe:
        """Call ``callback`` whenever the user's listener list changes."""

    @abstractmethod
    async def update_user(self, uid: str, fields: Dict[str, Any]) -> None:
        """Update profile fields (``displayName``, ``colour``, ``pronouns``, ``bio``).

        Raises:
            StoreError: If the user does not exist or the write fails.
        """

    @abstractmethod
    def watch_users(self, callback: UserCallback) -> Unsubscribe:
        """Call ``callback(record)`` for every user record, then on each change.

        Existing records are delivered first; afterwards every created or
        modified record is delivered in full.
        """
