"""Presentation-facing facade over the sync layer.

The UI reads room views and issues writes through ``ChatClient`` only. Writes
go straight to the store; their effect reaches the views through the live
feed like any other change.
"""
import logging
from typing import List, Optional

from chatsync.store.base import DocumentStore, StoreError

from .lifecycle import ListenerManager
from .models import MessageBlock, RoomStatus
from .reactions import has_reacted
from .session import SessionContext

logger = logging.getLogger(__name__)


class ChatClient:
    """Room views plus send/react operations for the signed-in user.

    Attributes:
        session: The shared session context.
        listeners: The lifecycle manager driving per-room engines.
        reaction_palette: Emojis offered by the reaction menu.
    """

    def __init__(
        self,
        store: DocumentStore,
        session: SessionContext,
        listeners: ListenerManager,
        default_room_id: str = "main",
        reaction_palette: Optional[List[str]] = None,
    ) -> None:
        self._store = store
        self.session = session
        self.listeners = listeners
        self._selected_room_id = default_room_id
        self.reaction_palette = list(reaction_palette or [])

    # =========================================================================
    # Views
    # =========================================================================

    @property
    def selected_room_id(self) -> str:
        """Room currently displayed. Has no effect on which rooms sync."""
        return self._selected_room_id

    @selected_room_id.setter
    def selected_room_id(self, room_id: str) -> None:
        self._selected_room_id = room_id

    def blocks(self, room_id: str) -> Optional[List[MessageBlock]]:
        """Blocks of a synchronized room, or None if the room is not synced."""
        return self.listeners.get_blocks(room_id)

    def room_statuses(self) -> List[RoomStatus]:
        return self.listeners.statuses()

    # =========================================================================
    # Writes
    # =========================================================================

    async def send_message(self, room_id: str, text: str) -> bool:
        """Send a message as the signed-in user.

        Returns:
            True if the write was handed to the store. Writes without a
            signed-in identity, and blank messages, are dropped silently.
        """
        uid = self.session.uid
        if uid is None:
            logger.debug(f"[Client] Dropped message to {room_id}: not signed in")
            return False
        if not text or not text.strip():
            logger.debug(f"[Client] Dropped blank message to {room_id}")
            return False
        try:
            await self._store.send(room_id, text, uid)
        except StoreError as e:
            logger.error(f"[Client] Failed to send message to {room_id}: {e}")
            return False
        return True

    async def add_reaction(self, room_id: str, message_id: str, emoji: str) -> bool:
        return await self._react(room_id, message_id, emoji, add=True)

    async def remove_reaction(self, room_id: str, message_id: str, emoji: str) -> bool:
        return await self._react(room_id, message_id, emoji, add=False)

    async def _react(self, room_id: str, message_id: str, emoji: str, add: bool) -> bool:
        uid = self.session.uid
        if uid is None:
            logger.debug(f"[Client] Dropped reaction on {message_id}: not signed in")
            return False

        # Toggle semantics: skip the round trip when the view already agrees
        engine = self.listeners.get_engine(room_id)
        message = engine.get_message(message_id) if engine else None
        if message is not None and has_reacted(message.reacts, emoji, uid) == add:
            logger.debug(
                f"[Client] Reaction {emoji} on {message_id} already "
                f"{'present' if add else 'absent'} for {uid}"
            )
            return False

        try:
            await self._store.patch_reaction(room_id, message_id, emoji, uid, add)
        except StoreError as e:
            logger.error(f"[Client] Failed to update reaction on {message_id}: {e}")
            return False
        return True
