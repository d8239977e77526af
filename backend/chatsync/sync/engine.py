"""Per-room synchronization engine.

One ``RoomSyncEngine`` owns one room: it bulk-loads the most recent history,
then attaches a live subscription bounded by the cursor taken from that
history, folding every message into per-sender blocks and every reaction
update into the matching message.

State machine::

    UNSTARTED -> LOADING_HISTORY -> LIVE -> STOPPED
                        \\___________________/

Key properties:
    - History is folded completely before the live listener is attached.
    - History and live partition the room at the cursor: live "added"
      events at or before the cursor are dropped, and message ids already
      folded are never folded again.
    - ``stop()`` is synchronous, detaches the listener exactly once and
      poisons the engine; a history fetch that completes afterwards is
      discarded.
    - Store failures stay inside the engine: they are logged and surface
      as ``degraded`` on the room status.

Thread Safety:
    Designed for a single asyncio event loop. NOT thread-safe.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from chatsync.config import SyncSettings
from chatsync.store.base import Document, DocumentStore, ReactsPayload, Unsubscribe

from .grouper import merge_message, message_count
from .models import Message, MessageBlock, RoomStatus, StoredMessage, SyncState
from .reactions import MessageIndex, apply_reaction, find_message

logger = logging.getLogger(__name__)


class RoomSyncEngine:
    """Synchronizes a single room's timeline from a document store.

    Attributes:
        room_id: The room this engine synchronizes.
        degraded: True while the last history load or the live feed failed.
        last_error: Text of the most recent store failure, if any.
    """

    def __init__(
        self,
        room_id: str,
        store: DocumentStore,
        settings: Optional[SyncSettings] = None,
        on_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.room_id = room_id
        self._store = store
        self._settings = settings or SyncSettings()
        self._on_change = on_change

        self._state = SyncState.UNSTARTED
        self._blocks: List[MessageBlock] = []
        self._index = MessageIndex()
        self._cursor: Optional[float] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._load_task: Optional[asyncio.Task] = None

        self.degraded = False
        self.last_error: Optional[str] = None

    # =========================================================================
    # Read-only view
    # =========================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def cursor(self) -> Optional[float]:
        return self._cursor

    @property
    def blocks(self) -> List[MessageBlock]:
        """Snapshot of the room's blocks, oldest first."""
        return list(self._blocks)

    @property
    def load_task(self) -> Optional[asyncio.Task]:
        return self._load_task

    def get_message(self, message_id: str) -> Optional[Message]:
        location = find_message(self._blocks, message_id, self._index)
        if location is None:
            return None
        block_index, message_index = location
        return self._blocks[block_index].messages[message_index]

    def status(self) -> RoomStatus:
        return RoomStatus(
            roomId=self.room_id,
            state=self._state,
            degraded=self.degraded,
            lastError=self.last_error,
            cursor=self._cursor,
            blockCount=len(self._blocks),
            messageCount=message_count(self._blocks),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Begin loading history.

        Calling ``start`` on an engine that already left ``UNSTARTED`` is a
        no-op, so a room can never end up with two history loads or two
        live listeners. Without a running event loop the engine stays in
        ``LOADING_HISTORY`` marked degraded until ``retry_history``.
        """
        if self._state is not SyncState.UNSTARTED:
            logger.debug(f"[Sync] Room {self.room_id} already started ({self._state.value})")
            return
        self._state = SyncState.LOADING_HISTORY
        self._blocks = []
        self._index.clear()
        if self._schedule_history_load():
            logger.info(f"[Sync] Room {self.room_id} loading history")

    def retry_history(self) -> bool:
        """Restart a history load that exhausted its retries or never ran.

        Returns:
            True if a new load was scheduled.
        """
        if self._state is not SyncState.LOADING_HISTORY:
            return False
        if self._load_task is not None and not self._load_task.done():
            return False
        logger.info(f"[Sync] Room {self.room_id} retrying history load")
        return self._schedule_history_load()

    def stop(self) -> None:
        """Tear the engine down. Idempotent and safe in any state."""
        if self._state is SyncState.STOPPED:
            return
        previous = self._state
        self._state = SyncState.STOPPED

        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception as e:
                logger.error(f"[Sync] Failed to detach live feed for room {self.room_id}: {e}")

        self._blocks = []
        self._index.clear()
        logger.info(f"[Sync] Room {self.room_id} stopped (was {previous.value})")

    def cancel_pending(self) -> None:
        """Cancel an in-flight history task (process teardown only)."""
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()

    # =========================================================================
    # History
    # =========================================================================

    def _schedule_history_load(self) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Left degraded so the next reconcile inside a loop picks it up
            self.degraded = True
            self.last_error = "no running event loop"
            logger.warning(
                f"[Sync] Room {self.room_id} cannot load history without a running event loop"
            )
            return False
        self._load_task = loop.create_task(self._load_history())
        return True

    async def _load_history(self) -> None:
        max_attempts = self._settings.history_max_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                documents = await self._store.fetch_recent(
                    self.room_id, limit=self._settings.history_limit
                )
                break
            except Exception as e:
                if self._state is SyncState.STOPPED:
                    return
                self.degraded = True
                self.last_error = str(e)
                self._notify()
                if attempt >= max_attempts:
                    logger.error(
                        f"[Sync] History load for room {self.room_id} failed after "
                        f"{attempt} attempt(s): {e}"
                    )
                    return
                delay = self._settings.history_retry_delay_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"[Sync] History load for room {self.room_id} failed "
                    f"(attempt {attempt}/{max_attempts}), retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
                if self._state is SyncState.STOPPED:
                    return

        if self._state is not SyncState.LOADING_HISTORY:
            logger.info(
                f"[Sync] Discarding {len(documents)} historical message(s) for room "
                f"{self.room_id} ({self._state.value})"
            )
            return

        self._fold_history(documents)
        self.degraded = False
        self.last_error = None
        self._attach_live()

    def _fold_history(self, documents: List[Document]) -> None:
        # Store returns newest first; fold oldest first
        folded = 0
        for document in reversed(documents):
            stored = StoredMessage.from_document(document)
            if stored is None:
                continue
            if stored.createdAt is not None and (
                self._cursor is None or stored.createdAt > self._cursor
            ):
                self._cursor = stored.createdAt
            if self._fold(stored):
                folded += 1
        logger.info(
            f"[Sync] Room {self.room_id} folded {folded} historical message(s), "
            f"cursor={self._cursor}"
        )
        self._notify()

    # =========================================================================
    # Live feed
    # =========================================================================

    def _attach_live(self) -> None:
        try:
            self._unsubscribe = self._store.subscribe(
                self.room_id,
                self._cursor,
                self._on_added,
                self._on_modified_reacts,
                on_error=self._on_live_error,
            )
        except Exception as e:
            self._on_live_error(e)
            return
        self._state = SyncState.LIVE
        logger.info(f"[Sync] Room {self.room_id} is live after cursor={self._cursor}")
        self._notify()

    def _on_added(self, document: Document) -> None:
        if self._state is not SyncState.LIVE:
            return
        stored = StoredMessage.from_document(document)
        if stored is None:
            return
        if (
            self._cursor is not None
            and stored.createdAt is not None
            and stored.createdAt <= self._cursor
        ):
            logger.debug(f"[Sync] Room {self.room_id} dropped {stored.id} at/before cursor")
            return
        if self._fold(stored):
            self._notify()

    def _on_modified_reacts(self, message_id: str, reacts: ReactsPayload) -> None:
        if self._state is not SyncState.LIVE:
            return
        patched = apply_reaction(self._blocks, message_id, reacts, self._index)
        if patched is self._blocks:
            return
        self._blocks = patched
        self._notify()

    def _on_live_error(self, error: Exception) -> None:
        if self._state is SyncState.STOPPED:
            return
        # Keep existing blocks; stale-but-present beats empty
        self.degraded = True
        self.last_error = str(error)
        logger.error(f"[Sync] Live feed error for room {self.room_id}: {error}")
        self._notify()

    # =========================================================================
    # Internal
    # =========================================================================

    def _fold(self, stored: StoredMessage) -> bool:
        if stored.id in self._index:
            logger.debug(f"[Sync] Room {self.room_id} ignored duplicate message {stored.id}")
            return False
        self._blocks = merge_message(self._blocks, stored.senderId, stored.to_message())
        self._index.record_last(self._blocks)
        return True

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.room_id)
        except Exception as e:
            logger.error(f"[Sync] Change observer failed for room {self.room_id}: {e}")
