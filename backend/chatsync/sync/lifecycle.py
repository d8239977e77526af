"""Room registry and listener lifecycle management.

``ListenerManager`` owns the mapping room id -> ``RoomSyncEngine``. It never
re-runs subscription setup wholesale; each ``reconcile()`` diffs the desired
room set against the active engines and applies only the delta, so calling
it any number of times with an unchanged session is harmless.

Key features:
    - One engine per room, never two
    - Full teardown when the signed-in identity changes
    - Re-kick of rooms whose history load gave up
    - ``shutdown()`` for process teardown
    - View-change observers (used by the WebSocket broadcaster)
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from chatsync.config import SyncSettings
from chatsync.store.base import DocumentStore

from .engine import RoomSyncEngine
from .models import MessageBlock, RoomStatus, SyncState
from .session import SessionContext

logger = logging.getLogger(__name__)

RoomObserver = Callable[[str], None]


class ListenerManager:
    """Keeps exactly one sync engine per desired room.

    Args:
        store: Document store every engine reads from.
        session: Session context to follow; its changes trigger reconcile.
        settings: Sync policy handed to each engine.
    """

    def __init__(
        self,
        store: DocumentStore,
        session: SessionContext,
        settings: Optional[SyncSettings] = None,
    ) -> None:
        self._store = store
        self._session = session
        self._settings = settings or SyncSettings()
        self._engines: Dict[str, RoomSyncEngine] = {}
        self._observers: List[RoomObserver] = []
        self._active_uid: Optional[str] = None
        self._closed = False
        self._unsubscribe_session = session.subscribe(lambda _: self.reconcile())
        # The session may already be signed in
        self.reconcile()

    # =========================================================================
    # Registry
    # =========================================================================

    @property
    def active_room_ids(self) -> List[str]:
        return list(self._engines)

    def get_engine(self, room_id: str) -> Optional[RoomSyncEngine]:
        return self._engines.get(room_id)

    def get_blocks(self, room_id: str) -> Optional[List[MessageBlock]]:
        engine = self._engines.get(room_id)
        return engine.blocks if engine else None

    def statuses(self) -> List[RoomStatus]:
        return [engine.status() for engine in self._engines.values()]

    # =========================================================================
    # Observers
    # =========================================================================

    def add_observer(self, observer: RoomObserver) -> Callable[[], None]:
        """Call ``observer(room_id)`` whenever a room's view changes."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    def _room_changed(self, room_id: str) -> None:
        for observer in list(self._observers):
            try:
                observer(room_id)
            except Exception as e:
                logger.error(f"[Lifecycle] Observer failed for room {room_id}: {e}")

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self) -> None:
        """Bring the active engines in line with the session's desired rooms."""
        if self._closed:
            return

        uid = self._session.uid
        if uid != self._active_uid:
            if self._engines:
                logger.info(
                    f"[Lifecycle] Identity changed ({self._active_uid} -> {uid}), "
                    f"stopping {len(self._engines)} room(s)"
                )
                self._stop_all()
            self._active_uid = uid

        desired = self._session.desired_room_ids()
        desired_set = set(desired)

        for room_id in [r for r in self._engines if r not in desired_set]:
            self._stop_room(room_id)

        for room_id in desired:
            engine = self._engines.get(room_id)
            if engine is None:
                self._start_room(room_id)
            elif engine.state is SyncState.LOADING_HISTORY and engine.degraded:
                engine.retry_history()

    def _start_room(self, room_id: str) -> None:
        engine = RoomSyncEngine(
            room_id, self._store, self._settings, on_change=self._room_changed
        )
        self._engines[room_id] = engine
        engine.start()
        logger.info(f"[Lifecycle] Started room {room_id} ({len(self._engines)} active)")

    def _stop_room(self, room_id: str) -> None:
        engine = self._engines.pop(room_id, None)
        if engine is None:
            return
        engine.stop()
        logger.info(f"[Lifecycle] Stopped room {room_id} ({len(self._engines)} active)")
        self._room_changed(room_id)

    def _stop_all(self) -> None:
        for room_id in list(self._engines):
            self._stop_room(room_id)

    # =========================================================================
    # Waiting and teardown
    # =========================================================================

    async def settle(self) -> None:
        """Wait until every in-flight history load has finished."""
        tasks = [
            engine.load_task
            for engine in self._engines.values()
            if engine.load_task is not None and not engine.load_task.done()
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def shutdown(self) -> None:
        """Stop every engine and stop following the session."""
        if self._closed:
            return
        self._closed = True
        self._unsubscribe_session()
        for engine in list(self._engines.values()):
            engine.cancel_pending()
        self._stop_all()
        self._observers.clear()
        logger.info("[Lifecycle] Shutdown complete")
