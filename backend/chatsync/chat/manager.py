"""WebSocket fan-out of synchronized room views.

This module pushes the current block list of a room to every WebSocket
watching it, whenever the room's sync engine reports a change or the
profile of a sender changes.

Key features:
    - Multiple rooms with independent watcher lists
    - Snapshot on connect, snapshot on every view change
    - Per-room ordering: one sender task per room, snapshots built at send time
    - Concurrent delivery with asyncio.gather()
    - Automatic dead connection cleanup

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set

from fastapi import WebSocket

from chatsync.sync.client import ChatClient
from chatsync.users.service import UserService

logger = logging.getLogger(__name__)


class RoomViewBroadcaster:
    """Manages WebSocket watchers of room views.

    Registered as an observer on the ``ListenerManager``. Change
    notifications for a room are coalesced: while a push is in flight,
    further changes only mark the room dirty, and the room's sender task
    pushes one fresh snapshot afterwards.
    """

    def __init__(self) -> None:
        """Initialize empty broadcaster."""
        # room_id -> list of watching WebSocket connections
        self.active_connections: Dict[str, List[WebSocket]] = {}
        self._client: Optional[ChatClient] = None
        self._users: Optional[UserService] = None
        self._removers: List[Callable[[], None]] = []
        self._locks: Dict[str, asyncio.Lock] = {}
        self._dirty: Set[str] = set()
        self._senders: Dict[str, asyncio.Task] = {}

    def attach(self, client: ChatClient, users: Optional[UserService] = None) -> None:
        """Start following view changes of ``client``'s rooms and sender profiles."""
        self.detach()
        self._client = client
        self._users = users
        self._removers.append(client.listeners.add_observer(self._on_room_changed))
        if users is not None:
            self._removers.append(users.directory.add_observer(self._on_profile_changed))

    def detach(self) -> None:
        for remove in self._removers:
            remove()
        self._removers.clear()
        self._client = None
        self._users = None
        for task in list(self._senders.values()):
            task.cancel()
        self._senders.clear()
        self._dirty.clear()
        self._locks.clear()

    async def connect(self, websocket: WebSocket, room_id: str) -> None:
        """Accept a watcher and send it the room's current snapshot."""
        await websocket.accept()
        async with self._lock(room_id):
            self.active_connections.setdefault(room_id, []).append(websocket)
            await self._safe_send(websocket, self.snapshot(room_id))

    def disconnect(self, websocket: WebSocket, room_id: str) -> None:
        connections = self.active_connections.get(room_id)
        if connections and websocket in connections:
            connections.remove(websocket)
        if connections is not None and not connections:
            self.active_connections.pop(room_id, None)

    def snapshot(self, room_id: str) -> dict:
        """Build the ``blocks`` payload for a room."""
        blocks = self._client.blocks(room_id) if self._client else None
        senders = {}
        if self._users is not None and blocks:
            labels = self._users.sender_labels(block.senderId for block in blocks)
            senders = {uid: profile.model_dump() for uid, profile in labels.items()}
        return {
            "type": "blocks",
            "roomId": room_id,
            "synced": blocks is not None,
            "blocks": [block.model_dump() for block in blocks or []],
            "senders": senders,
        }

    def get_room_size(self, room_id: str) -> int:
        """Get the number of watchers of a room."""
        return len(self.active_connections.get(room_id, []))

    def _lock(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    def _on_profile_changed(self, uid: str) -> None:
        for room_id in list(self.active_connections):
            self._on_room_changed(room_id)

    def _on_room_changed(self, room_id: str) -> None:
        if not self.active_connections.get(room_id):
            return
        self._dirty.add(room_id)
        running = self._senders.get(room_id)
        if running is not None and not running.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._push_room(room_id))
        self._senders[room_id] = task
        task.add_done_callback(lambda done: self._forget_sender(room_id, done))

    def _forget_sender(self, room_id: str, task: asyncio.Task) -> None:
        if self._senders.get(room_id) is task:
            self._senders.pop(room_id, None)

    async def _push_room(self, room_id: str) -> None:
        # Snapshot is taken inside the loop so the last push is always current
        while room_id in self._dirty:
            self._dirty.discard(room_id)
            async with self._lock(room_id):
                await self.broadcast(self.snapshot(room_id), room_id)

    async def broadcast(self, message: dict, room_id: str) -> None:
        """Broadcast a message to all watchers of a room concurrently.

        This method safely handles disconnected clients by removing them
        from the connection list if sending fails.
        """
        if room_id not in self.active_connections:
            return

        connections = self.active_connections[room_id].copy()
        if not connections:
            return

        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(room_id, failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"[WS] Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, room_id: str, failed_connections: List[WebSocket]
    ) -> None:
        if not failed_connections or room_id not in self.active_connections:
            return

        for conn in failed_connections:
            if conn in self.active_connections[room_id]:
                self.active_connections[room_id].remove(conn)
                logger.debug(f"[WS] Removed dead connection from room {room_id}")


# Global singleton instance used by all WebSocket handlers
broadcaster = RoomViewBroadcaster()
