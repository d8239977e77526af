"""Shared test fixtures and a controllable in-memory document store."""
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pytest

from chatsync.config import SyncSettings
from chatsync.store.base import DocumentStore, StoreError


@dataclass
class FakeSubscription:
    room_id: str
    after: Optional[float]
    on_added: Callable
    on_modified_reacts: Callable
    on_error: Optional[Callable] = None
    active: bool = True
    unsubscribe_calls: int = 0


class FakeStore(DocumentStore):
    """Document store whose timing and failures are driven by the test.

    * ``gates[room_id]`` (an asyncio.Event) holds ``fetch_recent`` until set.
    * ``failures[room_id]`` is a queue of exceptions raised by successive fetches.
    * ``emit_added`` / ``emit_reacts`` deliver synchronously to active
      subscriptions and deliberately ignore the ``after`` bound.
    """

    def __init__(self) -> None:
        self.messages: Dict[str, List[dict]] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, List[Exception]] = {}
        self.fetch_calls: List[str] = []
        self.subscriptions: List[FakeSubscription] = []
        self.subscribe_error: Optional[Exception] = None
        self.sent: List[tuple] = []
        self.patches: List[tuple] = []
        self.users: Dict[str, Dict[str, Any]] = {}
        self.room_id_watchers: Dict[str, List[Callable]] = {}
        self.user_watchers: List[Callable] = []
        self._token = 0.0

    # -- helpers ------------------------------------------------------------

    def make_doc(self, room_id: str, sender_id: str, text: str, reacts=None) -> dict:
        self._token += 1.0
        doc = {
            "id": f"{room_id}-{int(self._token)}",
            "text": text,
            "senderId": sender_id,
            "createdAt": self._token,
        }
        if reacts is not None:
            doc["reacts"] = reacts
        return doc

    def add_history(self, room_id: str, sender_id: str, text: str, reacts=None) -> dict:
        doc = self.make_doc(room_id, sender_id, text, reacts)
        self.messages.setdefault(room_id, []).append(doc)
        return doc

    def active_subscriptions(self, room_id: Optional[str] = None) -> List[FakeSubscription]:
        return [
            s for s in self.subscriptions
            if s.active and (room_id is None or s.room_id == room_id)
        ]

    def emit_added(self, room_id: str, doc: dict) -> None:
        for sub in self.active_subscriptions(room_id):
            sub.on_added(dict(doc))

    def emit_reacts(self, room_id: str, message_id: str, reacts: dict) -> None:
        for sub in self.active_subscriptions(room_id):
            sub.on_modified_reacts(message_id, {k: list(v) for k, v in reacts.items()})

    # -- DocumentStore ------------------------------------------------------

    async def fetch_recent(self, room_id: str, limit: int = 25) -> List[dict]:
        self.fetch_calls.append(room_id)
        gate = self.gates.get(room_id)
        if gate is not None:
            await gate.wait()
        queued = self.failures.get(room_id)
        if queued:
            raise queued.pop(0)
        docs = self.messages.get(room_id, [])
        return [dict(d) for d in reversed(docs[-limit:])]

    def subscribe(self, room_id, after, on_added, on_modified_reacts, on_error=None):
        if self.subscribe_error is not None:
            raise self.subscribe_error
        sub = FakeSubscription(room_id, after, on_added, on_modified_reacts, on_error)
        self.subscriptions.append(sub)

        def unsubscribe() -> None:
            sub.unsubscribe_calls += 1
            sub.active = False

        return unsubscribe

    async def send(self, room_id: str, text: str, sender_id: str) -> None:
        self.sent.append((room_id, text, sender_id))

    async def patch_reaction(self, room_id, message_id, emoji, sender_id, add) -> None:
        self.patches.append((room_id, message_id, emoji, sender_id, add))

    async def load_user(self, uid: str):
        record = self.users.get(uid)
        return dict(record) if record else None

    async def create_user(self, record: Dict[str, Any]) -> None:
        self.users[record["uid"]] = dict(record)
        self._emit_user(record["uid"])

    async def update_user(self, uid: str, fields: Dict[str, Any]) -> None:
        if uid not in self.users:
            raise StoreError(f"User {uid} not found")
        self.users[uid].update(fields)
        self._emit_user(uid)

    async def update_room_ids(self, uid: str, room_ids: List[str]) -> None:
        self.users[uid]["roomIds"] = list(room_ids)
        for callback in list(self.room_id_watchers.get(uid, [])):
            callback(list(room_ids))

    def watch_room_ids(self, uid, callback):
        self.room_id_watchers.setdefault(uid, []).append(callback)

        def unsubscribe() -> None:
            self.room_id_watchers[uid].remove(callback)

        return unsubscribe

    def watch_users(self, callback):
        self.user_watchers.append(callback)
        for record in list(self.users.values()):
            callback(dict(record))

        def unsubscribe() -> None:
            if callback in self.user_watchers:
                self.user_watchers.remove(callback)

        return unsubscribe

    def _emit_user(self, uid: str) -> None:
        for callback in list(self.user_watchers):
            callback(dict(self.users[uid]))


def shape(blocks) -> List[tuple]:
    """Reduce blocks to ``[(sender_id, [content, ...]), ...]`` for assertions."""
    return [(b.senderId, [m.content for m in b.messages]) for b in blocks]


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Sync policy with instant retries so failure tests stay fast."""
    return SyncSettings(history_retry_delay_seconds=0)
