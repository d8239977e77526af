"""DuckDB-backed document store with an in-process change feed.

Messages live in a single ``messages`` table keyed by store-assigned UUIDs;
reaction maps are stored as JSON text. Every write fans out to the live
subscriptions of the affected room through the running event loop
(``loop.call_soon``), so delivery is push-based and never re-enters the
writer's call stack.

Database Schema:
    messages table:
        - id: Store-assigned message UUID
        - room_id: Room the message belongs to
        - text: Message content
        - sender_id: uid of the sender
        - created_at: Creation-order token (seconds, strictly increasing)
        - reacts: JSON object emoji -> [sender ids]
    users table:
        - uid, display_name, colour
        - pronouns, bio: optional profile text
        - room_ids: JSON array, the user's persisted listener list

Thread Safety:
    The DuckDB connection is NOT thread-safe. The store is meant to be
    driven from a single asyncio event loop.
"""
import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import duckdb

from .base import (
    DEFAULT_HISTORY_LIMIT,
    Document,
    DocumentStore,
    OnAdded,
    OnError,
    OnModifiedReacts,
    ReactsPayload,
    RoomIdsCallback,
    StoreError,
    Unsubscribe,
    UserCallback,
)

logger = logging.getLogger(__name__)

# Smallest step between two creation tokens
_TOKEN_EPSILON = 1e-6

_CREATE_MESSAGES = """
CREATE TABLE IF NOT EXISTS messages (
    id          VARCHAR PRIMARY KEY,
    room_id     VARCHAR NOT NULL,
    text        VARCHAR NOT NULL,
    sender_id   VARCHAR NOT NULL,
    created_at  DOUBLE NOT NULL,
    reacts      VARCHAR NOT NULL DEFAULT '{}'
)
"""

_CREATE_USERS = """
CREATE TABLE IF NOT EXISTS users (
    uid          VARCHAR PRIMARY KEY,
    display_name VARCHAR NOT NULL,
    colour       VARCHAR NOT NULL,
    pronouns     VARCHAR,
    bio          VARCHAR,
    room_ids     VARCHAR NOT NULL DEFAULT '[]'
)
"""

_INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_room_created ON messages(room_id, created_at)"

_USER_COLUMNS = "uid, display_name, colour, pronouns, bio, room_ids"

# Record field -> column for profile updates
_PROFILE_COLUMNS = {
    "displayName": "display_name",
    "colour": "colour",
    "pronouns": "pronouns",
    "bio": "bio",
}


@dataclass(eq=False)
class _Subscription:
    room_id: str
    after: Optional[float]
    on_added: OnAdded
    on_modified_reacts: OnModifiedReacts
    on_error: Optional[OnError] = None
    active: bool = True

    def wants(self, created_at: float) -> bool:
        return self.after is None or created_at > self.after


@dataclass(eq=False)
class _UserWatch:
    callback: UserCallback
    active: bool = True


class DuckDBDocumentStore(DocumentStore):
    """Ordered message collection with change notifications, backed by DuckDB.

    Attributes:
        _db_path: Path to the DuckDB file, or ":memory:".
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._subscriptions: Dict[str, List[_Subscription]] = {}
        self._room_id_watchers: Dict[str, List[RoomIdsCallback]] = {}
        self._user_watchers: List[_UserWatch] = []
        self._last_token = 0.0
        self._initialize_db()
        logger.info("[Store] Initialized with db=%s", self._db_path)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute(_CREATE_MESSAGES)
        conn.execute(_CREATE_USERS)
        conn.execute(_INDEX)
        row = conn.execute("SELECT MAX(created_at) FROM messages").fetchone()
        if row and row[0] is not None:
            self._last_token = float(row[0])

    def close(self) -> None:
        """Detach every listener and close the database connection."""
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.active = False
        self._subscriptions.clear()
        self._room_id_watchers.clear()
        for watch in self._user_watchers:
            watch.active = False
        self._user_watchers.clear()
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    # -----------------------------------------------------------------------
    # Messages
    # -----------------------------------------------------------------------

    async def fetch_recent(
        self, room_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> List[Document]:
        try:
            rows = self._get_connection().execute(
                """
                SELECT id, text, sender_id, created_at, reacts
                FROM messages
                WHERE room_id = ?
                ORDER BY created_at DESC
                """,
                [room_id],
            ).fetchmany(limit)
        except duckdb.Error as exc:
            raise StoreError(f"fetch_recent failed for room {room_id}: {exc}") from exc
        return [self._row_to_document(row) for row in rows]

    def subscribe(
        self,
        room_id: str,
        after: Optional[float],
        on_added: OnAdded,
        on_modified_reacts: OnModifiedReacts,
        on_error: Optional[OnError] = None,
    ) -> Unsubscribe:
        sub = _Subscription(room_id, after, on_added, on_modified_reacts, on_error)

        # Initial snapshot: everything already past the cursor
        query = "SELECT id, text, sender_id, created_at, reacts FROM messages WHERE room_id = ?"
        params: List[Any] = [room_id]
        if after is not None:
            query += " AND created_at > ?"
            params.append(after)
        query += " ORDER BY created_at ASC"
        try:
            rows = self._get_connection().execute(query, params).fetchall()
        except duckdb.Error as exc:
            raise StoreError(f"subscribe failed for room {room_id}: {exc}") from exc

        self._subscriptions.setdefault(room_id, []).append(sub)
        for row in rows:
            self._dispatch(sub, sub.on_added, self._row_to_document(row))

        logger.debug(
            "[Store] Subscribed to room %s after=%s (%d in initial snapshot)",
            room_id, after, len(rows),
        )

        def unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            subs = self._subscriptions.get(room_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(room_id, None)
            logger.debug("[Store] Unsubscribed from room %s", room_id)

        return unsubscribe

    async def send(self, room_id: str, text: str, sender_id: str) -> None:
        message_id = str(uuid.uuid4())
        created_at = self._next_token()
        try:
            self._get_connection().execute(
                """
                INSERT INTO messages (id, room_id, text, sender_id, created_at, reacts)
                VALUES (?, ?, ?, ?, ?, '{}')
                """,
                [message_id, room_id, text, sender_id, created_at],
            )
        except duckdb.Error as exc:
            raise StoreError(f"send failed for room {room_id}: {exc}") from exc

        document = {
            "id": message_id,
            "text": text,
            "senderId": sender_id,
            "createdAt": created_at,
            "reacts": {},
        }
        for sub in list(self._subscriptions.get(room_id, [])):
            if sub.wants(created_at):
                self._dispatch(sub, sub.on_added, dict(document))

    async def patch_reaction(
        self,
        room_id: str,
        message_id: str,
        emoji: str,
        sender_id: str,
        add: bool,
    ) -> None:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT reacts FROM messages WHERE room_id = ? AND id = ?",
                [room_id, message_id],
            ).fetchone()
        except duckdb.Error as exc:
            raise StoreError(f"patch_reaction failed for {message_id}: {exc}") from exc
        if row is None:
            raise StoreError(f"Message {message_id} not found in room {room_id}")

        reacts: ReactsPayload = json.loads(row[0] or "{}")
        senders = reacts.get(emoji, [])
        if add:
            if sender_id in senders:
                return
            reacts[emoji] = senders + [sender_id]
        else:
            if sender_id not in senders:
                return
            remaining = [s for s in senders if s != sender_id]
            if remaining:
                reacts[emoji] = remaining
            else:
                reacts.pop(emoji, None)

        try:
            conn.execute(
                "UPDATE messages SET reacts = ? WHERE room_id = ? AND id = ?",
                [json.dumps(reacts), room_id, message_id],
            )
        except duckdb.Error as exc:
            raise StoreError(f"patch_reaction failed for {message_id}: {exc}") from exc

        for sub in list(self._subscriptions.get(room_id, [])):
            payload = {key: list(value) for key, value in reacts.items()}
            self._dispatch(sub, sub.on_modified_reacts, message_id, payload)

    # -----------------------------------------------------------------------
    # Users
    # -----------------------------------------------------------------------

    async def load_user(self, uid: str) -> Optional[Dict[str, Any]]:
        try:
            row = self._get_connection().execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE uid = ?",
                [uid],
            ).fetchone()
        except duckdb.Error as exc:
            raise StoreError(f"load_user failed for {uid}: {exc}") from exc
        return self._row_to_user(row) if row is not None else None

    async def create_user(self, record: Dict[str, Any]) -> None:
        try:
            self._get_connection().execute(
                """
                INSERT INTO users (uid, display_name, colour, pronouns, bio, room_ids)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    record["uid"],
                    record["displayName"],
                    record["colour"],
                    record.get("pronouns"),
                    record.get("bio"),
                    json.dumps(list(record.get("roomIds", []))),
                ],
            )
        except duckdb.Error as exc:
            raise StoreError(f"create_user failed for {record.get('uid')}: {exc}") from exc
        await self._notify_user_watchers(record["uid"])

    async def update_user(self, uid: str, fields: Dict[str, Any]) -> None:
        assignments = []
        params: List[Any] = []
        for key, value in fields.items():
            column = _PROFILE_COLUMNS.get(key)
            if column is None:
                raise StoreError(f"update_user: unknown field {key!r}")
            assignments.append(f"{column} = ?")
            params.append(value)
        if not assignments:
            return

        conn = self._get_connection()
        try:
            exists = conn.execute("SELECT 1 FROM users WHERE uid = ?", [uid]).fetchone()
            if exists is None:
                raise StoreError(f"User {uid} not found")
            conn.execute(
                f"UPDATE users SET {', '.join(assignments)} WHERE uid = ?",
                params + [uid],
            )
        except duckdb.Error as exc:
            raise StoreError(f"update_user failed for {uid}: {exc}") from exc
        await self._notify_user_watchers(uid)

    async def update_room_ids(self, uid: str, room_ids: List[str]) -> None:
        try:
            self._get_connection().execute(
                "UPDATE users SET room_ids = ? WHERE uid = ?",
                [json.dumps(list(room_ids)), uid],
            )
        except duckdb.Error as exc:
            raise StoreError(f"update_room_ids failed for {uid}: {exc}") from exc

        for callback in list(self._room_id_watchers.get(uid, [])):
            self._schedule(callback, list(room_ids))
        await self._notify_user_watchers(uid)

    def watch_room_ids(self, uid: str, callback: RoomIdsCallback) -> Unsubscribe:
        watchers = self._room_id_watchers.setdefault(uid, [])
        watchers.append(callback)

        def unsubscribe() -> None:
            current = self._room_id_watchers.get(uid, [])
            if callback in current:
                current.remove(callback)
            if not current:
                self._room_id_watchers.pop(uid, None)

        return unsubscribe

    def watch_users(self, callback: UserCallback) -> Unsubscribe:
        try:
            rows = self._get_connection().execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY uid"
            ).fetchall()
        except duckdb.Error as exc:
            raise StoreError(f"watch_users failed: {exc}") from exc

        watch = _UserWatch(callback)
        self._user_watchers.append(watch)
        for row in rows:
            self._deliver_user(watch, self._row_to_user(row))

        def unsubscribe() -> None:
            watch.active = False
            if watch in self._user_watchers:
                self._user_watchers.remove(watch)

        return unsubscribe

    async def _notify_user_watchers(self, uid: str) -> None:
        if not self._user_watchers:
            return
        record = await self.load_user(uid)
        if record is None:
            return
        for watch in list(self._user_watchers):
            self._deliver_user(watch, dict(record))

    def _deliver_user(self, watch: _UserWatch, record: Dict[str, Any]) -> None:
        def deliver() -> None:
            if not watch.active:
                return
            try:
                watch.callback(record)
            except Exception:
                logger.exception("[Store] User watcher failed for %s", record.get("uid"))

        self._schedule(deliver)

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    def _next_token(self) -> float:
        token = max(time.time(), self._last_token + _TOKEN_EPSILON)
        self._last_token = token
        return token

    def _dispatch(self, sub: _Subscription, callback: Callable[..., None], *args: Any) -> None:
        def deliver() -> None:
            # Checked at delivery time so unsubscribe also drops queued events
            if not sub.active:
                return
            try:
                callback(*args)
            except Exception as exc:
                logger.exception("[Store] Listener for room %s failed", sub.room_id)
                if sub.on_error is not None:
                    sub.on_error(exc)

        self._schedule(deliver)

    @staticmethod
    def _schedule(callback: Callable[..., None], *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            callback(*args)
            return
        loop.call_soon(callback, *args)

    @staticmethod
    def _row_to_document(row) -> Document:
        return {
            "id": row[0],
            "text": row[1],
            "senderId": row[2],
            "createdAt": float(row[3]),
            "reacts": json.loads(row[4] or "{}"),
        }

    @staticmethod
    def _row_to_user(row) -> Dict[str, Any]:
        return {
            "uid": row[0],
            "displayName": row[1],
            "colour": row[2],
            "pronouns": row[3],
            "bio": row[4],
            "roomIds": json.loads(row[5] or "[]"),
        }
