"""Explicit session context: who is signed in and which rooms they follow.

Replaces ambient shared state with one object that is passed by reference to
whoever needs it. Every mutation notifies subscribers synchronously, once per
effective change.
"""
import logging
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SessionListener = Callable[["SessionContext"], None]


class Identity(BaseModel):
    """The signed-in user."""
    uid: str = Field(..., min_length=1)
    displayName: str = "Anonymous"


def _unique(room_ids: List[str]) -> List[str]:
    return list(dict.fromkeys(room_id for room_id in room_ids if room_id))


class SessionContext:
    """Holds the signed-in identity and its persisted listener list."""

    def __init__(self) -> None:
        self._identity: Optional[Identity] = None
        self._room_ids: List[str] = []
        self._listeners: List[SessionListener] = []

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def uid(self) -> Optional[str]:
        return self._identity.uid if self._identity else None

    @property
    def room_ids(self) -> List[str]:
        return list(self._room_ids)

    def desired_room_ids(self) -> List[str]:
        """Rooms that should be synchronized right now (none when signed out)."""
        if self._identity is None:
            return []
        return list(self._room_ids)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def sign_in(self, identity: Identity, room_ids: List[str]) -> None:
        """Switch to ``identity`` and its listener list in a single change."""
        room_ids = _unique(room_ids)
        if self._identity == identity and self._room_ids == room_ids:
            return
        self._identity = identity
        self._room_ids = room_ids
        logger.info("[Session] Signed in as %s with rooms %s", identity.uid, room_ids)
        self._emit()

    def sign_out(self) -> None:
        if self._identity is None and not self._room_ids:
            return
        logger.info("[Session] Signed out %s", self.uid)
        self._identity = None
        self._room_ids = []
        self._emit()

    def set_room_ids(self, room_ids: List[str]) -> None:
        room_ids = _unique(room_ids)
        if room_ids == self._room_ids:
            return
        self._room_ids = room_ids
        logger.info("[Session] Listener list changed to %s", room_ids)
        self._emit()

    def _emit(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"[Session] Listener failed: {e}")
