"""Live directory of user profiles used to label message blocks.

While a user is signed in the directory follows every user record in the
store, so display names and colours shown next to a sender's block update
as soon as that sender edits their profile.
"""
import logging
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from chatsync.store.base import DocumentStore, Unsubscribe

from .schemas import SenderProfile

logger = logging.getLogger(__name__)

DirectoryObserver = Callable[[str], None]


class SenderDirectory:
    """uid -> ``SenderProfile`` mapping kept current from the store."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store
        self._profiles: Dict[str, SenderProfile] = {}
        self._observers: List[DirectoryObserver] = []
        self._unwatch: Optional[Unsubscribe] = None

    @property
    def following(self) -> bool:
        return self._unwatch is not None

    def start(self) -> None:
        """Begin following user records. No-op when already following."""
        if self._unwatch is not None:
            return
        self._unwatch = self._store.watch_users(self._on_user)
        logger.info("[Users] Sender directory following user records")

    def stop(self) -> None:
        """Stop following and forget every profile."""
        unwatch, self._unwatch = self._unwatch, None
        if unwatch is not None:
            unwatch()
        self._profiles.clear()

    def get(self, uid: str) -> Optional[SenderProfile]:
        return self._profiles.get(uid)

    def others(self, uid: Optional[str]) -> List[SenderProfile]:
        """Every known profile except ``uid``'s, ordered by uid."""
        return [p for key, p in sorted(self._profiles.items()) if key != uid]

    def labels(self, uids: Iterable[str]) -> Dict[str, SenderProfile]:
        """Profiles of the given senders that are known to the directory."""
        return {uid: self._profiles[uid] for uid in uids if uid in self._profiles}

    def add_observer(self, observer: DirectoryObserver) -> Callable[[], None]:
        """Call ``observer(uid)`` whenever a profile is added or changed."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    def _on_user(self, record: dict) -> None:
        if self._unwatch is None:
            return
        try:
            profile = SenderProfile.model_validate(record)
        except ValidationError as exc:
            logger.warning(
                "[Users] Ignoring malformed user record %s: %s",
                record.get("uid", "<no uid>"),
                exc.errors(include_url=False),
            )
            return
        if self._profiles.get(profile.uid) == profile:
            return
        self._profiles[profile.uid] = profile
        for observer in list(self._observers):
            try:
                observer(profile.uid)
            except Exception as e:
                logger.error(f"[Users] Directory observer failed for {profile.uid}: {e}")
