"""User sign-in, profiles and persisted listener lists.

On sign-in the user's record is read from the store, or created with a
random colour and the default listener list when the user is new. The
session context is then switched to that identity in one step, and the
persisted listener list is watched so that changes made elsewhere re-drive
room synchronization. While signed in, the sender directory follows every
user's profile.
"""
import logging
import random
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from chatsync.store.base import DocumentStore, StoreError
from chatsync.sync.session import Identity, SessionContext

from .directory import SenderDirectory
from .schemas import ProfileUpdate, SenderProfile, UserRecord

logger = logging.getLogger(__name__)

_HEX_DIGITS = "0123456789ABCDEF"


def random_colour(rng: Optional[random.Random] = None) -> str:
    """Return a random ``#RRGGBB`` colour."""
    rng = rng or random
    return "#" + "".join(rng.choice(_HEX_DIGITS) for _ in range(6))


class UserService:
    """Signs users in and out and keeps their profile and listener list in sync.

    Attributes:
        directory: Profiles of every user, followed while signed in.
    """

    def __init__(
        self,
        store: DocumentStore,
        session: SessionContext,
        default_room_ids: Optional[List[str]] = None,
        directory: Optional[SenderDirectory] = None,
    ) -> None:
        self._store = store
        self._session = session
        self._default_room_ids = list(default_room_ids or [])
        self._unwatch: Optional[Callable[[], None]] = None
        self._profile: Optional[UserRecord] = None
        self.directory = directory or SenderDirectory(store)

    @property
    def profile(self) -> Optional[UserRecord]:
        return self._profile

    async def sign_in(self, uid: str, display_name: Optional[str] = None) -> UserRecord:
        """Load or create the user, then make them the session identity.

        Raises:
            StoreError: If the user record cannot be read, is corrupt, or
                cannot be written.
        """
        data = await self._store.load_user(uid)
        if data is None:
            record = UserRecord(
                uid=uid,
                displayName=display_name or "Anonymous",
                colour=random_colour(),
                roomIds=list(self._default_room_ids),
            )
            await self._store.create_user(record.model_dump())
            logger.info("[Users] Created user %s with rooms %s", uid, record.roomIds)
        else:
            try:
                record = UserRecord.model_validate(data)
            except ValidationError as exc:
                logger.error("[Users] Stored record for %s is invalid: %s", uid, exc)
                raise StoreError(f"User record for {uid} is invalid") from exc
            logger.info("[Users] Loaded user %s with rooms %s", uid, record.roomIds)

        self._stop_watching()
        self._profile = record
        self._session.sign_in(
            Identity(uid=record.uid, displayName=record.displayName),
            record.roomIds,
        )
        self._unwatch = self._store.watch_room_ids(
            uid, lambda room_ids: self._on_room_ids_changed(uid, room_ids)
        )
        self.directory.start()
        return record

    def sign_out(self) -> None:
        self._stop_watching()
        self.directory.stop()
        self._profile = None
        self._session.sign_out()

    async def update_profile(self, update: ProfileUpdate) -> Optional[UserRecord]:
        """Persist profile edits for the signed-in user.

        Only fields present in ``update`` change; ``displayName`` and
        ``colour`` cannot be cleared.

        Returns:
            The updated record, or None when nobody is signed in.
        """
        if self._profile is None:
            logger.debug("[Users] Ignored profile update: not signed in")
            return None
        fields = update.model_dump(exclude_unset=True)
        for required in ("displayName", "colour"):
            if fields.get(required, "") is None:
                fields.pop(required)
        if not fields:
            return self._profile

        await self._store.update_user(self._profile.uid, fields)
        self._profile = self._profile.model_copy(update=fields)
        logger.info("[Users] Updated profile of %s: %s", self._profile.uid, sorted(fields))
        if "displayName" in fields:
            self._session.sign_in(
                Identity(uid=self._profile.uid, displayName=self._profile.displayName),
                self._profile.roomIds,
            )
        return self._profile

    def sender_labels(self, uids: Iterable[str]) -> Dict[str, SenderProfile]:
        """Profiles for labelling blocks; the signed-in user uses their own record."""
        uids = list(uids)
        labels = self.directory.labels(uids)
        if self._profile is not None and self._profile.uid in uids:
            labels[self._profile.uid] = self._profile.public()
        return labels

    async def update_room_ids(self, room_ids: List[str]) -> Optional[UserRecord]:
        """Persist a new listener list for the signed-in user.

        Returns:
            The updated record, or None when nobody is signed in.
        """
        if self._profile is None:
            logger.debug("[Users] Ignored listener update: not signed in")
            return None
        room_ids = list(dict.fromkeys(r for r in room_ids if r))
        await self._store.update_room_ids(self._profile.uid, room_ids)
        # Apply locally right away; the store echo is then a no-op
        self._apply_room_ids(room_ids)
        return self._profile

    def _on_room_ids_changed(self, uid: str, room_ids: List[str]) -> None:
        # A queued change for a previous identity must not leak into this one
        if self._profile is None or self._profile.uid != uid:
            return
        self._apply_room_ids(room_ids)

    def _apply_room_ids(self, room_ids: List[str]) -> None:
        self._profile = self._profile.model_copy(update={"roomIds": list(room_ids)})
        self._session.set_room_ids(room_ids)

    def _stop_watching(self) -> None:
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
