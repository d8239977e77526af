"""User module: sign-in, profiles, the sender directory and listener lists."""
from .directory import SenderDirectory
from .schemas import (
    ProfileUpdate,
    RoomIdsUpdate,
    SelectedRoomUpdate,
    SenderProfile,
    SignInRequest,
    UserRecord,
)
from .service import UserService, random_colour

__all__ = [
    "ProfileUpdate",
    "RoomIdsUpdate",
    "SelectedRoomUpdate",
    "SenderDirectory",
    "SenderProfile",
    "SignInRequest",
    "UserRecord",
    "UserService",
    "random_colour",
]
