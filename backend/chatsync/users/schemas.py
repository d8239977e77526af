"""Pydantic schemas for user records and the session endpoints."""
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

COLOUR_PATTERN = r"^#[0-9A-F]{6}$"


def _upper_colour(value: Any) -> Any:
    return value.upper() if isinstance(value, str) else value


class SenderProfile(BaseModel):
    """Public part of a user record, used to label message blocks."""
    uid: str = Field(..., min_length=1)
    displayName: str = "Anonymous"
    colour: str = Field(..., pattern=COLOUR_PATTERN)
    pronouns: Optional[str] = None
    bio: Optional[str] = None

    @field_validator("colour", mode="before")
    @classmethod
    def _normalize_colour(cls, value: Any) -> Any:
        return _upper_colour(value)


class UserRecord(SenderProfile):
    """Persisted user record, including the listener list."""
    roomIds: List[str] = Field(default_factory=list)

    def public(self) -> SenderProfile:
        return SenderProfile(**self.model_dump(exclude={"roomIds"}))


class SignInRequest(BaseModel):
    """Request body for signing in (identity comes from the auth provider)."""
    uid: str = Field(..., min_length=1)
    displayName: Optional[str] = None


class ProfileUpdate(BaseModel):
    """Request body for editing the signed-in user's profile.

    Only fields present in the request are changed. An empty ``pronouns`` or
    ``bio`` clears it.
    """
    displayName: Optional[str] = Field(default=None, min_length=1)
    colour: Optional[str] = Field(default=None, pattern=COLOUR_PATTERN)
    pronouns: Optional[str] = None
    bio: Optional[str] = None

    @field_validator("colour", mode="before")
    @classmethod
    def _normalize_colour(cls, value: Any) -> Any:
        return _upper_colour(value)

    @field_validator("pronouns", "bio")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None


class RoomIdsUpdate(BaseModel):
    """Request body for replacing the listener list."""
    roomIds: List[str] = Field(default_factory=list)


class SelectedRoomUpdate(BaseModel):
    roomId: str = Field(..., min_length=1)
