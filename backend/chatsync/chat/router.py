"""Chat router providing HTTP and WebSocket endpoints over the sync layer.

This module provides:
    - POST /session/sign-in: Sign in (load or create user, start room sync)
    - POST /session/sign-out: Sign out (stop every room)
    - GET /session: Current identity, listener list and selected room
    - PUT /session/rooms: Replace the persisted listener list
    - PUT /session/selected-room: Change the displayed room
    - PUT /session/profile: Edit display name, colour, pronouns, bio
    - GET /users: Profiles of every other user (sender directory)
    - GET /rooms: Sync status of every synchronized room
    - GET /rooms/{room_id}/blocks: Grouped timeline of a room
    - POST /rooms/{room_id}/messages: Send a message
    - POST/DELETE /rooms/{room_id}/messages/{message_id}/reactions: React
    - GET /reactions/palette: Emojis offered by the reaction menu
    - WebSocket /ws/rooms/{room_id}: Live block snapshots of a room

Writes never touch room views directly; their effect arrives through the
live feed like any other change.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from chatsync.store.base import StoreError
from chatsync.sync.client import ChatClient
from chatsync.users.schemas import (
    ProfileUpdate,
    RoomIdsUpdate,
    SelectedRoomUpdate,
    SignInRequest,
)
from chatsync.users.service import UserService

from .manager import broadcaster

logger = logging.getLogger(__name__)

router = APIRouter()

_chat_client: Optional[ChatClient] = None
_user_service: Optional[UserService] = None


def get_chat_client() -> Optional[ChatClient]:
    """Return the global ChatClient, or None if not configured."""
    return _chat_client


def set_chat_client(client: Optional[ChatClient]) -> None:
    """Set (or clear) the global ChatClient."""
    global _chat_client
    _chat_client = client


def get_user_service() -> Optional[UserService]:
    """Return the global UserService, or None if not configured."""
    return _user_service


def set_user_service(service: Optional[UserService]) -> None:
    """Set (or clear) the global UserService."""
    global _user_service
    _user_service = service


def _not_configured() -> JSONResponse:
    logger.warning("[chat] Sync layer not configured, returning 503")
    return JSONResponse({"error": "Chat sync not configured"}, status_code=503)


class SendMessageRequest(BaseModel):
    text: str = Field(..., description="Message content")


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1, description="Emoji to add")


def _session_payload(client: ChatClient) -> dict:
    identity = client.session.identity
    return {
        "signedIn": identity is not None,
        "identity": identity.model_dump() if identity else None,
        "roomIds": client.session.room_ids,
        "selectedRoomId": client.selected_room_id,
    }


# =============================================================================
# Session
# =============================================================================


@router.post("/session/sign-in")
async def sign_in(request: SignInRequest) -> JSONResponse:
    """Sign a user in and wait for their rooms' history to load.

    Returns:
        JSON with the user record and the session state.
    """
    client, users = get_chat_client(), get_user_service()
    if client is None or users is None:
        return _not_configured()

    try:
        record = await users.sign_in(request.uid, request.displayName)
    except StoreError as e:
        logger.error(f"[chat] Sign-in failed for {request.uid}: {e}")
        return JSONResponse({"error": "User store unavailable"}, status_code=502)

    await client.listeners.settle()
    return JSONResponse({"user": record.model_dump(), **_session_payload(client)})


@router.post("/session/sign-out")
async def sign_out() -> JSONResponse:
    client, users = get_chat_client(), get_user_service()
    if client is None or users is None:
        return _not_configured()
    users.sign_out()
    return JSONResponse(_session_payload(client))


@router.get("/session")
async def get_session() -> JSONResponse:
    client = get_chat_client()
    if client is None:
        return _not_configured()
    return JSONResponse(_session_payload(client))


@router.put("/session/rooms")
async def update_rooms(request: RoomIdsUpdate) -> JSONResponse:
    """Replace the signed-in user's listener list.

    Rooms added to the list start synchronizing; rooms removed stop.
    """
    client, users = get_chat_client(), get_user_service()
    if client is None or users is None:
        return _not_configured()
    if client.session.identity is None:
        return JSONResponse({"error": "Not signed in"}, status_code=401)

    try:
        await users.update_room_ids(request.roomIds)
    except StoreError as e:
        logger.error(f"[chat] Listener update failed: {e}")
        return JSONResponse({"error": "User store unavailable"}, status_code=502)

    await client.listeners.settle()
    return JSONResponse(_session_payload(client))


@router.put("/session/selected-room")
async def select_room(request: SelectedRoomUpdate) -> JSONResponse:
    client = get_chat_client()
    if client is None:
        return _not_configured()
    client.selected_room_id = request.roomId
    return JSONResponse(_session_payload(client))


@router.put("/session/profile")
async def update_profile(request: ProfileUpdate) -> JSONResponse:
    """Edit the signed-in user's profile.

    Returns:
        JSON with the updated user record; 401 when not signed in.
    """
    users = get_user_service()
    if users is None:
        return _not_configured()
    if users.profile is None:
        return JSONResponse({"error": "Not signed in"}, status_code=401)

    try:
        record = await users.update_profile(request)
    except StoreError as e:
        logger.error(f"[chat] Profile update failed: {e}")
        return JSONResponse({"error": "User store unavailable"}, status_code=502)
    return JSONResponse({"user": record.model_dump()})


@router.get("/users")
async def list_users() -> JSONResponse:
    """Profiles of every user other than the signed-in one."""
    users = get_user_service()
    if users is None:
        return _not_configured()
    uid = users.profile.uid if users.profile else None
    return JSONResponse({
        "users": [profile.model_dump() for profile in users.directory.others(uid)]
    })


# =============================================================================
# Rooms
# =============================================================================


@router.get("/rooms")
async def list_rooms() -> JSONResponse:
    client = get_chat_client()
    if client is None:
        return _not_configured()
    return JSONResponse({
        "rooms": [status.model_dump(mode="json") for status in client.room_statuses()]
    })


@router.get("/rooms/{room_id}/blocks")
async def get_blocks(room_id: str) -> JSONResponse:
    """Get the grouped timeline of a synchronized room.

    Returns:
        JSON with the room's blocks and sender labels, or 404 if the room is
        not synchronized.
    """
    client = get_chat_client()
    if client is None:
        return _not_configured()
    blocks = client.blocks(room_id)
    if blocks is None:
        return JSONResponse({"error": f"Room {room_id} is not synchronized"}, status_code=404)
    users = get_user_service()
    labels = users.sender_labels(block.senderId for block in blocks) if users else {}
    return JSONResponse({
        "roomId": room_id,
        "blocks": [block.model_dump() for block in blocks],
        "senders": {uid: profile.model_dump() for uid, profile in labels.items()},
    })


@router.post("/rooms/{room_id}/messages", status_code=202)
async def send_message(room_id: str, request: SendMessageRequest) -> JSONResponse:
    """Send a message as the signed-in user.

    Returns:
        202 with ``accepted`` false when the write was dropped (signed out,
        blank text) or the store rejected it.
    """
    client = get_chat_client()
    if client is None:
        return _not_configured()
    accepted = await client.send_message(room_id, request.text)
    return JSONResponse({"accepted": accepted}, status_code=202)


@router.post("/rooms/{room_id}/messages/{message_id}/reactions", status_code=202)
async def add_reaction(room_id: str, message_id: str, request: ReactionRequest) -> JSONResponse:
    client = get_chat_client()
    if client is None:
        return _not_configured()
    accepted = await client.add_reaction(room_id, message_id, request.emoji)
    return JSONResponse({"accepted": accepted}, status_code=202)


@router.delete("/rooms/{room_id}/messages/{message_id}/reactions", status_code=202)
async def remove_reaction(
    room_id: str,
    message_id: str,
    emoji: str = Query(..., min_length=1, description="Emoji to remove"),
) -> JSONResponse:
    client = get_chat_client()
    if client is None:
        return _not_configured()
    accepted = await client.remove_reaction(room_id, message_id, emoji)
    return JSONResponse({"accepted": accepted}, status_code=202)


@router.get("/reactions/palette")
async def reaction_palette() -> JSONResponse:
    client = get_chat_client()
    if client is None:
        return _not_configured()
    return JSONResponse({"palette": client.reaction_palette})


# =============================================================================
# WebSocket
# =============================================================================


@router.websocket("/ws/rooms/{room_id}")
async def room_view_endpoint(websocket: WebSocket, room_id: str) -> None:
    """WebSocket endpoint streaming a room's grouped timeline.

    Protocol Flow:
        1. Client connects → Server sends {type: "blocks", roomId, synced, blocks, senders}
        2. On every view change → Server sends the same payload again
        3. Client messages are ignored; writes go through the HTTP endpoints
    """
    logger.info(f"[WS] New watcher for room: {room_id}")
    await broadcaster.connect(websocket, room_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        broadcaster.disconnect(websocket, room_id)
        logger.info(
            f"[WS] Watcher left room {room_id}; "
            f"{broadcaster.get_room_size(room_id)} remaining"
        )
