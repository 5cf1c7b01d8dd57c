from fastapi import APIRouter, Depends, HTTPException, Query, Request
from typing import List, Optional

from backend import RedisBackend, get_backend
from errors import StoreUnavailable
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, MessagesResponse, Room, RoomDetailsResponse
from services.directory import RoomDirectory
from services.relay import MessageRelay
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def ws_url_for(request: Request) -> str:
    base_url = str(request.base_url).rstrip('/')
    # Replace http/https with ws/wss
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws"


def client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@rooms_router.post("/", response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request, backend: RedisBackend = Depends(get_backend)):
    # Joining happens over the websocket so the occupant record can be tied to that connection
    logger.info(f"Room creation request from {client_host(request)}, name: {room.name}, private: {room.is_private}")
    try:
        room_id = await RoomDirectory(backend, presence=None).create_room(room.name, room.is_private, room.password)
    except StoreUnavailable as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")
    return CreateRoomResponse(room_id=room_id, ws_url=ws_url_for(request))


@rooms_router.get("/", response_model=List[Room])
async def list_rooms(backend: RedisBackend = Depends(get_backend)):
    try:
        return await RoomDirectory(backend, presence=None).list_available_rooms()
    except StoreUnavailable as e:
        logger.error(f"Error listing rooms: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to list rooms")


async def _load_room(backend: RedisBackend, room_id: str, password: Optional[str]) -> Room:
    try:
        room = await RoomDirectory(backend, presence=None).get_room(room_id)
    except StoreUnavailable as e:
        logger.error(f"Error loading room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to load room")
    if room is None:
        logger.warning(f"Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    if room.is_private and room.password != password:
        logger.warning(f"Invalid password for room {room_id}")
        raise HTTPException(status_code=401, detail="Invalid password")
    return room


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(
    room_id: str,
    password: Optional[str] = Query(None, description="Room password (required if room is private)"),
    backend: RedisBackend = Depends(get_backend),
):
    """
    Get room details including the current occupants.
    Password is required if the room is private.
    """
    room = await _load_room(backend, room_id, password)
    return RoomDetailsResponse(
        room_id=room.id,
        name=room.name,
        created_at=room.created_at,
        last_activity=room.last_activity,
        message_count=room.message_count,
        online_users_count=room.occupant_count,
        online_users=list(room.users.values()),
        is_private=room.is_private,
    )


@rooms_router.get("/{room_id}/messages", response_model=MessagesResponse)
async def get_messages(
    room_id: str,
    password: Optional[str] = Query(None, description="Room password (required if room is private)"),
    backend: RedisBackend = Depends(get_backend),
):
    await _load_room(backend, room_id, password)
    try:
        messages = await MessageRelay(backend).get_recent_messages(room_id)
    except StoreUnavailable as e:
        logger.error(f"Error loading messages of room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to load messages")
    return MessagesResponse(room_id=room_id, messages=messages)


@rooms_router.delete("/{room_id}/messages")
async def clear_messages(
    room_id: str,
    password: Optional[str] = Query(None, description="Room password (required if room is private)"),
    backend: RedisBackend = Depends(get_backend),
):
    await _load_room(backend, room_id, password)
    await MessageRelay(backend).clear_room_messages(room_id)
    logger.info(f"Messages of room {room_id} cleared")
    return {"message": "Messages cleared"}
