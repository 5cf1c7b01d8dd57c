from typing import Callable, List, Optional

from pydantic import ValidationError

from errors import StoreUnavailable
from schemas.rooms import CreateAndJoinResult, Room, User
from services.identity import generate_room_id, now_ms
from services.subscriptions import Subscription
from logging_config import get_logger

logger = get_logger(__name__)

CREATE_FAILED_MESSAGE = "Failed to create room"


def room_from_data(room_id: str, data: dict) -> Room:
    """Build a Room from stored metadata, filling the defaults clients expect."""
    users = {}
    for user_id, user in (data.get("users") or {}).items():
        try:
            users[user_id] = User(**user)
        except ValidationError as e:
            logger.warning(f"Skipping malformed user {user_id} in room {room_id}: {e}")
    now = now_ms()
    return Room(
        id=room_id,
        name=data.get("name") or f"Room {room_id}",
        users=users,
        created_at=data.get("created_at") or now,
        last_activity=data.get("last_activity") or now,
        message_count=data.get("message_count") or 0,
        is_private=bool(data.get("is_private", False)),
        password=data.get("password"),
    )


class RoomDirectory:
    def __init__(self, backend, presence):
        self.backend = backend
        self.presence = presence

    async def create_room(self, name: str, is_private: bool = False, password: Optional[str] = None) -> str:
        """Create a room and return its id. Store failures propagate as StoreUnavailable."""
        room_id = generate_room_id()
        now = now_ms()
        room_data = {
            "name": name,
            "created_at": now,
            "last_activity": now,
            "message_count": 0,
            "is_private": is_private,
        }
        if is_private and password:
            room_data["password"] = password
        await self.backend.create_room(room_id, room_data)
        logger.info(f"Room {room_id} created: name={name}, private={is_private}")
        return room_id

    async def create_and_join_room(self, name: str, username: str, is_private: bool = False,
                                   password: Optional[str] = None) -> CreateAndJoinResult:
        try:
            room_id = await self.create_room(name, is_private, password)
        except StoreUnavailable as e:
            logger.error(f"Error creating room {name}: {e}", exc_info=True)
            return CreateAndJoinResult(success=False, error=CREATE_FAILED_MESSAGE, code=e.code)

        join_result = await self.presence.join_room(room_id, username, password, is_room_creator=True)
        if join_result.success:
            return CreateAndJoinResult(success=True, room_id=room_id, user_id=join_result.user_id)
        return CreateAndJoinResult(success=False, error=join_result.error, code=join_result.code)

    async def get_room(self, room_id: str) -> Optional[Room]:
        data = await self.backend.read_room(room_id)
        if data is None:
            return None
        return room_from_data(room_id, data)

    async def list_available_rooms(self) -> List[Room]:
        """Rooms with at least one occupant, most recently active first."""
        rooms = []
        stored = await self.backend.read_rooms(await self.backend.list_room_ids())
        for room_id, data in stored.items():
            room = room_from_data(room_id, data)
            # Empty rooms are hidden even before the deletion sweep gets to them
            if room.occupant_count > 0:
                rooms.append(room)
        rooms.sort(key=lambda room: room.last_activity, reverse=True)
        return rooms

    async def get_available_rooms(self, callback: Callable[[List[Room]], object]) -> Subscription:
        subscription = Subscription(
            self.backend,
            [self.backend.get_rooms_channel_name()],
            self.list_available_rooms,
            callback,
            name="rooms",
        )
        return await subscription.start()

    async def listen_to_room(self, room_id: str, callback: Callable[[Optional[Room]], object]) -> Subscription:
        subscription = Subscription(
            self.backend,
            [self.backend.get_room_channel_name(room_id)],
            lambda: self.get_room(room_id),
            callback,
            name=f"room:{room_id}",
        )
        return await subscription.start()
