from typing import Optional

from constants import EMPTY_ROOM_CHECK_DELAY
from errors import ChatError, InvalidPassword, InvalidUsername, StoreUnavailable
from schemas.rooms import JoinResult, User
from services.identity import generate_user_color, generate_user_id, now_ms
from services.sessions import SessionEntry
from logging_config import get_logger

logger = get_logger(__name__)

JOIN_FAILED_MESSAGE = "Failed to join room"


class PresenceService:
    """Join, leave and typing state for one client connection.

    The store is shared with every other client and offers no multi-key
    transactions, so the joining guard and the stale/duplicate eviction below
    narrow the race window rather than close it.
    """

    def __init__(self, backend, relay, sessions, timers, scheduler, connection_id: Optional[str] = None,
                 empty_room_check_delay: float = EMPTY_ROOM_CHECK_DELAY):
        self.backend = backend
        self.relay = relay
        self.sessions = sessions
        self.timers = timers
        self.scheduler = scheduler
        self.connection_id = connection_id
        self.empty_room_check_delay = empty_room_check_delay

    async def join_room(self, room_id: str, username: str, password: Optional[str] = None,
                        is_room_creator: bool = False) -> JoinResult:
        username = (username or "").strip()
        try:
            if not username:
                raise InvalidUsername()
            key = self.sessions.session_key(room_id, username)
            # The creator's first join targets a brand new room, so there is nothing to race with
            with self.sessions.joining(key, bypass=is_room_creator):
                user_id = await self._join(room_id, username, password, key)
            return JoinResult(success=True, user_id=user_id)
        except StoreUnavailable as e:
            logger.error(f"Error joining room {room_id} as {username}: {e}", exc_info=True)
            return JoinResult(success=False, error=JOIN_FAILED_MESSAGE, code=e.code)
        except ChatError as e:
            logger.warning(f"Join of room {room_id} as {username!r} rejected: {e.code}")
            return JoinResult(success=False, error=e.message, code=e.code)
        except Exception as e:
            logger.error(f"Unexpected error joining room {room_id} as {username}: {e}", exc_info=True)
            return JoinResult(success=False, error=JOIN_FAILED_MESSAGE, code=StoreUnavailable.code)

    async def _join(self, room_id: str, username: str, password: Optional[str], key) -> str:
        stale = self.sessions.get(key)
        if stale is not None:
            logger.info(f"Replacing stale session {stale.user_id} of {username} in room {room_id}")
            await self.cleanup_user(stale.room_id, stale.user_id)
            self.sessions.pop(key)

        room = await self.backend.read_room(room_id)
        # A room that is not there yet carries no restriction
        if room and room.get("is_private") and room.get("password") != password:
            raise InvalidPassword()

        if room:
            for existing_id, existing in list(room.get("users", {}).items()):
                if existing.get("username") == username:
                    logger.info(f"Evicting duplicate {username} ({existing_id}) from room {room_id}")
                    await self.cleanup_user(room_id, existing_id)

        now = now_ms()
        user = User(
            id=generate_user_id(),
            username=username,
            typing="",
            composing="",
            is_typing=False,
            last_update=now,
            joined_at=now,
            color=generate_user_color(),
            status="active",
        )
        await self.backend.add_user_to_room(room_id, user.id, user.model_dump())
        self.sessions.set(key, SessionEntry(room_id=room_id, user_id=user.id, timestamp=now))

        if self.connection_id:
            await self.backend.register_disconnect_removal(self.connection_id, room_id, user.id)

        await self.backend.update_room(room_id, {"last_activity": now_ms()})
        await self.relay.add_system_message(room_id, f"{username} joined", "join")
        logger.info(f"User {user.id} ({username}) joined room {room_id}")
        return user.id

    async def leave_room(self, room_id: str, user_id: str, username: str):
        try:
            self.sessions.pop(self.sessions.session_key(room_id, username))
            await self.backend.remove_user_from_room(room_id, user_id)
            await self.relay.add_system_message(room_id, f"{username} left", "leave")
            await self.cleanup_user(room_id, user_id)
            logger.info(f"User {user_id} ({username}) left room {room_id}")
            self.schedule_empty_room_check(room_id)
        except Exception as e:
            logger.error(f"Error leaving room {room_id}: {e}", exc_info=True)

    async def cleanup_user(self, room_id: str, user_id: str):
        """Remove the occupant record and its typing timer. Safe to repeat."""
        try:
            await self.backend.remove_user_from_room(room_id, user_id)
            self.timers.cancel(room_id, user_id)
        except Exception as e:
            logger.error(f"Error cleaning up user {user_id} in room {room_id}: {e}", exc_info=True)

    def schedule_empty_room_check(self, room_id: str):
        # Debounce so a near-concurrent rejoin can land first; not cancelable
        self.scheduler.call_later(self.empty_room_check_delay, lambda: self.check_and_delete_empty_room(room_id))

    async def check_and_delete_empty_room(self, room_id: str) -> bool:
        try:
            room = await self.backend.read_room(room_id)
            if not room or not room.get("users"):
                await self.backend.delete_room(room_id)
                logger.info(f"Empty room {room_id} deleted")
                return True
            return False
        except Exception as e:
            logger.error(f"Error checking/deleting empty room {room_id}: {e}", exc_info=True)
            return False

    async def update_typing(self, room_id: str, user_id: str, typing: str, composing: str):
        try:
            is_typing = len(typing) > 0 or len(composing) > 0
            await self.backend.update_user(room_id, user_id, {
                "typing": typing,
                "composing": composing,
                "last_update": now_ms(),
                "is_typing": is_typing,
                "status": "active",
            })

            if is_typing:
                self.timers.arm(room_id, user_id, lambda: self._clear_typing(room_id, user_id))
            else:
                self.timers.cancel(room_id, user_id)
        except Exception as e:
            logger.error(f"Error updating typing for {user_id} in room {room_id}: {e}", exc_info=True)

    async def _clear_typing(self, room_id: str, user_id: str):
        try:
            await self.backend.update_user(room_id, user_id, {
                "typing": "",
                "composing": "",
                "is_typing": False,
                "last_update": now_ms(),
            })
        except Exception as e:
            logger.error(f"Error clearing typing state for {user_id} in room {room_id}: {e}", exc_info=True)
