import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from constants import EMPTY_ROOM_CHECK_DELAY, TYPING_IDLE_SECONDS
from errors import ChatError
from schemas.commands import WsCommand
from services.directory import RoomDirectory
from services.presence import PresenceService
from services.relay import MessageRelay
from services.sessions import SessionRegistry
from services.subscriptions import Subscription
from services.timers import AsyncioScheduler, TypingTimerManager
from logging_config import get_logger

logger = get_logger(__name__)

Sender = Callable[[dict], Awaitable[None]]


def _dump(data: Any):
    if data is None:
        return None
    if isinstance(data, list):
        return [item.model_dump() for item in data]
    return data.model_dump()


class ChatClient:
    """Everything one client connection can do, wired around its own session and timer state.

    Session registry, typing timers and subscriptions belong to this connection;
    the backend is shared.
    """

    def __init__(self, backend, connection_id: Optional[str] = None, scheduler=None, send: Optional[Sender] = None,
                 typing_idle_seconds: float = TYPING_IDLE_SECONDS,
                 empty_room_check_delay: float = EMPTY_ROOM_CHECK_DELAY):
        self.backend = backend
        self.connection_id = connection_id or str(uuid.uuid4())
        self.scheduler = scheduler or AsyncioScheduler()
        self.send = send
        self.sessions = SessionRegistry()
        self.timers = TypingTimerManager(self.scheduler, typing_idle_seconds)
        self.relay = MessageRelay(backend, self.timers)
        self.presence = PresenceService(backend, self.relay, self.sessions, self.timers, self.scheduler,
                                        connection_id=self.connection_id,
                                        empty_room_check_delay=empty_room_check_delay)
        self.directory = RoomDirectory(backend, self.presence)
        self.subscriptions: Dict[str, Subscription] = {}

    # presence
    async def join_room(self, room_id, username, password=None, is_room_creator=False):
        return await self.presence.join_room(room_id, username, password, is_room_creator)

    async def leave_room(self, room_id, user_id, username):
        await self.presence.leave_room(room_id, user_id, username)

    async def cleanup_user(self, room_id, user_id):
        await self.presence.cleanup_user(room_id, user_id)

    async def update_typing(self, room_id, user_id, typing, composing):
        await self.presence.update_typing(room_id, user_id, typing, composing)

    async def check_and_delete_empty_room(self, room_id):
        return await self.presence.check_and_delete_empty_room(room_id)

    # messages
    async def send_chat_message(self, room_id, user_id, username, text, color):
        return await self.relay.send_chat_message(room_id, user_id, username, text, color)

    async def add_system_message(self, room_id, text, type="system"):
        return await self.relay.add_system_message(room_id, text, type)

    async def clear_room_messages(self, room_id):
        await self.relay.clear_room_messages(room_id)

    async def listen_to_messages(self, room_id, callback) -> Subscription:
        return self._track(await self.relay.listen_to_messages(room_id, callback))

    # rooms
    async def create_room(self, name, is_private=False, password=None):
        return await self.directory.create_room(name, is_private, password)

    async def create_and_join_room(self, name, username, is_private=False, password=None):
        return await self.directory.create_and_join_room(name, username, is_private, password)

    async def get_available_rooms(self, callback) -> Subscription:
        return self._track(await self.directory.get_available_rooms(callback))

    async def listen_to_room(self, room_id, callback) -> Subscription:
        return self._track(await self.directory.listen_to_room(room_id, callback))

    def _track(self, subscription: Subscription) -> Subscription:
        self.subscriptions[uuid.uuid4().hex] = subscription
        return subscription

    # teardown
    def cleanup_all_sessions(self):
        """Cancel pending typing timers and forget local sessions."""
        self.timers.shutdown()
        self.sessions.clear()
        logger.debug(f"Cleared local sessions of connection {self.connection_id}")

    async def close(self):
        self.cleanup_all_sessions()
        subscriptions = list(self.subscriptions.values())
        self.subscriptions.clear()
        for subscription in subscriptions:
            await subscription.close()

    async def disconnect(self) -> List[tuple]:
        """Connection dropped: run its disconnect hooks, queue emptiness checks, tear down."""
        removed = []
        try:
            removed = await self.backend.run_disconnect_hooks(self.connection_id)
        except Exception as e:
            logger.error(f"Error running disconnect hooks for {self.connection_id}: {e}", exc_info=True)
        for room_id in sorted({room_id for room_id, _ in removed}):
            self.presence.schedule_empty_room_check(room_id)
        await self.close()
        return removed

    # websocket commands
    async def handle_command(self, payload: dict) -> dict:
        action = payload.get("action") if isinstance(payload, dict) else None
        request_id = payload.get("request_id") if isinstance(payload, dict) else None
        reply = {"type": "reply", "action": action, "request_id": request_id}
        try:
            command = WsCommand(**payload)
            reply["data"] = await self._dispatch(command)
            reply["ok"] = True
        except ValidationError as e:
            logger.warning(f"Invalid command from {self.connection_id}: {e.errors()}")
            reply.update(ok=False, error="Invalid command", code="invalid_command")
        except ChatError as e:
            reply.update(ok=False, error=e.message, code=e.code)
        except Exception as e:
            logger.error(f"Error handling {action} from {self.connection_id}: {e}", exc_info=True)
            reply.update(ok=False, error="Internal error", code="internal_error")
        return reply

    async def _dispatch(self, command: WsCommand):
        c = command
        if c.action == "create_room":
            return {"room_id": await self.create_room(c.name, c.is_private, c.password)}
        if c.action == "create_and_join_room":
            return (await self.create_and_join_room(c.name, c.username, c.is_private, c.password)).model_dump()
        if c.action == "join_room":
            return (await self.join_room(c.room_id, c.username, c.password)).model_dump()
        if c.action == "leave_room":
            await self.leave_room(c.room_id, c.user_id, c.username)
            return None
        if c.action == "update_typing":
            await self.update_typing(c.room_id, c.user_id, c.typing, c.composing)
            return None
        if c.action == "send_message":
            message_id = await self.send_chat_message(c.room_id, c.user_id, c.username, c.text, c.color)
            return {"message_id": message_id}
        if c.action == "clear_messages":
            await self.clear_room_messages(c.room_id)
            return None
        if c.action == "listen_rooms":
            return {"subscription_id": await self._subscribe("rooms", self.directory.get_available_rooms)}
        if c.action == "listen_room":
            return {"subscription_id": await self._subscribe(
                "room", lambda cb: self.directory.listen_to_room(c.room_id, cb))}
        if c.action == "listen_messages":
            return {"subscription_id": await self._subscribe(
                "messages", lambda cb: self.relay.listen_to_messages(c.room_id, cb))}
        if c.action == "unlisten":
            subscription = self.subscriptions.pop(c.subscription_id, None)
            if subscription is not None:
                await subscription.close()
            return {"closed": subscription is not None}
        raise ValueError(f"Unhandled action {c.action}")

    async def _subscribe(self, kind: str, open_subscription) -> str:
        subscription_id = uuid.uuid4().hex

        async def deliver(data):
            if self.send is not None:
                await self.send({"type": kind, "subscription_id": subscription_id, "data": _dump(data)})

        self.subscriptions[subscription_id] = await open_subscription(deliver)
        return subscription_id
