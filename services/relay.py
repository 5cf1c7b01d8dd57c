from typing import Callable, List, Optional

from pydantic import ValidationError

from constants import MESSAGE_HISTORY_LIMIT, SYSTEM_COLOR, SYSTEM_USER_ID, SYSTEM_USERNAME
from schemas.rooms import ChatMessage
from services.identity import now_ms
from services.subscriptions import Subscription
from logging_config import get_logger

logger = get_logger(__name__)


def recent_window(raw_messages: List[dict], limit: int = MESSAGE_HISTORY_LIMIT) -> List[ChatMessage]:
    """The newest ``limit`` messages in ascending (timestamp, id) order."""
    messages = []
    for raw in raw_messages:
        try:
            messages.append(ChatMessage(**raw))
        except ValidationError as e:
            logger.warning(f"Skipping malformed message {raw.get('id')}: {e}")
    messages.sort(key=lambda m: (m.timestamp, _stream_order(m.id)))
    return messages[-limit:] if limit > 0 else []


def _stream_order(message_id: str):
    # Stream IDs are "<ms>-<seq>"; compare numerically, not lexically
    ms, _, seq = message_id.partition("-")
    try:
        return (int(ms), int(seq or 0))
    except ValueError:
        return (0, 0)


class MessageRelay:
    def __init__(self, backend, timers=None, history_limit: int = MESSAGE_HISTORY_LIMIT):
        self.backend = backend
        self.timers = timers
        self.history_limit = history_limit

    async def send_chat_message(self, room_id: str, user_id: str, username: str, text: str, color: str) -> Optional[str]:
        """Append a chat message, then clear the sender's typing state and bump room activity.

        Failures are logged and swallowed; returns the message id on success.
        """
        try:
            timestamp = now_ms()
            message_id = await self.backend.append_message(room_id, {
                "user_id": user_id,
                "username": username,
                "text": text,
                "timestamp": timestamp,
                "color": color,
            })

            # Sending implies the user stopped typing
            if self.timers is not None:
                self.timers.cancel(room_id, user_id)
            await self.backend.update_user(room_id, user_id, {
                "typing": "",
                "composing": "",
                "is_typing": False,
                "last_update": now_ms(),
            })

            await self.backend.record_message_activity(room_id, now_ms())
            logger.debug(f"Message {message_id} from {username} sent to room {room_id}")
            return message_id
        except Exception as e:
            logger.error(f"Error sending message to room {room_id}: {e}", exc_info=True)
            return None

    async def add_system_message(self, room_id: str, text: str, type: str = "system") -> Optional[str]:
        try:
            return await self.backend.append_message(room_id, {
                "user_id": SYSTEM_USER_ID,
                "username": SYSTEM_USERNAME,
                "text": text,
                "timestamp": now_ms(),
                "color": SYSTEM_COLOR,
                "type": type,
            })
        except Exception as e:
            logger.error(f"Error adding system message to room {room_id}: {e}", exc_info=True)
            return None

    async def clear_room_messages(self, room_id: str):
        try:
            await self.backend.clear_messages(room_id)
            await self.add_system_message(room_id, "Messages were cleared", "system")
        except Exception as e:
            logger.error(f"Error clearing messages of room {room_id}: {e}", exc_info=True)

    async def get_recent_messages(self, room_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        limit = self.history_limit if limit is None else limit
        if limit <= 0:
            return []
        raw_messages = await self.backend.get_messages(room_id, count=limit)
        return recent_window(raw_messages, limit)

    async def listen_to_messages(self, room_id: str, callback: Callable[[List[ChatMessage]], object]) -> Subscription:
        subscription = Subscription(
            self.backend,
            [self.backend.get_messages_channel_name(room_id)],
            lambda: self.get_recent_messages(room_id),
            callback,
            name=f"messages:{room_id}",
        )
        return await subscription.start()
