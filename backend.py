import json
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

import redis
import redis.asyncio as aioredis

from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD
from errors import StoreUnavailable
from redis_keys import (
    REDIS_ROOMS_INDEX_KEY, REDIS_META_KEY, REDIS_USERS_KEY, REDIS_USER_KEY, REDIS_MESSAGES_KEY,
    REDIS_DISCONNECT_KEY, REDIS_ROOMS_CHANNEL, REDIS_ROOM_CHANNEL, REDIS_MESSAGES_CHANNEL,
)
from logging_config import get_logger

logger = get_logger(__name__)


def _encode(data: dict) -> dict:
    # Hash and stream fields are strings; JSON keeps bools and ints intact. None values are skipped.
    return {k: json.dumps(v) for k, v in data.items() if v is not None}


def _decode(data: dict) -> dict:
    result = {}
    for k, v in data.items():
        try:
            result[k] = json.loads(v)
        except (json.JSONDecodeError, TypeError):
            result[k] = v
    return result


@contextmanager
def _store_errors(operation: str):
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Redis error during {operation}: {e}", exc_info=True)
        raise StoreUnavailable() from e


async def _merge_existing(client, key: str, mapping: dict, increments: Optional[dict] = None) -> bool:
    """HSET (and HINCRBY) into ``key`` only if it still exists, under WATCH so a concurrent delete wins."""

    async def merge(pipe) -> bool:
        if not await pipe.exists(key):
            return False
        pipe.multi()
        if mapping:
            pipe.hset(key, mapping=mapping)
        for field, amount in (increments or {}).items():
            pipe.hincrby(key, field, amount)
        return True

    return await client.transaction(merge, key, value_from_callable=True)


class RedisBackend:
    """The shared store: rooms, occupants, message logs, change channels and disconnect hooks.

    Every mutating call publishes a notification on the affected channels so that
    subscriptions can re-read their snapshot.
    """

    def __init__(self, client: Optional[aioredis.Redis] = None):
        if client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            client = aioredis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
        self.redis_client = client

    async def ping(self) -> bool:
        with _store_errors("ping"):
            return await self.redis_client.ping()

    async def close(self):
        await self.redis_client.aclose()

    # -- channels --------------------------------------------------------

    def get_room_channel_name(self, room_id: str) -> str:
        return REDIS_ROOM_CHANNEL.format(slug=room_id)

    def get_messages_channel_name(self, room_id: str) -> str:
        return REDIS_MESSAGES_CHANNEL.format(slug=room_id)

    def get_rooms_channel_name(self) -> str:
        return REDIS_ROOMS_CHANNEL

    def pubsub(self):
        """A fresh pub/sub object; the caller owns it and must close it."""
        return self.redis_client.pubsub()

    async def _publish(self, *channels: str):
        for channel in channels:
            subscribers = await self.redis_client.publish(channel, "changed")
            logger.debug(f"Published change on {channel}, {subscribers} subscribers")

    async def _notify_room(self, room_id: str):
        await self._publish(self.get_room_channel_name(room_id), REDIS_ROOMS_CHANNEL)

    # -- rooms -----------------------------------------------------------

    async def create_room(self, room_id: str, room_data: dict) -> str:
        logger.info(f"Creating room {room_id}")
        key = REDIS_META_KEY.format(slug=room_id)
        with _store_errors("create_room"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=_encode(room_data))
                pipe.sadd(REDIS_ROOMS_INDEX_KEY, room_id)
                await pipe.execute()
            await self._notify_room(room_id)
        logger.debug(f"Room {room_id} created successfully with key: {key}")
        return room_id

    async def get_room(self, room_id: str) -> Optional[dict]:
        """Room metadata without occupants, or None when the room does not exist."""
        key = REDIS_META_KEY.format(slug=room_id)
        with _store_errors("get_room"):
            room_data = await self.redis_client.hgetall(key)
        if not room_data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        return _decode(room_data)

    async def read_room(self, room_id: str) -> Optional[dict]:
        """Room metadata with a ``users`` mapping of user_id -> user record."""
        room = await self.get_room(room_id)
        if room is None:
            return None
        room["users"] = await self.get_users_in_room(room_id)
        return room

    async def update_room(self, room_id: str, fields: dict) -> bool:
        """Merge fields into an existing room. Missing rooms are left alone."""
        key = REDIS_META_KEY.format(slug=room_id)
        with _store_errors("update_room"):
            if not await _merge_existing(self.redis_client, key, _encode(fields)):
                logger.debug(f"Skipping update of missing room {room_id}")
                return False
            await self._notify_room(room_id)
        return True

    async def record_message_activity(self, room_id: str, timestamp: int) -> bool:
        key = REDIS_META_KEY.format(slug=room_id)
        with _store_errors("record_message_activity"):
            if not await _merge_existing(self.redis_client, key, {"last_activity": json.dumps(timestamp)},
                                        increments={"message_count": 1}):
                return False
            await self._notify_room(room_id)
        return True

    async def delete_room(self, room_id: str):
        logger.info(f"Deleting room {room_id}")
        users_key = REDIS_USERS_KEY.format(slug=room_id)
        with _store_errors("delete_room"):
            user_ids = await self.redis_client.smembers(users_key)
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.delete(REDIS_META_KEY.format(slug=room_id))
                pipe.delete(users_key)
                pipe.delete(REDIS_MESSAGES_KEY.format(slug=room_id))
                for user_id in user_ids:
                    pipe.delete(REDIS_USER_KEY.format(slug=room_id, user_id=user_id))
                pipe.srem(REDIS_ROOMS_INDEX_KEY, room_id)
                await pipe.execute()
            await self._notify_room(room_id)
            await self._publish(self.get_messages_channel_name(room_id))
        logger.debug(f"Room {room_id} deleted with {len(user_ids)} leftover user records")
        return True

    async def read_rooms(self, room_ids) -> Dict[str, dict]:
        """``read_room`` for many rooms in two pipelined round trips; missing rooms are left out."""
        room_ids = sorted(room_ids)
        if not room_ids:
            return {}
        with _store_errors("read_rooms"):
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for room_id in room_ids:
                    pipe.hgetall(REDIS_META_KEY.format(slug=room_id))
                    pipe.smembers(REDIS_USERS_KEY.format(slug=room_id))
                results = await pipe.execute()

            rooms = {}
            occupants = []
            for room_id, meta, user_ids in zip(room_ids, results[0::2], results[1::2]):
                if not meta:
                    continue
                room = _decode(meta)
                room["users"] = {}
                rooms[room_id] = room
                occupants.extend((room_id, user_id) for user_id in sorted(user_ids))

            if occupants:
                async with self.redis_client.pipeline(transaction=False) as pipe:
                    for room_id, user_id in occupants:
                        pipe.hgetall(REDIS_USER_KEY.format(slug=room_id, user_id=user_id))
                    records = await pipe.execute()
                for (room_id, user_id), record in zip(occupants, records):
                    if record:
                        rooms[room_id]["users"][user_id] = _decode(record)
        return rooms

    async def list_room_ids(self) -> set:
        with _store_errors("list_room_ids"):
            return await self.redis_client.smembers(REDIS_ROOMS_INDEX_KEY)

    # -- occupants -------------------------------------------------------

    async def add_user_to_room(self, room_id: str, user_id: str, user_data: dict):
        logger.debug(f"Adding user {user_id} to room {room_id}")
        with _store_errors("add_user_to_room"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(REDIS_USER_KEY.format(slug=room_id, user_id=user_id), mapping=_encode(user_data))
                pipe.sadd(REDIS_USERS_KEY.format(slug=room_id), user_id)
                await pipe.execute()
            await self._notify_room(room_id)
        return True

    async def update_user(self, room_id: str, user_id: str, fields: dict) -> bool:
        """Merge fields into an occupant record. Returns False if the record is gone."""
        key = REDIS_USER_KEY.format(slug=room_id, user_id=user_id)
        with _store_errors("update_user"):
            if not await _merge_existing(self.redis_client, key, _encode(fields)):
                logger.debug(f"Skipping update of missing user {user_id} in room {room_id}")
                return False
            await self._notify_room(room_id)
        return True

    async def remove_user_from_room(self, room_id: str, user_id: str) -> bool:
        logger.debug(f"Removing user {user_id} from room {room_id}")
        with _store_errors("remove_user_from_room"):
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.srem(REDIS_USERS_KEY.format(slug=room_id), user_id)
                pipe.delete(REDIS_USER_KEY.format(slug=room_id, user_id=user_id))
                removed, deleted = await pipe.execute()
            await self._notify_room(room_id)
        logger.debug(f"User {user_id} removed from room {room_id}: user_set={removed}, record={deleted}")
        return bool(removed or deleted)

    async def get_users_in_room(self, room_id: str) -> Dict[str, dict]:
        with _store_errors("get_users_in_room"):
            user_ids = sorted(await self.redis_client.smembers(REDIS_USERS_KEY.format(slug=room_id)))
            if not user_ids:
                return {}
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for user_id in user_ids:
                    pipe.hgetall(REDIS_USER_KEY.format(slug=room_id, user_id=user_id))
                records = await pipe.execute()
        users = {}
        for user_id, record in zip(user_ids, records):
            # A set member without a record is a half-removed occupant
            if record:
                users[user_id] = _decode(record)
        logger.debug(f"Room {room_id} has {len(users)} users")
        return users

    # -- messages --------------------------------------------------------

    async def append_message(self, room_id: str, message: dict) -> str:
        """Append to the room's message stream and return the generated, time-ordered ID."""
        with _store_errors("append_message"):
            message_id = await self.redis_client.xadd(REDIS_MESSAGES_KEY.format(slug=room_id), _encode(message))
            await self._publish(self.get_messages_channel_name(room_id))
        logger.debug(f"Appended message {message_id} to room {room_id}")
        return message_id

    async def get_messages(self, room_id: str, count: Optional[int] = None) -> List[dict]:
        """Messages in stream order; with ``count``, only the newest ``count`` entries."""
        key = REDIS_MESSAGES_KEY.format(slug=room_id)
        with _store_errors("get_messages"):
            if count is None:
                entries = await self.redis_client.xrange(key)
            else:
                entries = list(reversed(await self.redis_client.xrevrange(key, count=count)))
        messages = []
        for message_id, fields in entries:
            message = _decode(fields)
            message["id"] = message_id
            messages.append(message)
        return messages

    async def clear_messages(self, room_id: str):
        logger.info(f"Clearing messages of room {room_id}")
        with _store_errors("clear_messages"):
            await self.redis_client.delete(REDIS_MESSAGES_KEY.format(slug=room_id))
            await self._publish(self.get_messages_channel_name(room_id))

    # -- disconnect hooks ------------------------------------------------

    async def register_disconnect_removal(self, connection_id: str, room_id: str, user_id: str):
        """Purge this occupant record when ``connection_id`` drops, however it drops."""
        with _store_errors("register_disconnect_removal"):
            await self.redis_client.sadd(REDIS_DISCONNECT_KEY.format(connection_id=connection_id), f"{room_id}:{user_id}")
        logger.debug(f"Registered disconnect removal of {user_id} in room {room_id} for connection {connection_id}")

    async def run_disconnect_hooks(self, connection_id: str) -> List[Tuple[str, str]]:
        """Remove every occupant registered for ``connection_id``; returns the (room_id, user_id) pairs removed.

        A registration is dropped only once its removal succeeded, so failed ones stay
        for the next run.
        """
        key = REDIS_DISCONNECT_KEY.format(connection_id=connection_id)
        with _store_errors("run_disconnect_hooks"):
            members = await self.redis_client.smembers(key)

        removed = []
        for member in sorted(members):
            room_id, _, user_id = member.partition(":")
            try:
                await self.remove_user_from_room(room_id, user_id)
                with _store_errors("run_disconnect_hooks"):
                    await self.redis_client.srem(key, member)
            except StoreUnavailable as e:
                logger.error(f"Disconnect removal of {user_id} in room {room_id} failed, kept for retry: {e}")
                continue
            removed.append((room_id, user_id))
        if removed:
            logger.info(f"Disconnect of {connection_id} removed {len(removed)} occupant records")
        return removed


redis_backend = RedisBackend()


def get_backend() -> RedisBackend:
    """FastAPI dependency; tests override it with a fakeredis-backed instance."""
    return redis_backend
