from unittest.mock import AsyncMock

import pytest
import redis

from backend import RedisBackend
from errors import StoreUnavailable


@pytest.mark.asyncio
async def test_room_fields_round_trip_with_types(backend):
    await backend.create_room("r1", {"name": "Lobby", "created_at": 10, "is_private": False, "password": None})

    room = await backend.get_room("r1")
    assert room == {"name": "Lobby", "created_at": 10, "is_private": False}
    assert await backend.list_room_ids() == {"r1"}
    assert await backend.get_room("missing") is None


@pytest.mark.asyncio
async def test_update_room_skips_missing_rooms(backend, fake_redis):
    assert await backend.update_room("ghost", {"last_activity": 1}) is False
    assert await fake_redis.exists("room:meta:ghost") == 0


@pytest.mark.asyncio
async def test_update_user_does_not_recreate_removed_user(backend):
    await backend.add_user_to_room("r1", "u1", {"id": "u1", "username": "alice"})
    await backend.remove_user_from_room("r1", "u1")

    assert await backend.update_user("r1", "u1", {"typing": "x"}) is False
    assert await backend.get_users_in_room("r1") == {}


@pytest.mark.asyncio
async def test_record_message_activity_increments_count(backend):
    await backend.create_room("r1", {"name": "Lobby", "message_count": 0, "last_activity": 1})
    await backend.record_message_activity("r1", 50)
    await backend.record_message_activity("r1", 60)

    room = await backend.get_room("r1")
    assert room["message_count"] == 2
    assert room["last_activity"] == 60


@pytest.mark.asyncio
async def test_messages_get_ordered_store_ids(backend):
    first = await backend.append_message("r1", {"text": "one", "timestamp": 1})
    second = await backend.append_message("r1", {"text": "two", "timestamp": 2})

    messages = await backend.get_messages("r1")
    assert [m["id"] for m in messages] == [first, second]
    assert [m["text"] for m in messages] == ["one", "two"]

    await backend.clear_messages("r1")
    assert await backend.get_messages("r1") == []


@pytest.mark.asyncio
async def test_delete_room_removes_everything(backend, fake_redis):
    await backend.create_room("r1", {"name": "Lobby"})
    await backend.add_user_to_room("r1", "u1", {"id": "u1", "username": "alice"})
    await backend.append_message("r1", {"text": "hi"})

    await backend.delete_room("r1")

    assert await backend.read_room("r1") is None
    assert await backend.list_room_ids() == set()
    assert await fake_redis.keys("room:*") == []


@pytest.mark.asyncio
async def test_disconnect_hooks_remove_only_registered_records(backend):
    await backend.add_user_to_room("r1", "u1", {"id": "u1", "username": "alice"})
    await backend.add_user_to_room("r1", "u2", {"id": "u2", "username": "bob"})
    await backend.add_user_to_room("r2", "u3", {"id": "u3", "username": "alice"})
    await backend.register_disconnect_removal("conn-a", "r1", "u1")
    await backend.register_disconnect_removal("conn-a", "r2", "u3")
    await backend.register_disconnect_removal("conn-b", "r1", "u2")

    removed = await backend.run_disconnect_hooks("conn-a")

    assert sorted(removed) == [("r1", "u1"), ("r2", "u3")]
    assert set(await backend.get_users_in_room("r1")) == {"u2"}
    assert await backend.get_users_in_room("r2") == {}
    # hooks run once
    assert await backend.run_disconnect_hooks("conn-a") == []


@pytest.mark.asyncio
async def test_redis_errors_become_store_unavailable():
    client = AsyncMock()
    client.hgetall.side_effect = redis.ConnectionError("connection refused")
    backend = RedisBackend(client)

    with pytest.raises(StoreUnavailable):
        await backend.get_room("r1")


@pytest.mark.asyncio
async def test_record_message_activity_skips_missing_rooms(backend, fake_redis):
    assert await backend.record_message_activity("ghost", 50) is False
    assert await fake_redis.exists("room:meta:ghost") == 0


@pytest.mark.asyncio
async def test_update_room_loses_to_concurrent_delete(backend, fake_redis, monkeypatch):
    await backend.create_room("r1", {"name": "Lobby", "last_activity": 1})
    real_transaction = fake_redis.transaction

    async def transaction(func, *watches, **kwargs):
        async def delete_after_check(pipe):
            real_exists = pipe.exists

            async def exists_then_delete(*keys):
                found = await real_exists(*keys)
                await backend.delete_room("r1")
                return found

            pipe.exists = exists_then_delete
            return await func(pipe)

        return await real_transaction(delete_after_check, *watches, **kwargs)

    monkeypatch.setattr(fake_redis, "transaction", transaction)
    assert await backend.update_room("r1", {"last_activity": 2}) is False

    assert await fake_redis.exists("room:meta:r1") == 0


@pytest.mark.asyncio
async def test_bounded_message_read_returns_newest_in_stream_order(backend):
    ids = [await backend.append_message("r1", {"text": f"m{i}", "timestamp": i}) for i in range(5)]

    messages = await backend.get_messages("r1", count=2)
    assert [m["id"] for m in messages] == ids[-2:]
    assert [m["text"] for m in messages] == ["m3", "m4"]


@pytest.mark.asyncio
async def test_read_rooms_batches_metadata_and_occupants(backend):
    await backend.create_room("r1", {"name": "Lobby", "last_activity": 1})
    await backend.create_room("r2", {"name": "Empty"})
    await backend.add_user_to_room("r1", "u1", {"id": "u1", "username": "alice"})
    await backend.add_user_to_room("r1", "u2", {"id": "u2", "username": "bob"})

    rooms = await backend.read_rooms({"r1", "r2", "gone"})

    assert set(rooms) == {"r1", "r2"}
    assert rooms["r1"] == await backend.read_room("r1")
    assert rooms["r2"]["users"] == {}
    assert await backend.read_rooms([]) == {}


@pytest.mark.asyncio
async def test_failed_disconnect_removal_is_kept_for_retry(backend, monkeypatch):
    await backend.add_user_to_room("r1", "u1", {"id": "u1", "username": "alice"})
    await backend.add_user_to_room("r2", "u2", {"id": "u2", "username": "alice"})
    await backend.register_disconnect_removal("conn-a", "r1", "u1")
    await backend.register_disconnect_removal("conn-a", "r2", "u2")
    remove = backend.remove_user_from_room

    async def flaky_remove(room_id, user_id):
        if room_id == "r2":
            raise StoreUnavailable()
        await remove(room_id, user_id)

    monkeypatch.setattr(backend, "remove_user_from_room", flaky_remove)
    assert await backend.run_disconnect_hooks("conn-a") == [("r1", "u1")]
    assert set(await backend.get_users_in_room("r2")) == {"u2"}

    monkeypatch.setattr(backend, "remove_user_from_room", remove)
    assert await backend.run_disconnect_hooks("conn-a") == [("r2", "u2")]
    assert await backend.get_users_in_room("r2") == {}
    assert await backend.run_disconnect_hooks("conn-a") == []
