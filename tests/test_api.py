import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app import app
from backend import get_backend


@pytest_asyncio.fixture
async def api_client(backend):
    app.dependency_overrides[get_backend] = lambda: backend
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(api_client):
    response = await api_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_create_room_returns_ws_url(api_client, backend):
    response = await api_client.post("/rooms/", json={"name": "Lobby"})
    assert response.status_code == 200
    body = response.json()
    assert body["ws_url"] == "ws://testserver/ws"
    assert (await backend.get_room(body["room_id"]))["name"] == "Lobby"


@pytest.mark.asyncio
async def test_room_list_only_shows_occupied_rooms(api_client, client):
    occupied = await client.create_room("Busy", True, "pw1")
    await client.create_room("Idle")
    await client.join_room(occupied, "alice", "pw1")

    response = await api_client.get("/rooms/")
    assert response.status_code == 200
    rooms = response.json()
    assert [room["id"] for room in rooms] == [occupied]
    assert "password" not in rooms[0]


@pytest.mark.asyncio
async def test_room_details_enforce_password(api_client, client):
    room_id = await client.create_room("Secret", True, "pw1")
    await client.join_room(room_id, "alice", "pw1")

    assert (await api_client.get("/rooms/missing")).status_code == 404
    assert (await api_client.get(f"/rooms/{room_id}")).status_code == 401

    response = await api_client.get(f"/rooms/{room_id}", params={"password": "pw1"})
    assert response.status_code == 200
    body = response.json()
    assert body["online_users_count"] == 1
    assert body["online_users"][0]["username"] == "alice"
    assert "password" not in body


@pytest.mark.asyncio
async def test_messages_read_and_clear(api_client, client):
    room_id = await client.create_room("Lobby")
    user_id = (await client.join_room(room_id, "alice")).user_id
    await client.send_chat_message(room_id, user_id, "alice", "hello", "#3B82F6")

    response = await api_client.get(f"/rooms/{room_id}/messages")
    assert [m["text"] for m in response.json()["messages"]] == ["alice joined", "hello"]

    response = await api_client.delete(f"/rooms/{room_id}/messages")
    assert response.status_code == 200
    response = await api_client.get(f"/rooms/{room_id}/messages")
    assert [m["text"] for m in response.json()["messages"]] == ["Messages were cleared"]
