from contextlib import asynccontextmanager
import json
import os
import uuid

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisBackend, get_backend, redis_backend
from routers.rooms import rooms_router
from services.client import ChatClient
from logging_config import get_logger, setup_logging

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Chat rooms service starting")
    yield
    # Live connections run their own disconnect hooks as their sockets close
    try:
        await redis_backend.close()
    except Exception as e:
        logger.error(f"Error closing Redis client: {e}")
    logger.info("Chat rooms service stopped")


app = FastAPI(lifespan=lifespan)

# Configure CORS to allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Allow all origins
    allow_credentials=True,
    allow_methods=["*"],  # Allow all HTTP methods
    allow_headers=["*"],  # Allow all headers
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, backend: RedisBackend = Depends(get_backend)):
    """Command channel for one client.

    Each text frame is a JSON command (see ``schemas.commands.WsCommand``) answered by a
    ``{"type": "reply", ...}`` frame. Subscription updates are pushed as
    ``{"type": "rooms" | "room" | "messages", "subscription_id": ..., "data": ...}``.
    Occupant records joined through this socket are purged when it closes, however it closes.
    """
    connection_id = str(uuid.uuid4())
    await websocket.accept()
    logger.info(f"WebSocket connection {connection_id} accepted")

    async def send(payload: dict):
        try:
            await websocket.send_text(json.dumps(payload))
        except Exception as e:
            logger.warning(f"Error sending to connection {connection_id}: {e}")

    client = ChatClient(backend, connection_id=connection_id, send=send)
    message_count = 0
    try:
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {connection_id}")
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                await send({"type": "reply", "ok": False, "error": "Invalid JSON", "code": "invalid_command"})
                continue
            if not isinstance(payload, dict):
                await send({"type": "reply", "ok": False, "error": "Invalid command", "code": "invalid_command"})
                continue
            await send(await client.handle_command(payload))
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
    finally:
        removed = await client.disconnect()
        logger.info(f"Connection {connection_id} closed, {len(removed)} occupant records purged")
