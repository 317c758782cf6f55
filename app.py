from contextlib import asynccontextmanager
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from routers.rooms import rooms_router
from backend import redis_backend
from commands import load_credentials
from connections import ConnectionManager
from constants import ADMIN_CREDENTIALS, LOG_FILE, LOG_LEVEL
from relay import ChatRelay
from store import RedisMessageStore, ResilientMessageStore
import uuid
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def build_relay() -> ChatRelay:
    connections = ConnectionManager()
    message_store = ResilientMessageStore(durable=RedisMessageStore(redis_backend))
    return ChatRelay(connections, message_store, credentials=load_credentials(ADMIN_CREDENTIALS))


def create_app(relay: ChatRelay) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        durable = relay.store.durable
        if durable is not None:
            try:
                await durable.ping()
                logger.info("Redis message backend reachable")
            except Exception as e:
                logger.warning(f"Redis message backend unreachable at startup, messages will use the in-memory fallback until it recovers: {e}")
        await relay.start()
        try:
            yield
        finally:
            await relay.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.relay = relay

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """One WebSocket per session. Frames are JSON `{"event": ..., "data": ...}` both ways."""
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        relay.transport.register(connection_id, websocket)
        logger.info(f"WebSocket connection accepted: {connection_id}")

        try:
            await relay.connect(connection_id)
            while True:
                data = await websocket.receive_text()
                if not await relay.handle_frame(connection_id, data):
                    logger.info(f"Client requested disconnect for connection {connection_id}")
                    break
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected normally for connection {connection_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection_id}: {e}", exc_info=True)
        finally:
            # Cleanup on disconnect
            relay.transport.unregister(connection_id)
            await relay.disconnect(connection_id)
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app(build_relay())
