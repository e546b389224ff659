from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend import room_registry
from connection import CLOSE_POLICY_VIOLATION, WebSocketConnection
from constants import ALLOWED_ORIGIN, LOG_FILE, LOG_LEVEL, MAX_FRAME_BYTES
from logging_config import get_logger, setup_logging
from routers.rooms import build_ws_url, generate_random_slug, rooms_router
from schemas.rooms import CreateRoomResponse
from session import PeerSession

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await room_registry.shutdown()


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[ALLOWED_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info(f"FastAPI application initialized (allowed origin: {ALLOWED_ORIGIN})")


@app.get("/", response_model=CreateRoomResponse)
async def home(request: Request):
    """Mint a room for a new visitor and tell them where to connect."""
    room_id = generate_random_slug()
    logger.debug(f"Minted room {room_id} for home page visit")
    return CreateRoomResponse(room_id=room_id, ws_url=build_ws_url(request, room_id))


@app.websocket("/ws/{room_id}")
async def websocket_endpoint(room_id: str, websocket: WebSocket):
    """Relay endpoint: every peer connected to the same room id shares messages and files."""
    origin = websocket.headers.get("origin")
    if origin != ALLOWED_ORIGIN:
        logger.warning(f"WebSocket connection rejected for room {room_id}: origin {origin!r} not allowed")
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="Origin not allowed")
        return

    await websocket.accept()
    logger.info(f"WebSocket connection accepted for room: {room_id}")

    connection = WebSocketConnection(websocket, max_frame_bytes=MAX_FRAME_BYTES)
    session = PeerSession(connection, room_id)
    try:
        room_registry.join(room_id, session)
        await session.run()
    except Exception as e:
        logger.error(f"WebSocket error for session {session.session_id} in room {room_id}: {e}", exc_info=True)
    finally:
        session.terminate()
        await connection.close()
