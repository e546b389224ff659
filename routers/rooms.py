import secrets
import string

from fastapi import APIRouter, Request

from backend import room_registry
from constants import ROOM_ID_LENGTH
from logging_config import get_logger
from schemas.rooms import CreateRoomResponse, RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def generate_random_slug(length: int = ROOM_ID_LENGTH) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def build_ws_url(request: Request, room_id: str) -> str:
    # Construct WebSocket URL using request's base URL
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws/{room_id}"


@rooms_router.post("/", status_code=201, response_model=CreateRoomResponse)
async def create_room(request: Request):
    """
    Hand out a fresh room token.

    The room itself is only brought up when the first peer connects to
    the returned WebSocket URL.
    """
    client_host = request.client.host if request.client else 'unknown'
    room_id = generate_random_slug()
    ws_url = build_ws_url(request, room_id)
    logger.info(f"Room token {room_id} issued to {client_host}")
    return CreateRoomResponse(room_id=room_id, ws_url=ws_url)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Report whether a room is live in this process and how many peers it holds.

    Looking a room up here never creates it.
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    hub = room_registry.get(room_id)
    online_users_count = hub.member_count if hub is not None else 0

    logger.debug(f"Room details for {room_id}: active={hub is not None}, online={online_users_count}")
    return RoomDetailsResponse(
        room_id=room_id,
        active=hub is not None,
        online_users_count=online_users_count,
    )
