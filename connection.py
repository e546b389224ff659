from typing import Optional, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from codec import Frame, FrameKind
from constants import MAX_FRAME_BYTES
from logging_config import get_logger

logger = get_logger(__name__)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TOO_LARGE = 1009


class ConnectionClosed(Exception):
    """The peer went away or the connection can no longer be used."""

    def __init__(self, code: int = CLOSE_NORMAL, reason: str = ""):
        super().__init__(f"connection closed ({code}) {reason}".rstrip())
        self.code = code
        self.reason = reason

    @property
    def orderly(self) -> bool:
        return self.code in (CLOSE_NORMAL, CLOSE_GOING_AWAY)


class FrameTooLarge(ConnectionClosed):
    def __init__(self, size: int, limit: int):
        super().__init__(CLOSE_TOO_LARGE, f"frame of {size} bytes exceeds {limit}")
        self.size = size
        self.limit = limit


class Connection(Protocol):
    """Full-duplex, message-oriented connection consumed by a peer session."""

    async def receive(self) -> Frame: ...

    async def send(self, frame: Frame) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL) -> None: ...


class WebSocketConnection:
    """Adapter from an accepted FastAPI WebSocket to discrete text/binary frames."""

    def __init__(self, websocket: WebSocket, max_frame_bytes: int = MAX_FRAME_BYTES):
        self.websocket = websocket
        self.max_frame_bytes = max_frame_bytes
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def receive(self) -> Frame:
        if self._closed:
            raise ConnectionClosed(CLOSE_NORMAL, "closed locally")
        try:
            message = await self.websocket.receive()
        except WebSocketDisconnect as e:
            raise ConnectionClosed(e.code) from e
        except (RuntimeError, OSError) as e:
            raise ConnectionClosed(CLOSE_GOING_AWAY, str(e)) from e

        if message["type"] == "websocket.disconnect":
            raise ConnectionClosed(message.get("code", CLOSE_NORMAL), message.get("reason") or "")

        data: Optional[bytes] = message.get("bytes")
        if data is not None:
            frame = Frame.binary(data)
        else:
            frame = Frame.text((message.get("text") or "").encode("utf-8"))

        if len(frame.payload) > self.max_frame_bytes:
            raise FrameTooLarge(len(frame.payload), self.max_frame_bytes)
        return frame

    async def send(self, frame: Frame) -> None:
        if self._closed:
            raise ConnectionClosed(CLOSE_NORMAL, "closed locally")
        try:
            if frame.kind is FrameKind.BINARY:
                await self.websocket.send_bytes(frame.payload)
            else:
                await self.websocket.send_text(frame.payload.decode("utf-8"))
        except WebSocketDisconnect as e:
            raise ConnectionClosed(e.code) from e
        except (RuntimeError, OSError) as e:
            raise ConnectionClosed(CLOSE_GOING_AWAY, str(e)) from e

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        if self._closed:
            return
        self._closed = True
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")
