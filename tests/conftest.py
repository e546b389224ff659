import asyncio
import contextlib
import json

import pytest

from codec import Frame
from connection import CLOSE_GOING_AWAY, ConnectionClosed
from hub import RoomHub
from session import PeerSession


class FakeConnection:
    """In-memory stand-in for a WebSocket connection."""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[Frame] = []
        self.closed = False
        self.close_code = None
        self.fail_sends = False

    def push_json(self, message) -> None:
        self.push_text(json.dumps(message))

    def push_text(self, text: str) -> None:
        self.incoming.put_nowait(Frame.text(text.encode("utf-8")))

    def push_bytes(self, data: bytes) -> None:
        self.incoming.put_nowait(Frame.binary(data))

    def hang_up(self, code: int = 1000) -> None:
        self.incoming.put_nowait(ConnectionClosed(code))

    async def receive(self) -> Frame:
        item = await self.incoming.get()
        if isinstance(item, ConnectionClosed):
            raise item
        return item

    async def send(self, frame: Frame) -> None:
        if self.closed or self.fail_sends:
            raise ConnectionClosed(CLOSE_GOING_AWAY, "send failed")
        self.sent.append(frame)

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(ConnectionClosed(code))


class StubRoom:
    """Records what a session hands to its room."""

    def __init__(self):
        self.registered = []
        self.unregistered = []
        self.items = []

    def register(self, session) -> None:
        self.registered.append(session)

    def unregister(self, session) -> None:
        self.unregistered.append(session)

    def broadcast(self, item) -> None:
        self.items.append(item)


async def drain(session: PeerSession) -> list[Frame]:
    """Pop every frame currently queued in the session's outbox."""
    frames = []
    while session.outbox.pending:
        frames.append(await session.outbox.get())
    return frames


def make_session(room_id: str = "r1", capacity: int = 256) -> PeerSession:
    return PeerSession(FakeConnection(), room_id, outbox_capacity=capacity)


@pytest.fixture
async def hub():
    room = RoomHub("r1")
    task = asyncio.create_task(room.run())
    yield room
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
