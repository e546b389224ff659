import asyncio
import uuid
import weakref
from enum import Enum
from typing import TYPE_CHECKING, Optional

from codec import Frame, FrameKind, ProtocolError, decode_control, is_file_metadata
from connection import CLOSE_NORMAL, Connection, ConnectionClosed
from constants import OUTBOUND_QUEUE_SIZE
from hub import BroadcastItem
from logging_config import get_logger

if TYPE_CHECKING:
    from hub import RoomHub

logger = get_logger(__name__)

_CLOSED = object()
WRITER_DRAIN_SECONDS = 1.0


class SessionState(str, Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class Outbox:
    """Bounded FIFO of frames waiting to be written to one peer.

    `offer` never waits: it refuses the frame when the outbox holds
    `capacity` frames or has been closed. Closing is one-shot; frames
    already queued are still handed out before `get` reports closure.
    """

    def __init__(self, capacity: int = OUTBOUND_QUEUE_SIZE):
        if capacity < 1:
            raise ValueError("outbox capacity must be at least 1")
        self.capacity = capacity
        # Unbounded underneath so the close marker always fits
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._pending

    def offer(self, frame: Frame) -> bool:
        if self._closed or self._pending >= self.capacity:
            return False
        self._queue.put_nowait(frame)
        self._pending += 1
        return True

    def close(self) -> bool:
        if self._closed:
            return False
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        return True

    async def get(self) -> Optional[Frame]:
        """Next frame, or None once the outbox is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker in place so later callers see closure too
            self._queue.put_nowait(_CLOSED)
            return None
        self._pending -= 1
        return item


class PeerSession:
    """Server side of one connected participant.

    Runs an inbound loop that turns frames into broadcast items for the room
    and an outbound loop that writes the outbox to the connection. Whichever
    loop ends first tears the session down.
    """

    def __init__(self, connection: Connection, room_id: str, outbox_capacity: int = OUTBOUND_QUEUE_SIZE):
        self.session_id = uuid.uuid4().hex[:8]
        self.connection = connection
        self.room_id = room_id
        self.outbox = Outbox(outbox_capacity)
        self.pending_metadata: Optional[dict] = None
        self.state = SessionState.ACTIVE
        self._room_ref: Optional["weakref.ReferenceType[RoomHub]"] = None
        self._close_code = CLOSE_NORMAL

    def __repr__(self) -> str:
        return f"<PeerSession {self.session_id} room={self.room_id} state={self.state.value}>"

    @property
    def room(self) -> Optional["RoomHub"]:
        return self._room_ref() if self._room_ref is not None else None

    def attach(self, room: "RoomHub") -> None:
        self._room_ref = weakref.ref(room)

    def offer(self, frame: Frame) -> bool:
        return self.outbox.offer(frame)

    def close_outbox(self) -> bool:
        return self.outbox.close()

    def terminate(self) -> bool:
        """Leave the room and close the outbox; only the first call has any effect."""
        if self.state is not SessionState.ACTIVE:
            return False
        self.state = SessionState.CLOSING
        room = self.room
        if room is not None:
            room.unregister(self)
        self.close_outbox()
        logger.debug(f"Session {self.session_id} terminating")
        return True

    async def run(self) -> None:
        reader = asyncio.create_task(self._read_loop(), name=f"session-{self.session_id}-read")
        writer = asyncio.create_task(self._write_loop(), name=f"session-{self.session_id}-write")
        try:
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.terminate()
            try:
                if not writer.done():
                    # Outbox is closed now; let the writer flush and send its close frame
                    await asyncio.wait({writer}, timeout=WRITER_DRAIN_SECONDS)
            finally:
                for task in (reader, writer):
                    if not task.done():
                        task.cancel()
            await self.connection.close(self._close_code)
            results = await asyncio.gather(reader, writer, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Session {self.session_id} loop failed: {result}", exc_info=result)
            self.state = SessionState.CLOSED
            logger.info(f"Session {self.session_id} closed in room {self.room_id}")

    async def _read_loop(self) -> None:
        while True:
            try:
                frame = await self.connection.receive()
            except ConnectionClosed as e:
                if e.orderly:
                    logger.info(f"Session {self.session_id} disconnected: {e}")
                else:
                    logger.warning(f"Session {self.session_id} read error: {e}")
                    self._close_code = e.code
                return

            if frame.kind is FrameKind.BINARY:
                self._handle_binary(frame.payload)
            else:
                self._handle_text(frame.payload)

    def _handle_text(self, payload: bytes) -> None:
        try:
            message = decode_control(payload)
        except ProtocolError as e:
            logger.warning(f"Session {self.session_id} sent a malformed control frame: {e}")
            return

        if is_file_metadata(message):
            if self.pending_metadata is not None:
                logger.debug(f"Session {self.session_id} replaced unused file metadata")
            self.pending_metadata = message
            return

        self._forward(BroadcastItem(FrameKind.TEXT, payload, self))

    def _handle_binary(self, payload: bytes) -> None:
        metadata = self.pending_metadata
        if metadata is None:
            logger.warning(f"Session {self.session_id} sent {len(payload)} bytes without preceding file metadata")
            return
        self.pending_metadata = None
        self._forward(BroadcastItem(FrameKind.BINARY, payload, self, metadata))

    def _forward(self, item: BroadcastItem) -> None:
        room = self.room
        if room is None:
            logger.debug(f"Session {self.session_id} has no room, dropping {item.kind.value} frame")
            return
        room.broadcast(item)

    async def _write_loop(self) -> None:
        while True:
            frame = await self.outbox.get()
            if frame is None:
                await self.connection.close(self._close_code)
                return
            try:
                await self.connection.send(frame)
            except ConnectionClosed as e:
                logger.info(f"Session {self.session_id} write error: {e}")
                return
