import asyncio
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, FrozenSet, Mapping, Optional, Set, Union

from codec import Frame, FrameKind, ProtocolError, join_status_frame, relay_control, stamp_for_recipient
from logging_config import get_logger

if TYPE_CHECKING:
    from backend import RoomRegistry
    from session import PeerSession

logger = get_logger(__name__)


@dataclass(frozen=True)
class BroadcastItem:
    """One inbound frame from `sender`, waiting to be fanned out to the rest of the room."""

    kind: FrameKind
    payload: bytes
    sender: "PeerSession"
    metadata: Optional[Mapping[str, Any]] = None

    def __post_init__(self):
        if self.metadata is not None:
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class Register:
    session: "PeerSession"


@dataclass(frozen=True)
class Unregister:
    session: "PeerSession"


@dataclass(frozen=True)
class Broadcast:
    item: BroadcastItem


RoomEvent = Union[Register, Unregister, Broadcast]


class RoomHub:
    """Event loop owning the membership of a single room.

    Sessions never touch the membership set directly: they post Register,
    Unregister and Broadcast events to the hub's inbox and `run()` applies
    them one at a time, in arrival order. Delivery to members never waits; a
    member whose outbox is full is evicted from the room.

    When the room is empty the loop waits at most `idle_grace` seconds for
    new events and then asks its registry to retire it.
    """

    def __init__(self, room_id: str, registry: Optional["RoomRegistry"] = None, idle_grace: Optional[float] = None):
        self.room_id = room_id
        self.idle_grace = idle_grace
        self._registry = registry
        self._members: Set["PeerSession"] = set()
        self._inbox: "asyncio.Queue[RoomEvent]" = asyncio.Queue()
        self._closed = False

    @property
    def members(self) -> FrozenSet["PeerSession"]:
        return frozenset(self._members)

    @property
    def member_count(self) -> int:
        return len(self._members)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def idle(self) -> bool:
        return not self._members and self._inbox.empty()

    def register(self, session: "PeerSession") -> None:
        self._inbox.put_nowait(Register(session))

    def unregister(self, session: "PeerSession") -> None:
        self._inbox.put_nowait(Unregister(session))

    def broadcast(self, item: BroadcastItem) -> None:
        self._inbox.put_nowait(Broadcast(item))

    async def wait_idle(self) -> None:
        """Wait until every event posted so far has been processed."""
        await self._inbox.join()

    async def run(self) -> None:
        logger.info(f"Room {self.room_id} event loop started")
        try:
            while True:
                event = await self._next_event()
                if event is None:
                    if self._registry is None or self._registry.retire(self):
                        logger.info(f"Room {self.room_id} idle for {self.idle_grace}s, retiring")
                        break
                    continue
                try:
                    self._dispatch(event)
                except Exception as e:
                    logger.error(f"Room {self.room_id} failed to handle {type(event).__name__}: {e}", exc_info=True)
                finally:
                    self._inbox.task_done()
        except asyncio.CancelledError:
            logger.info(f"Room {self.room_id} event loop cancelled")
            raise
        finally:
            self._closed = True
            for session in list(self._members):
                session.close_outbox()
            self._members.clear()
            logger.debug(f"Room {self.room_id} event loop stopped")

    async def _next_event(self) -> Optional[RoomEvent]:
        if self._members or self.idle_grace is None:
            return await self._inbox.get()
        try:
            return await asyncio.wait_for(self._inbox.get(), timeout=self.idle_grace)
        except asyncio.TimeoutError:
            return None

    def _dispatch(self, event: RoomEvent) -> None:
        if isinstance(event, Register):
            self._on_register(event.session)
        elif isinstance(event, Unregister):
            self._on_unregister(event.session)
        elif isinstance(event, Broadcast):
            self._on_broadcast(event.item)
        else:
            logger.error(f"Room {self.room_id} received unknown event {event!r}")

    def _on_register(self, session: "PeerSession") -> None:
        if session in self._members:
            logger.debug(f"Session {session.session_id} already in room {self.room_id}")
            return
        self._members.add(session)
        logger.info(f"Session {session.session_id} joined room {self.room_id} (members: {len(self._members)})")

        if len(self._members) > 1:
            frame = join_status_frame()
            for member in list(self._members):
                self._deliver(member, frame)

    def _on_unregister(self, session: "PeerSession") -> None:
        if session not in self._members:
            return
        self._members.discard(session)
        session.close_outbox()
        logger.info(f"Session {session.session_id} left room {self.room_id} (members: {len(self._members)})")

    def _on_broadcast(self, item: BroadcastItem) -> None:
        for recipient in list(self._members):
            if recipient is item.sender or recipient not in self._members:
                continue
            if item.kind is FrameKind.BINARY:
                self._relay_file(recipient, item)
            else:
                self._relay_control(recipient, item)

    def _relay_file(self, recipient: "PeerSession", item: BroadcastItem) -> None:
        if item.metadata is None:
            logger.error(f"Room {self.room_id} got a binary item without metadata from {item.sender.session_id}")
            return
        try:
            metadata = stamp_for_recipient(item.metadata)
        except ProtocolError as e:
            logger.error(f"Error encoding file metadata for {recipient.session_id} in room {self.room_id}: {e}")
            return
        if not self._deliver(recipient, Frame.text(metadata)):
            return
        self._deliver(recipient, Frame.binary(item.payload))

    def _relay_control(self, recipient: "PeerSession", item: BroadcastItem) -> None:
        try:
            data = relay_control(item.payload)
        except ProtocolError as e:
            logger.warning(f"Dropping control message for {recipient.session_id} in room {self.room_id}: {e}")
            return
        self._deliver(recipient, Frame.text(data))

    def _deliver(self, recipient: "PeerSession", frame: Frame) -> bool:
        if recipient.offer(frame):
            return True
        self._evict(recipient)
        return False

    def _evict(self, session: "PeerSession") -> None:
        self._members.discard(session)
        session.close_outbox()
        logger.warning(
            f"Session {session.session_id} not accepting frames "
            f"(queued: {session.outbox.pending}), evicted from room {self.room_id}"
        )
