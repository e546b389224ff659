import asyncio
import threading
from typing import Dict, Optional, Set

from constants import ROOM_IDLE_GRACE_SECONDS
from hub import RoomHub
from logging_config import get_logger
from session import PeerSession

logger = get_logger(__name__)


class RoomRegistry:
    """Process-wide map of room id to its running RoomHub.

    Rooms are created lazily on first reference and retire themselves once
    they have been empty for `idle_grace` seconds. The lock only covers the
    lookup-or-insert and retirement critical sections.
    """

    def __init__(self, idle_grace: Optional[float] = ROOM_IDLE_GRACE_SECONDS):
        self.idle_grace = idle_grace
        self._rooms: Dict[str, RoomHub] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._lock = threading.Lock()
        logger.info(f"Initializing RoomRegistry with idle grace {idle_grace}s")

    def __contains__(self, room_id: str) -> bool:
        return room_id in self._rooms

    def get(self, room_id: str) -> Optional[RoomHub]:
        return self._rooms.get(room_id)

    def room_count(self) -> int:
        return len(self._rooms)

    def get_or_create(self, room_id: str) -> RoomHub:
        """Return the hub for `room_id`, starting its event loop if it is new.

        Must be called from inside the running event loop.
        """
        with self._lock:
            return self._get_or_create_locked(room_id)

    def join(self, room_id: str, session: PeerSession) -> RoomHub:
        """Attach `session` to its room and queue its registration.

        Both happen under the registry lock so an idle room can not retire
        between the lookup and the registration.
        """
        with self._lock:
            hub = self._get_or_create_locked(room_id)
            session.attach(hub)
            hub.register(session)
        logger.debug(f"Queued registration of session {session.session_id} in room {room_id}")
        return hub

    def retire(self, hub: RoomHub) -> bool:
        """Drop `hub` from the registry if it is still idle.

        Returns True when the hub may stop its event loop.
        """
        with self._lock:
            if self._rooms.get(hub.room_id) is not hub:
                return True
            if not hub.idle:
                return False
            del self._rooms[hub.room_id]
        logger.info(f"Room {hub.room_id} removed from registry")
        return True

    async def shutdown(self) -> None:
        with self._lock:
            tasks = list(self._tasks)
            self._rooms.clear()
        logger.info(f"Shutting down {len(tasks)} room event loops")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _get_or_create_locked(self, room_id: str) -> RoomHub:
        hub = self._rooms.get(room_id)
        if hub is not None:
            return hub

        loop = asyncio.get_running_loop()
        hub = RoomHub(room_id, registry=self, idle_grace=self.idle_grace)
        self._rooms[room_id] = hub
        task = loop.create_task(hub.run(), name=f"room-{room_id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t, hub=hub: self._on_room_done(hub, t))
        logger.info(f"Room {room_id} created (rooms: {len(self._rooms)})")
        return hub

    def _on_room_done(self, hub: RoomHub, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.error(f"Room {hub.room_id} event loop crashed: {exc}", exc_info=exc)
        with self._lock:
            if self._rooms.get(hub.room_id) is hub:
                del self._rooms[hub.room_id]


room_registry = RoomRegistry()
