"""
Real-time Dirty-Event Hub over Server-Sent Events

Fans out lightweight "something changed" notifications to live subscribers.
Events carry a type tag and an optional board id, never the changed data;
clients refetch the authoritative resource on reception.

Two registries:
- global, keyed by owner uid (boards.* events for the sidebar)
- per-board, keyed by board id (columns.changed / tasks.changed)

Delivery is best-effort and at-most-once with no replay log.
"""

import asyncio
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Deque, Dict, FrozenSet, Hashable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_MS = 3000
DEFAULT_MAX_PENDING = 256


class EventType(str, Enum):
    """Stable event vocabulary; the value is the exact name used on the wire."""
    BOARDS_CREATED = "boards.created"
    BOARDS_UPDATED = "boards.updated"
    BOARDS_DELETED = "boards.deleted"
    COLUMNS_CHANGED = "columns.changed"
    TASKS_CHANGED = "tasks.changed"
    PING = "ping"

    def wire(self) -> str:
        return self.value


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class DirtyEvent:
    """Minimal event payload prompting a refetch."""
    type: EventType
    ts: str = field(default_factory=utc_timestamp)
    board_id: Optional[int] = None

    def to_json(self) -> str:
        payload = {"type": self.type.wire(), "ts": self.ts}
        if self.board_id is not None:
            payload["boardId"] = self.board_id
        return json.dumps(payload, separators=(",", ":"))


class ConnectionSendError(Exception):
    """Raised when an event cannot be handed to a subscriber connection."""


class SseConnection:
    """
    One long-lived subscriber stream.

    Frames are queued in a bounded outbox. Senders run on any thread and
    never block: a closed connection or a full outbox is a send failure.
    The HTTP response drains the outbox with frames(), which waits on the
    event loop instead of holding a worker thread. Close callbacks run
    exactly once, whichever of completion or error happens first.
    """

    def __init__(self, key: Hashable, reconnect_ms: int = DEFAULT_RECONNECT_MS,
                 max_pending: int = DEFAULT_MAX_PENDING):
        self.key = key
        self.reconnect_ms = reconnect_ms
        self.max_pending = max_pending
        self.error: Optional[BaseException] = None
        self._outbox: Deque[str] = deque()
        self._outbox_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._closed = threading.Event()
        self._callbacks: List[Callable[["SseConnection"], None]] = []
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def on_close(self, callback: Callable[["SseConnection"], None]) -> None:
        with self._lock:
            if not self._closed.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def format_frame(self, event_name: str, data: str) -> str:
        return f"event: {event_name}\nretry: {self.reconnect_ms}\ndata: {data}\n\n"

    def send(self, event_name: str, data: str) -> None:
        frame = self.format_frame(event_name, data)
        with self._outbox_lock:
            if self._closed.is_set():
                raise ConnectionSendError("connection closed")
            if len(self._outbox) >= self.max_pending:
                raise ConnectionSendError(f"outbox full ({self.max_pending} pending frames)")
            self._outbox.append(frame)
        self._wake()

    def drain(self) -> List[str]:
        """Take every queued frame without blocking."""
        with self._outbox_lock:
            frames = list(self._outbox)
            self._outbox.clear()
        return frames

    async def frames(self) -> AsyncIterator[str]:
        """
        Yield queued frames on the running event loop until the connection
        closes. Frames queued before the close are still delivered.
        """
        self._wakeup = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        while True:
            # Cleared before draining so a send racing with the drain re-sets it
            self._wakeup.clear()
            pending = self.drain()
            for frame in pending:
                yield frame
            if pending:
                continue
            if self._closed.is_set():
                return
            await self._wakeup.wait()

    def _wake(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            logger.debug(f"Event loop of SSE stream {self.key!r} already closed")

    def complete(self) -> None:
        self._close(None)

    def complete_with_error(self, error: BaseException) -> None:
        self._close(error)

    def _close(self, error: Optional[BaseException]) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            self.error = error
            with self._outbox_lock:
                self._closed.set()
            callbacks, self._callbacks = self._callbacks, []
        self._wake()
        for callback in callbacks:
            callback(self)


class _Registry:
    """
    Key -> copy-on-write frozenset of connections.

    Writers replace the set under a short lock; broadcasters iterate a
    snapshot without locking, so a concurrent join or leave never skips or
    duplicates a delivery to the connections present at snapshot time.
    """

    def __init__(self, name: str):
        self.name = name
        self._sets: Dict[Hashable, FrozenSet[SseConnection]] = {}
        self._lock = threading.Lock()

    def add(self, key: Hashable, connection: SseConnection) -> int:
        with self._lock:
            members = self._sets.get(key, frozenset()) | {connection}
            self._sets[key] = members
            return len(members)

    def remove(self, key: Hashable, connection: SseConnection) -> None:
        with self._lock:
            members = self._sets.get(key)
            if members is None or connection not in members:
                return
            remaining = members - {connection}
            if remaining:
                self._sets[key] = remaining
            else:
                del self._sets[key]

    def snapshot(self, key: Hashable) -> FrozenSet[SseConnection]:
        return self._sets.get(key, frozenset())

    def all_connections(self) -> List[SseConnection]:
        sets = list(self._sets.values())
        return [connection for members in sets for connection in members]

    def count(self) -> int:
        return sum(len(members) for members in list(self._sets.values()))


class EventHub:
    """In-memory hub for SSE subscriber connections."""

    def __init__(self, reconnect_ms: int = DEFAULT_RECONNECT_MS,
                 max_pending: int = DEFAULT_MAX_PENDING,
                 on_broadcast: Optional[Callable[[int, float], None]] = None):
        self.reconnect_ms = reconnect_ms
        self.max_pending = max_pending
        self._global = _Registry("global")
        self._boards = _Registry("board")
        self._on_broadcast = on_broadcast

    # Subscription API

    def subscribe_global(self, owner_uid: str) -> SseConnection:
        return self._subscribe(self._global, owner_uid)

    def subscribe_board(self, board_id: int) -> SseConnection:
        return self._subscribe(self._boards, board_id)

    def _subscribe(self, registry: _Registry, key: Hashable) -> SseConnection:
        connection = SseConnection(key, self.reconnect_ms, self.max_pending)
        total = registry.add(key, connection)
        connection.on_close(lambda conn: self._release(registry, conn))
        logger.info(f"SSE {registry.name} subscriber joined {key!r} ({total} on key)")

        # Handshake so the client knows the stream is alive immediately
        self._safe_send(connection, DirtyEvent(EventType.PING))
        return connection

    def _release(self, registry: _Registry, connection: SseConnection) -> None:
        registry.remove(connection.key, connection)
        if connection.error is not None:
            logger.warning(f"SSE {registry.name} subscriber {connection.key!r} dropped: {connection.error}")
        else:
            logger.info(f"SSE {registry.name} subscriber left {connection.key!r}")

    # Broadcast API, called after the owning transaction commits

    def emit_boards(self, owner_uid: str, event_type: EventType) -> int:
        """Notify an owner's sidebar streams. Returns the number of successful sends."""
        return self._emit(self._global, owner_uid, DirtyEvent(EventType(event_type)))

    def emit_board(self, board_id: int, event_type: EventType) -> int:
        """Notify the streams watching one board. Returns the number of successful sends."""
        return self._emit(self._boards, board_id, DirtyEvent(EventType(event_type), board_id=board_id))

    def _emit(self, registry: _Registry, key: Hashable, event: DirtyEvent) -> int:
        subscribers = registry.snapshot(key)
        if not subscribers:
            logger.debug(f"No subscribers for {event.type.wire()} on {key!r}")
            return 0
        return self._broadcast(subscribers, event)

    def heartbeat(self) -> int:
        """Send a ping to every connection in both registries."""
        connections = self._global.all_connections() + self._boards.all_connections()
        if not connections:
            return 0
        return self._broadcast(connections, DirtyEvent(EventType.PING))

    def _broadcast(self, connections, event: DirtyEvent) -> int:
        start_time = time.time()
        delivered = sum(1 for connection in connections if self._safe_send(connection, event))
        if self._on_broadcast is not None:
            self._on_broadcast(len(connections), (time.time() - start_time) * 1000)
        return delivered

    def _safe_send(self, connection: SseConnection, event: DirtyEvent) -> bool:
        try:
            connection.send(event.type.wire(), event.to_json())
            return True
        except ConnectionSendError as e:
            connection.complete_with_error(e)
            return False

    # Introspection and shutdown

    def connection_count(self) -> int:
        return self._global.count() + self._boards.count()

    def close_all(self) -> None:
        for connection in self._global.all_connections() + self._boards.all_connections():
            connection.complete()
