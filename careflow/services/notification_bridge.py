"""
Notification Bridge

Keeps the registry of live client connections and fans query state changes
out to the right subscribers. Every connection owns a bounded outbound buffer
drained by its own sender task, so one slow or dead client never delays
delivery to the others.

`broadcast` may be called from pipeline worker threads; events are handed to
the connection's event loop with `call_soon_threadsafe`.
"""
import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from careflow.config import settings

logger = logging.getLogger(__name__)


class ConnectionRole(str, Enum):
    PATIENT = "patient"
    CLINICIAN = "clinician"


class EventType(str, Enum):
    CONNECTION_ESTABLISHED = "connection_established"
    QUERY_STATE_CHANGED = "query_state_changed"
    REVIEW_QUEUE_UPDATED = "review_queue_updated"
    PONG = "pong"
    RESYNC = "resync"
    QUERY_STATUS = "query_status"
    QUERY_HISTORY = "query_history"
    ERROR = "error"


def make_event(event_type: EventType, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": event_type.value,
        "payload": payload,
        "timestamp": datetime.now().isoformat(),
    }


@dataclass
class Connection:
    connection_id: str
    role: ConnectionRole
    subscriber_id: str
    websocket: Any  # needs async accept(), send_json(), close()
    loop: asyncio.AbstractEventLoop
    outbound: asyncio.Queue
    connected_at: float
    last_heartbeat: float
    messages_sent: int = 0
    closed: bool = False
    sender_task: Optional[asyncio.Task] = field(default=None, repr=False)


@dataclass(frozen=True)
class TargetFilter:
    """Which connections an event is for"""
    patient_id: Optional[str] = None
    clinicians: bool = False          # every clinician connection
    clinician_id: Optional[str] = None  # one specific clinician

    def matches(self, connection: Connection) -> bool:
        if connection.role == ConnectionRole.PATIENT:
            return self.patient_id is not None and connection.subscriber_id == self.patient_id
        if self.clinicians:
            return True
        return self.clinician_id is not None and connection.subscriber_id == self.clinician_id


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class NotificationBridge:
    """Registry of live connections plus scoped, non-blocking fan-out"""

    def __init__(
        self,
        heartbeat_interval: Optional[float] = None,
        max_missed_heartbeats: Optional[int] = None,
        buffer_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.heartbeat_interval = (
            settings.HEARTBEAT_INTERVAL_SECONDS if heartbeat_interval is None else heartbeat_interval
        )
        self.max_missed_heartbeats = (
            settings.HEARTBEAT_MAX_MISSED if max_missed_heartbeats is None else max_missed_heartbeats
        )
        self.buffer_size = settings.CONNECTION_BUFFER_SIZE if buffer_size is None else buffer_size
        self._clock = clock
        self._connections: Dict[str, Connection] = {}
        # Connections may live on different loops (one per server worker), so the
        # registry itself is guarded by a plain thread lock
        self._registry_lock = threading.Lock()

    # -- registry -----------------------------------------------------------

    async def connect(self, websocket, role: ConnectionRole, subscriber_id: str) -> Connection:
        """Accept the socket, register it and greet it with connection_established"""
        await websocket.accept()
        now = self._clock()
        connection = Connection(
            connection_id=str(uuid.uuid4()),
            role=role,
            subscriber_id=subscriber_id,
            websocket=websocket,
            loop=asyncio.get_running_loop(),
            outbound=asyncio.Queue(maxsize=self.buffer_size),
            connected_at=now,
            last_heartbeat=now,
        )
        with self._registry_lock:
            self._connections[connection.connection_id] = connection
        connection.sender_task = connection.loop.create_task(self._sender(connection))

        logger.info(
            f"Connection {connection.connection_id} added for {role.value} {subscriber_id}. "
            f"Total: {self.connection_count}"
        )
        self._enqueue(connection, make_event(EventType.CONNECTION_ESTABLISHED, {
            "connectionId": connection.connection_id,
            "role": role.value,
            "subscriberId": subscriber_id,
            "heartbeatInterval": self.heartbeat_interval,
        }))
        return connection

    async def disconnect(self, connection_id: str) -> None:
        """Client went away: drop the connection and stop its sender"""
        connection = self._unregister(connection_id)
        if connection is not None:
            logger.info(f"Connection {connection_id} closed. Total: {self.connection_count}")

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self._registry_lock:
            return self._connections.get(connection_id)

    @property
    def connection_count(self) -> int:
        with self._registry_lock:
            return len(self._connections)

    def _unregister(self, connection_id: str) -> Optional[Connection]:
        with self._registry_lock:
            connection = self._connections.pop(connection_id, None)
        if connection is None or connection.closed:
            return connection
        connection.closed = True
        task = connection.sender_task
        if task is not None and not task.done():
            current = asyncio.current_task() if _running_loop() is connection.loop else None
            if task is not current:
                # Task.cancel is not thread-safe; hop onto the owning loop when needed
                self._on_loop(connection, task.cancel)
        return connection

    # -- heartbeats ---------------------------------------------------------

    def heartbeat(self, connection_id: str) -> bool:
        connection = self.get_connection(connection_id)
        if connection is None:
            return False
        connection.last_heartbeat = self._clock()
        return True

    def evict_stale(self) -> List[str]:
        """Evict every connection that missed too many heartbeats; returns their ids"""
        deadline = self.heartbeat_interval * self.max_missed_heartbeats
        now = self._clock()
        with self._registry_lock:
            stale = [c for c in self._connections.values() if now - c.last_heartbeat > deadline]
        for connection in stale:
            logger.warning(
                f"Evicting connection {connection.connection_id}: "
                f"no heartbeat for {now - connection.last_heartbeat:.0f}s"
            )
            self._on_loop(connection, self._evict, connection, 1001)
        return [c.connection_id for c in stale]

    async def run_heartbeat_monitor(self) -> None:
        """Background task: sweep for dead connections once per heartbeat interval"""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            self.evict_stale()

    # -- delivery -----------------------------------------------------------

    def broadcast(self, event: Dict[str, Any], target: TargetFilter) -> int:
        """
        Queue an event for every matching connection without waiting on any of them.

        Safe to call from any thread. Returns the number of connections targeted.
        """
        with self._registry_lock:
            targets = [c for c in self._connections.values() if target.matches(c)]
        for connection in targets:
            self._on_loop(connection, self._enqueue, connection, event)
        return len(targets)

    def send(self, connection_id: str, event: Dict[str, Any]) -> bool:
        """Queue an event for a single connection"""
        connection = self.get_connection(connection_id)
        if connection is None:
            return False
        self._on_loop(connection, self._enqueue, connection, event)
        return True

    def _on_loop(self, connection: Connection, fn, *args) -> None:
        if _running_loop() is connection.loop:
            fn(*args)
            return
        try:
            connection.loop.call_soon_threadsafe(fn, *args)
        except RuntimeError:
            # Loop already closed; nothing left to deliver to
            self._unregister(connection.connection_id)

    def _enqueue(self, connection: Connection, event: Dict[str, Any]) -> None:
        if connection.closed:
            return
        try:
            connection.outbound.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Outbound buffer full for connection {connection.connection_id}, evicting slow consumer"
            )
            self._evict(connection, 1008)

    def _evict(self, connection: Connection, code: int) -> None:
        if self._unregister(connection.connection_id) is None:
            return
        connection.loop.create_task(self._close_socket(connection, code))

    async def _close_socket(self, connection: Connection, code: int) -> None:
        try:
            await connection.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Closing connection {connection.connection_id} failed: {e}")

    async def _sender(self, connection: Connection) -> None:
        """Drain one connection's buffer; failures only ever affect this connection"""
        send_timeout = max(self.heartbeat_interval, 1.0)
        while True:
            event = await connection.outbound.get()
            try:
                await asyncio.wait_for(connection.websocket.send_json(event), timeout=send_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Send to connection {connection.connection_id} failed, evicting: {e!r}")
                self._evict(connection, 1011)
                return
            connection.messages_sent += 1

    async def close_all(self) -> None:
        with self._registry_lock:
            connections = list(self._connections.values())
        for connection in connections:
            self._unregister(connection.connection_id)
            if connection.loop is _running_loop():
                await self._close_socket(connection, 1001)

    def get_connection_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._registry_lock:
            connections = list(self._connections.values())
        return {
            "total": len(connections),
            "patients": sum(1 for c in connections if c.role == ConnectionRole.PATIENT),
            "clinicians": sum(1 for c in connections if c.role == ConnectionRole.CLINICIAN),
            "oldest_connection_seconds": max((now - c.connected_at for c in connections), default=0.0),
            "messages_sent": sum(c.messages_sent for c in connections),
        }
