"""Subscription routing and fan-out.

Publishing never awaits: each frame is encoded once and pushed onto the
bounded outbound queue of every subscribed connection. A per-connection
writer task (owned by the server) drains the queue, so a stalled socket
only ever fills its own queue.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from parceltrack._constants import OUTBOUND_QUEUE_SIZE, OVERFLOW_DISCONNECT, OVERFLOW_DROP_OLDEST
from parceltrack.protocol import Message, encode_message

_logger = logging.getLogger(__name__)


class QueueClosed(Exception):
    """Raised by :meth:`OutboundQueue.get` once the queue is closed and drained."""


class OutboundQueue:
    """Bounded FIFO of encoded frames with a drop-oldest or disconnect policy."""

    def __init__(self, maxsize: int = OUTBOUND_QUEUE_SIZE, *, policy: str = OVERFLOW_DROP_OLDEST) -> None:
        self._items: deque[str] = deque()
        self._maxsize = maxsize
        self._policy = policy
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0
        self.overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def put_nowait(self, frame: str) -> bool:
        """Queue *frame*; returns ``False`` if it was not queued."""
        if self._closed:
            return False
        if len(self._items) >= self._maxsize:
            if self._policy == OVERFLOW_DISCONNECT:
                self.overflowed = True
                self.close()
                return False
            self._items.popleft()
            self.dropped += 1
        self._items.append(frame)
        self._ready.set()
        return True

    async def get(self) -> str:
        while not self._items:
            if self._closed:
                raise QueueClosed
            self._ready.clear()
            await self._ready.wait()
        return self._items.popleft()

    def get_nowait(self) -> str | None:
        return self._items.popleft() if self._items else None

    def close(self) -> None:
        self._closed = True
        self._ready.set()


@dataclass
class Connection:
    """One subscriber connection as seen by the router."""

    connection_id: str
    queue: OutboundQueue
    parcels: set[str] = field(default_factory=set)


class SubscriptionRouter:
    def __init__(
        self,
        *,
        queue_size: int = OUTBOUND_QUEUE_SIZE,
        overflow_policy: str = OVERFLOW_DROP_OLDEST,
        on_overflow: Callable[[str, set[str]], None] | None = None,
    ) -> None:
        self._queue_size = queue_size
        self._overflow_policy = overflow_policy
        self._on_overflow = on_overflow
        self._connections: dict[str, Connection] = {}
        self._subscribers: dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register(self, connection_id: str) -> Connection:
        if connection_id in self._connections:
            raise ValueError(f"Connection {connection_id!r} is already registered")
        connection = Connection(
            connection_id=connection_id,
            queue=OutboundQueue(self._queue_size, policy=self._overflow_policy),
        )
        self._connections[connection_id] = connection
        _logger.debug("Connection registered id=%s", connection_id)
        return connection

    def connection(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def disconnect(self, connection_id: str) -> set[str]:
        """Forget *connection_id* and all its subscriptions.

        Returns the parcel ids it was subscribed to.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return set()
        parcels = set(connection.parcels)
        for parcel_id in parcels:
            self._discard(parcel_id, connection_id)
        connection.parcels.clear()
        connection.queue.close()
        _logger.debug("Connection removed id=%s parcels=%s", connection_id, sorted(parcels))
        return parcels

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, connection_id: str, parcel_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise KeyError(connection_id)
        connection.parcels.add(parcel_id)
        self._subscribers.setdefault(parcel_id, set()).add(connection_id)

    def unsubscribe(self, connection_id: str, parcel_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.parcels.discard(parcel_id)
        self._discard(parcel_id, connection_id)

    def _discard(self, parcel_id: str, connection_id: str) -> None:
        subscribers = self._subscribers.get(parcel_id)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._subscribers[parcel_id]

    def subscribers(self, parcel_id: str) -> frozenset[str]:
        return frozenset(self._subscribers.get(parcel_id, ()))

    def subscriptions(self, connection_id: str) -> frozenset[str]:
        connection = self._connections.get(connection_id)
        return frozenset(connection.parcels) if connection is not None else frozenset()

    def subscriber_count(self, parcel_id: str) -> int:
        return len(self._subscribers.get(parcel_id, ()))

    def __len__(self) -> int:
        return len(self._connections)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def send_to(self, connection_id: str, message: Message) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return self._deliver(connection, encode_message(message.event, message.data))

    def publish(self, parcel_id: str, message: Message) -> int:
        """Queue *message* for every current subscriber of *parcel_id*.

        The subscriber set is captured when the call starts; connections
        removed before that never see the message.
        """
        targets = tuple(self._subscribers.get(parcel_id, ()))
        if not targets:
            return 0
        frame = encode_message(message.event, message.data)
        delivered = 0
        for connection_id in targets:
            connection = self._connections.get(connection_id)
            if connection is None:
                continue
            if self._deliver(connection, frame):
                delivered += 1
        _logger.debug("Published %s parcel=%s to %d/%d", message.event, parcel_id, delivered, len(targets))
        return delivered

    def _deliver(self, connection: Connection, frame: str) -> bool:
        queued = connection.queue.put_nowait(frame)
        if connection.queue.overflowed and connection.connection_id in self._connections:
            _logger.warning("Outbound queue overflow, disconnecting id=%s", connection.connection_id)
            parcels = self.disconnect(connection.connection_id)
            if self._on_overflow is not None:
                self._on_overflow(connection.connection_id, parcels)
        return queued
