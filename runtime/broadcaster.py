"""
A2W Runtime: Status Broadcaster

Best-effort fan-out of envelopes to subscribers, one channel per
message family (status, needs, errors, events). Each subscription owns a
bounded buffer; on overflow the oldest message is dropped. publish()
never waits on a subscriber, so the FSM transition path is never held
up by a slow or disconnected client.

Subscriptions can be drained synchronously (tests, CLI) or awaited from
an asyncio loop (WebSocket handlers). Publishing from worker threads
wakes the loop through call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from collections import deque
from typing import Any, Callable

from a2w.types import Envelope, MessageType

logger = logging.getLogger("a2w_runtime.broadcaster")

DEFAULT_BUFFER_SIZE = 256


class Channel(str, enum.Enum):
    STATUS = "status"
    NEEDS = "needs"
    ERRORS = "errors"
    EVENTS = "events"


CHANNEL_FOR: dict[MessageType, Channel] = {
    MessageType.STATUS_UPDATE: Channel.STATUS,
    MessageType.NEED_DATA: Channel.NEEDS,
    MessageType.ERROR: Channel.ERRORS,
    MessageType.EVENT: Channel.EVENTS,
}


class Subscription:
    """Bounded, drop-oldest buffer for one subscriber on one channel."""

    def __init__(self, channel: Channel, capacity: int = DEFAULT_BUFFER_SIZE):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.channel = channel
        self.capacity = capacity
        self.dropped = 0
        self.delivered = 0
        self.closed = False
        self._buffer: deque[Envelope] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Event | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Enable await get() from the given loop. Call from inside that loop."""
        self._loop = loop
        self._ready = asyncio.Event()
        with self._lock:
            if self._buffer:
                self._ready.set()

    def offer(self, envelope: Envelope) -> bool:
        """Buffer an envelope. Returns False when the oldest one was dropped."""
        with self._lock:
            if self.closed:
                return True
            overflow = len(self._buffer) == self.capacity
            self._buffer.append(envelope)
            if overflow:
                self.dropped += 1
            else:
                self.delivered += 1
        self._wake()
        return not overflow

    def poll(self) -> Envelope | None:
        with self._lock:
            return self._buffer.popleft() if self._buffer else None

    def drain(self) -> list[Envelope]:
        with self._lock:
            items = list(self._buffer)
            self._buffer.clear()
        return items

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    async def get(self) -> Envelope | None:
        """Next envelope; None once the subscription is closed and empty."""
        if self._ready is None:
            self.bind_loop(asyncio.get_running_loop())
        while True:
            with self._lock:
                if self._buffer:
                    return self._buffer.popleft()
                if self.closed:
                    return None
                self._ready.clear()
            await self._ready.wait()

    def close(self) -> None:
        with self._lock:
            self.closed = True
        self._wake()

    def _wake(self) -> None:
        loop, ready = self._loop, self._ready
        if loop is None or ready is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(ready.set)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass


class StatusBroadcaster:
    """Channel-keyed fan-out to bounded subscriptions."""

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        on_overflow: Callable[[Subscription], Any] | None = None,
    ):
        self.buffer_size = buffer_size
        self._subscriptions: dict[Channel, list[Subscription]] = {c: [] for c in Channel}
        self._lock = threading.Lock()
        self._on_overflow = on_overflow
        self.published = 0

    def subscribe(self, channel: Channel | str, capacity: int | None = None) -> Subscription:
        sub = Subscription(Channel(channel), capacity or self.buffer_size)
        with self._lock:
            self._subscriptions[sub.channel].append(sub)
        logger.debug("Subscriber added on %s", sub.channel.value)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        with self._lock:
            subs = self._subscriptions[sub.channel]
            if sub in subs:
                subs.remove(sub)

    def publish(self, envelope: Envelope) -> int:
        """Deliver to every subscriber of the envelope's channel. Returns the count."""
        channel = CHANNEL_FOR.get(envelope.message_type)
        if channel is None:
            return 0
        with self._lock:
            subs = list(self._subscriptions[channel])
            self.published += 1
        for sub in subs:
            if not sub.offer(envelope) and sub.dropped == 1 and self._on_overflow:
                # Report the first overflow only; the report itself may overflow.
                self._on_overflow(sub)
        return len(subs)

    def subscriber_count(self, channel: Channel | str | None = None) -> int:
        with self._lock:
            if channel is None:
                return sum(len(s) for s in self._subscriptions.values())
            return len(self._subscriptions[Channel(channel)])

    def close(self) -> None:
        with self._lock:
            subs = [s for group in self._subscriptions.values() for s in group]
            for group in self._subscriptions.values():
                group.clear()
        for sub in subs:
            sub.close()
