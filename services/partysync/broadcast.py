"""
Broadcast fan-out — who gets a message, and getting it to them.

Audiences are explicit predicates over (session id, role) evaluated against
the attached channels, so "everyone but the sender" or "controllers only"
never depends on a transport's room/group feature.

Delivery is best-effort and at-most-once.  A message is serialized once and
queued on each target channel without waiting; every channel drains its own
queue in order, so a slow viewer lags on its own and never holds up the
sender or anybody else.
"""

import asyncio
import json
import logging

from .sessions import CONTROLLER

log = logging.getLogger("partysync.broadcast")

DEFAULT_QUEUE_SIZE = 256


class Audience:
    """A named selection predicate: predicate(session_id, role) -> bool."""

    def __init__(self, name: str, predicate):
        self.name = name
        self.predicate = predicate

    def __repr__(self):
        return f"Audience({self.name})"

    @classmethod
    def everyone(cls) -> "Audience":
        return cls("all", lambda sid, role: True)

    @classmethod
    def all_except(cls, sender_id: str) -> "Audience":
        return cls(f"all-except:{sender_id}", lambda sid, role: sid != sender_id)

    @classmethod
    def role(cls, wanted: str) -> "Audience":
        return cls(f"role:{wanted}", lambda sid, role: role == wanted)

    @classmethod
    def only(cls, session_id: str) -> "Audience":
        return cls(f"only:{session_id}", lambda sid, role: sid == session_id)


class Delivery:
    """One event for one audience."""

    def __init__(self, audience: Audience, event: str, data: dict):
        self.audience = audience
        self.event = event
        self.data = data

    def __repr__(self):
        return f"Delivery({self.audience!r}, {self.event!r})"


# A broadcast plan is an ordered list of deliveries, dispatched in order.
BroadcastPlan = list


def encode(event: str, data: dict) -> str:
    return json.dumps({"type": event, "data": data})


class QueueChannel:
    """Bounded outbound queue for one session, drained by run().

    *send* is the transport's coroutine function taking the encoded text.
    """

    def __init__(self, session_id: str, send, maxsize: int = DEFAULT_QUEUE_SIZE):
        self.session_id = session_id
        self._send = send
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, message: str) -> bool:
        """Queue *message*. Never blocks; False if dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            log.warning("Outbound queue full for %s — dropping message", self.session_id)
            return False
        return True

    async def run(self):
        """Writer loop. Returns when the transport fails or close() is called."""
        while True:
            message = await self._queue.get()
            if message is None:
                break
            try:
                await self._send(message)
            except Exception as e:
                log.debug("Send to %s failed: %s", self.session_id, e)
                break
        self.closed = True

    async def flush(self, timeout: float = 1.0):
        """Wait (bounded) until everything queued so far has been handed to the transport."""
        deadline = asyncio.get_running_loop().time() + timeout
        while not self._queue.empty() and not self.closed:
            if asyncio.get_running_loop().time() >= deadline:
                break
            await asyncio.sleep(0.01)

    def close(self):
        """Stop the writer after what is already queued."""
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


class Broadcaster:
    """Fan-out over attached channels, with roles looked up in the registry."""

    def __init__(self, registry):
        self._registry = registry
        self._channels: dict = {}

    def attach(self, session_id: str, channel):
        self._channels[session_id] = channel

    def detach(self, session_id: str):
        self._channels.pop(session_id, None)

    def channel(self, session_id: str):
        return self._channels.get(session_id)

    @property
    def connected(self) -> int:
        return len(self._channels)

    def select(self, audience: Audience) -> list[str]:
        return [
            sid for sid in self._channels
            if audience.predicate(sid, self._registry.role_of(sid))
        ]

    def send(self, audience: Audience, event: str, data: dict) -> int:
        """Deliver one event; returns how many channels accepted it."""
        targets = self.select(audience)
        if not targets:
            return 0
        message = encode(event, data)
        delivered = 0
        for sid in targets:
            channel = self._channels.get(sid)
            if channel is not None and channel.deliver(message):
                delivered += 1
        log.debug("%s -> %s: %d/%d", event, audience.name, delivered, len(targets))
        return delivered

    def to_all(self, event: str, data: dict) -> int:
        return self.send(Audience.everyone(), event, data)

    def to_all_except(self, sender_id: str, event: str, data: dict) -> int:
        return self.send(Audience.all_except(sender_id), event, data)

    def to_role(self, role: str, event: str, data: dict) -> int:
        return self.send(Audience.role(role), event, data)

    def to_controllers(self, event: str, data: dict) -> int:
        return self.to_role(CONTROLLER, event, data)

    def to_session(self, session_id: str, event: str, data: dict) -> int:
        return self.send(Audience.only(session_id), event, data)

    def dispatch(self, plan) -> None:
        """Execute a broadcast plan in order. None / empty plans are no-ops."""
        for delivery in plan or ():
            self.send(delivery.audience, delivery.event, delivery.data)

    def broadcast_counts(self) -> dict:
        counts = self._registry.counts_by_role()
        self.to_all("clients_count", counts)
        return counts
