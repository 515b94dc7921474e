"""Liveness reaper — periodic eviction of sessions that stopped heartbeating."""

import asyncio
import logging
import time

from .sessions import ROLES, VIEWER

log = logging.getLogger("partysync.reaper")

# Named eviction policies
VIEWERS_ONLY = "viewers-only"   # controllers are never swept
ALL_ROLES = "all-roles"
POLICIES = (VIEWERS_ONLY, ALL_ROLES)


class LivenessReaper:
    """Every *interval* seconds, evict sessions idle for more than *timeout*."""

    def __init__(self, registry, broadcaster, timeout: float = 120, interval: float = 60,
                 policy: str = VIEWERS_ONLY, clock=time.time, on_evict=None):
        if policy not in POLICIES:
            raise ValueError(f"unknown reap policy: {policy!r}")
        self.registry = registry
        self.broadcaster = broadcaster
        self.timeout = timeout
        self.interval = interval
        self.policy = policy
        self._clock = clock
        self._on_evict = on_evict

    @property
    def roles(self) -> tuple:
        return (VIEWER,) if self.policy == VIEWERS_ONLY else ROLES

    def sweep(self) -> list[str]:
        """One pass. Returns the evicted ids; counts are broadcast once if any."""
        evicted = []
        for sid in self.registry.stale(self._clock(), self.timeout, self.roles):
            role = self.registry.remove(sid)
            if role is None:
                continue
            log.info("[CLEANUP] Stale %s removed: %s", role, sid)
            evicted.append(sid)
            if self._on_evict:
                self._on_evict(sid)
        if evicted:
            self.broadcaster.broadcast_counts()
        return evicted

    async def run(self):
        log.info("Reaper started (timeout=%ss, interval=%ss, policy=%s)",
                 self.timeout, self.interval, self.policy)
        while True:
            await asyncio.sleep(self.interval)
            self.sweep()
