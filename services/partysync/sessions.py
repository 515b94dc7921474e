"""Session registry — identified connections, their role and liveness."""

import logging
import time

logger = logging.getLogger("partysync.sessions")

CONTROLLER = "controller"
VIEWER = "viewer"
ROLES = (CONTROLLER, VIEWER)


def parse_role(value) -> str:
    """Role requested by an identify message; anything unknown is a viewer."""
    if isinstance(value, str) and value.strip().lower() == CONTROLLER:
        return CONTROLLER
    return VIEWER


class Session:
    """One identified connection."""

    def __init__(self, id: str, role: str, address: str = "", user_agent: str = "",
                 now: float | None = None):
        now = time.time() if now is None else now
        self.id = id
        self.role = role
        self.address = address          # diagnostic only
        self.user_agent = user_agent    # diagnostic only
        self.connected_at = now
        self.last_seen = now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "ip": self.address,
            "userAgent": self.user_agent,
            "connectedAt": self.connected_at,
            "lastSeen": self.last_seen,
        }


class SessionRegistry:
    """Tracks identified sessions. Never broadcasts — callers do that."""

    def __init__(self, clock=time.time):
        self._sessions: dict[str, Session] = {}
        self._clock = clock

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, id):
        return id in self._sessions

    def register(self, id: str, role: str, metadata: dict | None = None) -> Session:
        """Add (or overwrite) the session for *id*."""
        if role not in ROLES:
            raise ValueError(f"unknown role: {role!r}")
        metadata = metadata or {}
        previous = self._sessions.get(id)
        session = Session(
            id, role,
            address=metadata.get("address", ""),
            user_agent=metadata.get("user_agent", ""),
            now=self._clock(),
        )
        self._sessions[id] = session
        if previous is not None:
            logger.info("Session %s re-registered (%s -> %s)", id, previous.role, role)
        return session

    def touch(self, id: str) -> bool:
        """Refresh last_seen. Unknown ids are ignored."""
        session = self._sessions.get(id)
        if session is None:
            return False
        session.last_seen = max(session.last_seen, self._clock())
        return True

    def remove(self, id: str) -> str | None:
        """Drop *id*, returning the role it had (None if it was not registered)."""
        session = self._sessions.pop(id, None)
        return session.role if session else None

    def role_of(self, id: str) -> str | None:
        session = self._sessions.get(id)
        return session.role if session else None

    def get(self, id: str) -> Session | None:
        return self._sessions.get(id)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def counts_by_role(self) -> dict:
        controllers = sum(1 for s in self._sessions.values() if s.role == CONTROLLER)
        return {
            "controllers": controllers,
            "viewers": len(self._sessions) - controllers,
        }

    def stale(self, now: float, threshold: float, roles=ROLES) -> list[str]:
        """Ids whose last_seen is older than *threshold* seconds, limited to *roles*."""
        return [
            s.id for s in self._sessions.values()
            if s.role in roles and now - s.last_seen > threshold
        ]
