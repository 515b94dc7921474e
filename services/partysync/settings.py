"""Typed service settings built from config.json plus environment overrides."""

import os
from pathlib import Path

from lib.config import cfg

from .errors import FatalStartupError
from .reaper import POLICIES, VIEWERS_ONLY


def _number(value, name: str, cast=int, minimum=None):
    if isinstance(value, bool):
        raise FatalStartupError(f"{name} must be a number, got {value!r}")
    try:
        number = cast(value)
    except (TypeError, ValueError, OverflowError):
        raise FatalStartupError(f"{name} must be a number, got {value!r}") from None
    if minimum is not None and number < minimum:
        raise FatalStartupError(f"{name} must be >= {minimum}, got {number}")
    return number


def _flag(value, name: str) -> bool:
    if not isinstance(value, bool):
        raise FatalStartupError(f"{name} must be true or false, got {value!r}")
    return value


class Settings:
    """Everything the sync service needs to start."""

    def __init__(self, host="0.0.0.0", http_port=8000, ws_port=8001, media_dir="uploads",
                 debounce_ms=1000, liveness_timeout=120, sweep_interval=60,
                 reap_policy=VIEWERS_ONLY, allow_unknown_commands=True, queue_size=256):
        self.host = host
        self.http_port = http_port
        self.ws_port = ws_port
        self.media_dir = Path(media_dir)
        self.debounce_ms = debounce_ms
        self.liveness_timeout = liveness_timeout
        self.sweep_interval = sweep_interval
        self.reap_policy = reap_policy
        self.allow_unknown_commands = allow_unknown_commands
        self.queue_size = queue_size

    @classmethod
    def from_config(cls) -> "Settings":
        """Read lib.config and the PORT / WS_PORT / MEDIA_DIR env vars.

        Raises FatalStartupError for values the service cannot run with.
        """
        policy = cfg("liveness", "reap_policy", default=VIEWERS_ONLY)
        if policy not in POLICIES:
            raise FatalStartupError(f"liveness.reap_policy must be one of {POLICIES}, got {policy!r}")

        return cls(
            host=os.getenv("HOST") or cfg("server", "host", default="0.0.0.0"),
            http_port=_number(os.getenv("PORT") or cfg("server", "http_port", default=8000),
                              "server.http_port", minimum=1),
            ws_port=_number(os.getenv("WS_PORT") or cfg("server", "ws_port", default=8001),
                            "server.ws_port", minimum=1),
            media_dir=os.getenv("MEDIA_DIR") or cfg("media", "directory", default="uploads"),
            debounce_ms=_number(cfg("media", "debounce_ms", default=1000),
                                "media.debounce_ms", minimum=0),
            liveness_timeout=_number(cfg("liveness", "timeout", default=120),
                                     "liveness.timeout", cast=float, minimum=1),
            sweep_interval=_number(cfg("liveness", "sweep_interval", default=60),
                                   "liveness.sweep_interval", cast=float, minimum=1),
            reap_policy=policy,
            allow_unknown_commands=_flag(cfg("commands", "allow_unknown", default=True),
                                         "commands.allow_unknown"),
            queue_size=_number(cfg("broadcast", "queue_size", default=256),
                               "broadcast.queue_size", minimum=1),
        )
