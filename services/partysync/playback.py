"""
Playback state store — the single authoritative record of what is playing.

The state is an immutable ``PlaybackState`` value.  Every mutation goes
through ``PlaybackStore.apply(transition)``, which builds the next value in
one step and swaps it in, so a reader can never see a half-applied change.

Position is stored as given at the last mutation and is never advanced by
the server; clients extrapolate from ``lastUpdate`` themselves.
"""

import logging
import math
import time
from dataclasses import dataclass, replace

from .errors import InvalidSource

logger = logging.getLogger("partysync.playback")

NONE = "none"
REMOTE_STREAM = "remote-stream"
LOCAL_VIDEO = "local-video"
LOCAL_AUDIO = "local-audio"
MEDIA_TYPES = (NONE, REMOTE_STREAM, LOCAL_VIDEO, LOCAL_AUDIO)
LOCAL_TYPES = (LOCAL_VIDEO, LOCAL_AUDIO)


@dataclass(frozen=True)
class PlaybackState:
    """Snapshot of the shared playback state."""

    media_type: str = NONE
    source_ref: str | None = None
    display_name: str | None = None
    access_ref: str | None = None
    position: float = 0
    playing: bool = False
    volume: int = 100
    muted: bool = False
    last_update: int = 0

    @property
    def is_local(self) -> bool:
        return self.media_type in LOCAL_TYPES

    def to_dict(self) -> dict:
        """Wire form sent as ``current_state``."""
        return {
            "mediaType": self.media_type,
            "sourceRef": self.source_ref,
            "displayName": self.display_name,
            "accessRef": self.access_ref,
            "time": self.position,
            "isPlaying": self.playing,
            "volume": self.volume,
            "isMuted": self.muted,
            "lastUpdate": self.last_update,
        }


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Load:
    media_type: str
    source_ref: str | None
    display_name: str | None = None
    access_ref: str | None = None


@dataclass(frozen=True)
class Play:
    pass


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Seek:
    position: object = 0


@dataclass(frozen=True)
class Restart:
    pass


@dataclass(frozen=True)
class SetVolume:
    volume: object


@dataclass(frozen=True)
class SetMuted:
    muted: object


@dataclass(frozen=True)
class Stop:
    pass


@dataclass(frozen=True)
class Unknown:
    """A transition kind the store has no rule for. Only the timestamp moves."""
    kind: str = ""


def coerce_position(value) -> float:
    """Seek target in seconds: negative clamps to 0, junk becomes 0."""
    if isinstance(value, bool) or value is None:
        return 0
    try:
        position = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(position) or position < 0:
        return 0
    return int(position) if position.is_integer() else position


def coerce_volume(value) -> int | None:
    """Volume clamped to 0..100, or None when the value is not a number."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        # arbitrary-size JSON integers; clamp before float() can overflow
        value = max(0, min(100, value))
    try:
        volume = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(volume):
        return None
    return int(round(max(0, min(100, volume))))


def coerce_muted(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


class PlaybackStore:
    """Owns the one PlaybackState. Single writer, no locking."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._state = PlaybackState(last_update=self._now())

    def _now(self) -> int:
        return int(self._clock() * 1000)

    def snapshot(self) -> PlaybackState:
        return self._state

    def apply(self, transition) -> PlaybackState:
        """Apply *transition* and return the new state."""
        state = self._state
        stamp = {"last_update": self._now()}

        if isinstance(transition, Load):
            if transition.media_type not in MEDIA_TYPES or transition.media_type == NONE:
                raise InvalidSource(f"Cannot load media type {transition.media_type!r}")
            if not transition.source_ref:
                raise InvalidSource("Missing media source")
            new = replace(
                state,
                media_type=transition.media_type,
                source_ref=transition.source_ref,
                display_name=transition.display_name,
                access_ref=transition.access_ref if transition.media_type in LOCAL_TYPES else None,
                position=0,
                playing=True,
                **stamp,
            )
        elif isinstance(transition, Play):
            new = replace(state, playing=True, **stamp)
        elif isinstance(transition, Pause):
            new = replace(state, playing=False, **stamp)
        elif isinstance(transition, Seek):
            new = replace(state, position=coerce_position(transition.position), **stamp)
        elif isinstance(transition, Restart):
            new = replace(state, position=0, playing=True, **stamp)
        elif isinstance(transition, SetVolume):
            volume = coerce_volume(transition.volume)
            if volume is None:
                logger.debug("Ignoring non-numeric volume %r", transition.volume)
                volume = state.volume
            new = replace(state, volume=volume, **stamp)
        elif isinstance(transition, SetMuted):
            new = replace(state, muted=coerce_muted(transition.muted), **stamp)
        elif isinstance(transition, Stop):
            new = PlaybackState(volume=state.volume, muted=state.muted, **stamp)
        else:
            logger.debug("No rule for transition %r", transition)
            new = replace(state, **stamp)

        self._state = new
        return new

    def is_playing_entry(self, entry_id: str) -> bool:
        """True when the current local media is the catalog entry *entry_id*."""
        state = self._state
        return state.is_local and state.source_ref == entry_id

