"""
Command processor — role-gated mutation of the playback state.

``handle(sender_id, command)`` checks the sender's role, applies the
matching transition to the store and returns the broadcast plan for the
caller to dispatch.  It never sends anything itself.

Plans per command:
  load (ok)        echo to all-but-sender, then current_state to everyone
  load (bad)       error to the sender only, state untouched
  play/pause/...   raw command echoed to all-but-sender
  unknown type     echoed like the above when leniency is on, else error
  non-controller   nothing at all (logged)
"""

import logging
import re

from .broadcast import Audience, Delivery
from .catalog import VIDEO
from .errors import InvalidSource, Unauthorized
from .playback import (
    LOCAL_AUDIO, LOCAL_VIDEO, REMOTE_STREAM,
    Load, Pause, Play, Restart, Seek, SetMuted, SetVolume, Unknown,
)
from .sessions import CONTROLLER

log = logging.getLogger("partysync.commands")

# watch?v=<id> anywhere in the query string, or the youtu.be/<id> short link
_URL_ID = re.compile(r'(?:/watch\?(?:[^#\s]*&)?v=|youtu\.be/)([A-Za-z0-9_-]{11})')
_RAW_ID = re.compile(r'^[A-Za-z0-9_-]{11}$')

REMOTE_SOURCE_TYPES = ("remote-stream", "youtube")
LOCAL_SOURCE_TYPES = ("local", "file", "local-video", "local-audio", "video", "audio")


def extract_video_id(url=None, video_id=None) -> str:
    """Resolve a remote-stream id from a URL or a raw id. Raises InvalidSource."""
    if url:
        if not isinstance(url, str):
            raise InvalidSource("Invalid YouTube URL")
        url = url.strip()
        m = _URL_ID.search(url)
        if m:
            return m.group(1)
        if _RAW_ID.match(url):
            return url
        raise InvalidSource("Invalid YouTube URL")
    if video_id:
        if isinstance(video_id, str) and _RAW_ID.match(video_id.strip()):
            return video_id.strip()
        raise InvalidSource("Invalid YouTube video ID")
    raise InvalidSource("Invalid YouTube URL or ID")


class CommandProcessor:
    """Validates and applies controller commands."""

    def __init__(self, registry, store, catalog, allow_unknown: bool = True):
        self.registry = registry
        self.store = store
        self.catalog = catalog
        self.allow_unknown = allow_unknown

    def handle(self, sender_id: str, command) -> list | None:
        """Apply *command* from *sender_id*; return the broadcast plan or None."""
        try:
            self._authorize(sender_id)
        except Unauthorized as e:
            log.warning("Command ignored: %s", e)
            return None

        if not isinstance(command, dict) or not isinstance(command.get("type"), str):
            log.warning("Malformed command from %s: %r", sender_id, command)
            return [self._error(sender_id, "Malformed command")]

        kind = command["type"]
        if kind == "load":
            return self._handle_load(sender_id, command)

        transition = self._transition_for(kind, command)
        if transition is None:
            if not self.allow_unknown:
                log.warning("Unknown command %r from %s rejected", kind, sender_id)
                return [self._error(sender_id, f"Unknown command: {kind}")]
            log.info("Unknown command %r from %s — echoing", kind, sender_id)
            transition = Unknown(kind)
        else:
            log.info("[COMMAND] %s from %s", kind.upper(), sender_id)

        self.store.apply(transition)
        return [Delivery(Audience.all_except(sender_id), "command", command)]

    def _authorize(self, sender_id: str):
        role = self.registry.role_of(sender_id)
        if role != CONTROLLER:
            raise Unauthorized(f"{sender_id} is {role or 'unidentified'}, not a controller")

    def _transition_for(self, kind: str, command: dict):
        if kind == "play":
            return Play()
        if kind == "pause":
            return Pause()
        if kind == "seek":
            return Seek(command.get("time"))
        if kind == "restart":
            return Restart()
        if kind == "volume":
            return SetVolume(command.get("volume"))
        if kind == "mute":
            return SetMuted(command.get("muted"))
        return None

    def _handle_load(self, sender_id: str, command: dict) -> list:
        try:
            load = self._resolve_load(command)
            state = self.store.apply(load)
        except InvalidSource as e:
            log.warning("Load rejected for %s: %s", sender_id, e)
            return [self._error(sender_id, str(e))]

        log.info("[COMMAND] LOAD %s %s (%s)", state.media_type, state.source_ref,
                 state.display_name or "-")
        echo = {
            "type": "load",
            "mediaType": state.media_type,
            "sourceRef": state.source_ref,
            "displayName": state.display_name,
            "accessRef": state.access_ref,
            "time": 0,
        }
        return [
            Delivery(Audience.all_except(sender_id), "command", echo),
            Delivery(Audience.everyone(), "current_state", state.to_dict()),
        ]

    def _resolve_load(self, command: dict) -> Load:
        source_type = command.get("sourceType") or command.get("mediaType")
        if source_type is None:
            source_type = "local" if command.get("fileId") else "remote-stream"
        if not isinstance(source_type, str):
            raise InvalidSource("Unsupported source type")
        source_type = source_type.lower()

        if source_type in REMOTE_SOURCE_TYPES:
            video_id = extract_video_id(command.get("url"), command.get("videoId"))
            title = command.get("title")
            return Load(REMOTE_STREAM, video_id,
                        display_name=title if isinstance(title, str) else None)

        if source_type in LOCAL_SOURCE_TYPES:
            file_id = command.get("fileId") or command.get("sourceRef")
            if not file_id or not isinstance(file_id, str):
                raise InvalidSource("No file selected")
            entry = self.catalog.get(file_id)
            if entry is None:
                raise InvalidSource(f"File not found: {file_id}")
            media_type = LOCAL_VIDEO if entry.kind == VIDEO else LOCAL_AUDIO
            return Load(media_type, entry.id, display_name=entry.display_name,
                        access_ref=entry.access_ref)

        raise InvalidSource(f"Unsupported source type: {source_type}")

    @staticmethod
    def _error(sender_id: str, message: str) -> Delivery:
        return Delivery(Audience.only(sender_id), "error", {"message": message})
