"""
Catalog watcher — keeps the Catalog in step with the media directory.

Every raw filesystem event for a path (re)starts that path's debounce
timer; only the most recently scheduled timer for a path does anything
when it fires (older ones see a stale token and return).  After the quiet
period the file is stat'ed again and classified:

    present, not cataloged  -> created   add + file_added to controllers
    present, cataloged      -> modified  size refreshed, no notification
    absent,  cataloged      -> absent    remove + file_removed to controllers
                                          (+ forced stop if it was playing)

The delay keeps half-written uploads out of the catalog; the catalog may
lag the directory by up to one debounce window.
"""

import asyncio
import itertools
import logging
import stat
from pathlib import Path

from watchfiles import awatch

from .catalog import CatalogEntry, access_ref_for, display_name_for, media_kind
from .errors import InvalidSource
from .playback import Stop

log = logging.getLogger("partysync.watcher")

CREATED = "created"
MODIFIED = "modified"
ABSENT = "absent"


class CatalogWatcher:
    """Debounced directory events -> Catalog mutations and notifications."""

    def __init__(self, catalog, store, broadcaster, debounce_ms: int = 1000, call_later=None):
        self.catalog = catalog
        self.store = store
        self.broadcaster = broadcaster
        self.debounce = debounce_ms / 1000
        self._call_later = call_later
        self._tokens = itertools.count(1)
        self._pending: dict[str, int] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _schedule(self, delay, callback, *args):
        if self._call_later is not None:
            return self._call_later(delay, callback, *args)
        return asyncio.get_running_loop().call_later(delay, callback, *args)

    # -- raw events --

    def notify(self, path, change: str = "") -> bool:
        """Feed one raw filesystem event. Returns False if the path is ignored."""
        name = Path(path).name
        if not name or name.startswith('.') or media_kind(name) is None:
            return False
        token = next(self._tokens)
        self._pending[name] = token
        self._schedule(self.debounce, self._settle, name, token)
        log.debug("Event %s %s (debounce #%d)", change or "?", name, token)
        return True

    def _settle(self, name: str, token: int) -> str | None:
        """Debounce timer fired: re-stat and classify. Stale tokens are no-ops."""
        if self._pending.get(name) != token:
            return None
        del self._pending[name]

        path = self.catalog.path_of(name)
        try:
            st = path.stat()
        except FileNotFoundError:
            return self._on_absent(name)
        except OSError as e:
            log.warning("Cannot stat %s, skipping: %s", name, e)
            return None
        if not stat.S_ISREG(st.st_mode):
            return None
        return self._on_present(name, st)

    def _on_present(self, name: str, st) -> str:
        existing = self.catalog.get(name)
        if existing is not None:
            existing.size_bytes = st.st_size
            return MODIFIED
        entry = CatalogEntry(
            id=name,
            display_name=display_name_for(name),
            access_ref=access_ref_for(name),
            kind=media_kind(name),
            size_bytes=st.st_size,
            created_at=st.st_mtime,
        )
        self.catalog.add(entry)
        log.info("File added: %s (%s, %d bytes)", name, entry.kind, entry.size_bytes)
        self.broadcaster.to_controllers("file_added", {"file": entry.to_dict()})
        return CREATED

    def _on_absent(self, name: str) -> str | None:
        if name not in self.catalog:
            return None
        entry = self.catalog.remove(name)
        log.info("File removed: %s", name)
        self._announce_removal(entry)
        return ABSENT

    # -- explicit requests --

    def delete(self, entry_id: str) -> CatalogEntry:
        """Delete a cataloged file on request. Raises NotFound for unknown ids."""
        entry = self.catalog.remove(entry_id)
        try:
            self.catalog.path_of(entry_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Could not delete %s from disk: %s", entry_id, e)
        log.info("File deleted: %s", entry_id)
        self._announce_removal(entry)
        return entry

    def register_upload(self, name: str, size: int, kind: str | None = None,
                        created_at: float | None = None) -> CatalogEntry:
        """Catalog a completed upload. A later watch event for it is a no-op."""
        kind = kind or media_kind(name)
        if kind is None:
            raise InvalidSource(f"Unsupported file type: {name}")
        existing = self.catalog.get(name)
        if existing is not None:
            return existing
        entry = CatalogEntry(name, display_name_for(name), access_ref_for(name), kind,
                             size_bytes=size, created_at=created_at)
        self.catalog.add(entry)
        log.info("Upload registered: %s (%s, %d bytes)", name, kind, size)
        self.broadcaster.to_controllers("file_added", {"file": entry.to_dict()})
        return entry

    # -- shared removal path --

    def _announce_removal(self, entry: CatalogEntry):
        self.broadcaster.to_controllers("file_removed", {"id": entry.id, "name": entry.display_name})
        if self.store.is_playing_entry(entry.id):
            state = self.store.apply(Stop())
            log.info("Playing file %s disappeared — playback stopped", entry.id)
            self.broadcaster.to_all("command", {"type": "stop"})
            self.broadcaster.to_all("current_state", state.to_dict())

    # -- event source --

    async def watch(self, stop_event=None):
        """Feed watchfiles events for the media directory until *stop_event* is set."""
        log.info("Watching %s", self.catalog.directory)
        async for changes in awatch(self.catalog.directory, recursive=False,
                                    stop_event=stop_event, debounce=200):
            for change, path in changes:
                self.notify(path, change.name)
