"""Local media catalog — playable files in the media directory."""

import logging
import re
import time
import urllib.parse
from pathlib import Path

from .errors import NotFound, TransientIOError

log = logging.getLogger("partysync.catalog")

VIDEO_EXTENSIONS = {'.mp4', '.webm', '.mkv', '.mov', '.m4v', '.avi', '.ogv'}
AUDIO_EXTENSIONS = {'.flac', '.mp3', '.wma', '.aac', '.wav', '.m4a', '.ogg', '.opus'}

VIDEO = "video"
AUDIO = "audio"

MEDIA_URL_PREFIX = "/media/"

# Uploads are stored as "<epoch-ms>-<original name>"
_UPLOAD_PREFIX = re.compile(r'^\d{10,}-(.+)$')


def media_kind(name: str) -> str | None:
    """'video' / 'audio' from the file extension, None if not playable."""
    ext = Path(name).suffix.lower()
    if ext in VIDEO_EXTENSIONS:
        return VIDEO
    if ext in AUDIO_EXTENSIONS:
        return AUDIO
    return None


def display_name_for(name: str) -> str:
    m = _UPLOAD_PREFIX.match(name)
    return m.group(1) if m else name


def access_ref_for(name: str) -> str:
    return MEDIA_URL_PREFIX + urllib.parse.quote(name)


class CatalogEntry:
    """One playable file. Owned by the Catalog."""

    def __init__(self, id: str, display_name: str, access_ref: str, kind: str,
                 size_bytes: int = 0, created_at: float | None = None):
        self.id = id
        self.display_name = display_name
        self.access_ref = access_ref
        self.kind = kind
        self.size_bytes = size_bytes
        self.created_at = time.time() if created_at is None else created_at

    @classmethod
    def from_path(cls, path: Path) -> "CatalogEntry":
        """Build an entry from a file on disk. Raises TransientIOError if stat fails."""
        kind = media_kind(path.name)
        if kind is None:
            raise ValueError(f"not a media file: {path.name}")
        try:
            st = path.stat()
        except OSError as e:
            raise TransientIOError(f"cannot stat {path}: {e}") from e
        return cls(
            id=path.name,
            display_name=display_name_for(path.name),
            access_ref=access_ref_for(path.name),
            kind=kind,
            size_bytes=st.st_size,
            created_at=st.st_mtime,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.display_name,
            "url": self.access_ref,
            "kind": self.kind,
            "size": self.size_bytes,
            "createdAt": self.created_at,
        }


class Catalog:
    """Mapping of entry id -> CatalogEntry for one media directory."""

    def __init__(self, directory):
        self.directory = Path(directory)
        self._entries: dict[str, CatalogEntry] = {}

    def __len__(self):
        return len(self._entries)

    def __contains__(self, entry_id):
        return entry_id in self._entries

    def get(self, entry_id: str) -> CatalogEntry | None:
        return self._entries.get(entry_id)

    def entries(self) -> list[CatalogEntry]:
        """Newest first."""
        return sorted(self._entries.values(), key=lambda e: e.created_at, reverse=True)

    def add(self, entry: CatalogEntry) -> bool:
        """Add *entry*. Returns False (and keeps the old one) if the id is taken."""
        if entry.id in self._entries:
            return False
        self._entries[entry.id] = entry
        return True

    def remove(self, entry_id: str) -> CatalogEntry:
        try:
            return self._entries.pop(entry_id)
        except KeyError:
            raise NotFound(f"File not found: {entry_id}") from None

    def path_of(self, entry_id: str) -> Path:
        return self.directory / entry_id

    def scan(self) -> int:
        """Catalog every playable file in the directory. Returns the number added.

        Unreadable entries are logged and skipped.  A directory that cannot
        be listed at all raises OSError to the caller.
        """
        added = 0
        for path in sorted(self.directory.iterdir(), key=lambda p: p.name.lower()):
            if path.name.startswith('.') or media_kind(path.name) is None:
                continue
            try:
                if not path.is_file():
                    continue
                entry = CatalogEntry.from_path(path)
            except (OSError, TransientIOError) as e:
                log.warning("Skipping %s: %s", path.name, e)
                continue
            if self.add(entry):
                added += 1
        log.info("Catalog scan of %s: %d file(s)", self.directory, added)
        return added
