"""Error taxonomy for the sync engine."""


class SyncError(Exception):
    """Base class for every error the sync engine raises on purpose."""


class InvalidSource(SyncError):
    """A load command names a source that cannot be resolved."""


class Unauthorized(SyncError):
    """A non-controller session tried to mutate playback state."""


class NotFound(SyncError):
    """A catalog id that is not (or no longer) cataloged."""


class TransientIOError(SyncError):
    """A filesystem read/stat failure while cataloging. Never retried."""


class FatalStartupError(SyncError):
    """Startup cannot continue: bad configuration, unusable directory or port."""
