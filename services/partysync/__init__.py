"""
PartySync core: one controller drives synchronized playback on many viewers.

The engine is split into small single-purpose pieces wired together by
``partysync.service.SyncService``:

  - ``sessions``   – who is connected, in which role, last heartbeat
  - ``playback``   – the authoritative playback state and its transitions
  - ``commands``   – role-gated command handling, returns a broadcast plan
  - ``broadcast``  – audience selection and non-blocking delivery
  - ``catalog``    – local media entries backed by the media directory
  - ``watcher``    – debounced directory watching, forced stop on removal
  - ``reaper``     – periodic eviction of stale sessions
"""

__version__ = "1.0.0"
