"""
SyncService — owns the shared state objects and wires the engine together.

Two listeners, as on the other services:
  - WebSocket (``websockets``) on ws_port: the session protocol
  - HTTP (``aiohttp``) on http_port: status/health/catalog API + /media files

All message handling is synchronous on the event loop; the only awaits are
socket I/O in per-session reader/writer tasks, so no handler ever sees a
half-applied state change.
"""

import asyncio
import json
import logging
import signal
import time
import uuid
from datetime import datetime, timezone

import websockets
from aiohttp import web

from lib.watchdog import watchdog_loop

from .broadcast import Broadcaster, QueueChannel
from .catalog import Catalog
from .commands import CommandProcessor
from .errors import FatalStartupError, NotFound
from .playback import PlaybackStore
from .reaper import LivenessReaper
from .sessions import CONTROLLER, VIEWER, SessionRegistry, parse_role
from .watcher import CatalogWatcher

log = logging.getLogger("partysync.service")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


def client_info(websocket) -> tuple[str, str]:
    """(origin address, user agent) of a websocket connection."""
    request = getattr(websocket, "request", None)
    headers = request.headers if request is not None else getattr(websocket, "request_headers", {})
    forwarded = headers.get("X-Forwarded-For", "")
    if forwarded:
        address = forwarded.split(",")[0].strip()
    else:
        remote = websocket.remote_address
        address = remote[0] if remote else ""
    return address, headers.get("User-Agent", "Unknown")


class SyncService:
    def __init__(self, settings, clock=time.time, call_later=None):
        self.settings = settings
        self._clock = clock
        self.started_at = clock()

        self.registry = SessionRegistry(clock)
        self.store = PlaybackStore(clock)
        self.catalog = Catalog(settings.media_dir)
        self.broadcaster = Broadcaster(self.registry)
        self.commands = CommandProcessor(self.registry, self.store, self.catalog,
                                         allow_unknown=settings.allow_unknown_commands)
        self.watcher = CatalogWatcher(self.catalog, self.store, self.broadcaster,
                                      debounce_ms=settings.debounce_ms,
                                      call_later=call_later)
        self.reaper = LivenessReaper(self.registry, self.broadcaster,
                                     timeout=settings.liveness_timeout,
                                     interval=settings.sweep_interval,
                                     policy=settings.reap_policy,
                                     clock=clock, on_evict=self._close_session)

        self._meta: dict[str, dict] = {}          # connected, maybe not yet identified
        self._connections: dict = {}              # session id -> websocket
        self._tasks: set[asyncio.Task] = set()
        self._ws_server = None
        self._runner: web.AppRunner | None = None
        self._watch_stop: asyncio.Event | None = None
        self._shutdown: asyncio.Event | None = None
        self._fatal = False

    # ── Session lifecycle (transport independent) ──

    def connect(self, session_id: str, channel, address: str = "", user_agent: str = ""):
        self.broadcaster.attach(session_id, channel)
        self._meta[session_id] = {"address": address, "user_agent": user_agent}
        log.info("[CONNECTION] New socket: %s | IP: %s", session_id, address or "?")

    def disconnect(self, session_id: str, reason: str = ""):
        self.broadcaster.detach(session_id)
        self._meta.pop(session_id, None)
        role = self.registry.remove(session_id)
        if role is None:
            log.info("[CONNECTION] Closed: %s (not registered) %s", session_id, reason)
            return
        counts = self.broadcaster.broadcast_counts()
        log.info("[%s] Left: %s | %s | Remaining: %d controller(s), %d viewer(s)",
                 role.upper(), session_id, reason or "-",
                 counts["controllers"], counts["viewers"])

    def handle_message(self, session_id: str, raw) -> None:
        """Route one inbound frame. Any inbound traffic counts as liveness."""
        if self.broadcaster.channel(session_id) is None:
            log.debug("Dropping frame from detached session %s", session_id)
            return
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            log.warning("Invalid JSON from %s", session_id)
            return
        except RecursionError:
            log.warning("Dropping over-nested frame from %s", session_id)
            return
        if not isinstance(message, dict):
            log.warning("Ignoring non-object message from %s", session_id)
            return

        self.registry.touch(session_id)
        event = message.get("type")
        data = message.get("data")
        if not isinstance(data, dict):
            data = {}

        if event == "identify":
            self._identify(session_id, data)
        elif event == "command":
            self.broadcaster.dispatch(self.commands.handle(session_id, data))
        elif event == "heartbeat":
            pass
        elif event == "request_sync":
            if self.registry.role_of(session_id) == VIEWER:
                self.broadcaster.to_session(session_id, "current_state", self.store.snapshot().to_dict())
        else:
            log.debug("Unknown event %r from %s", event, session_id)

    def _identify(self, session_id: str, data: dict):
        role = parse_role(data.get("role"))
        current = self.registry.role_of(session_id)
        if current is not None:
            if current != role:
                log.warning("Session %s already identified as %s — ignoring %s", session_id, current, role)
            self.broadcaster.to_session(session_id, "current_state", self.store.snapshot().to_dict())
            return

        self.registry.register(session_id, role, self._meta.get(session_id))
        self.broadcaster.to_session(session_id, "current_state", self.store.snapshot().to_dict())
        if role == CONTROLLER:
            self.broadcaster.to_session(session_id, "file_list",
                                        {"files": [e.to_dict() for e in self.catalog.entries()]})
        counts = self.broadcaster.broadcast_counts()
        log.info("[%s] Registered: %s | Total: %d controller(s), %d viewer(s)",
                 role.upper(), session_id, counts["controllers"], counts["viewers"])

    def _close_session(self, session_id: str):
        """Reaper eviction: drop the transport too."""
        channel = self.broadcaster.channel(session_id)
        if channel is not None:
            channel.close()
        self.broadcaster.detach(session_id)
        websocket = self._connections.get(session_id)
        if websocket is not None:
            self._spawn(websocket.close(code=1000, reason="Heartbeat timeout"))

    # ── Read-only status ──

    def counts(self) -> dict:
        return self.registry.counts_by_role()

    def status(self) -> dict:
        counts = self.counts()
        return {
            **counts,
            "connected": self.broadcaster.connected,
            "currentMedia": self.store.snapshot().to_dict(),
            "catalogSize": len(self.catalog),
            "uptime": round(self._clock() - self.started_at, 1),
            "serverTime": datetime.now(timezone.utc).isoformat(),
        }

    def health(self) -> dict:
        counts = self.counts()
        return {
            "status": "healthy",
            "uptime": round(self._clock() - self.started_at, 1),
            **counts,
            "media": self.store.snapshot().media_type,
        }

    # ── WebSocket transport ──

    async def handle_client(self, websocket):
        session_id = uuid.uuid4().hex
        address, user_agent = client_info(websocket)
        channel = QueueChannel(session_id, websocket.send, maxsize=self.settings.queue_size)
        self._connections[session_id] = websocket
        self.connect(session_id, channel, address, user_agent)
        writer = asyncio.create_task(channel.run())
        reason = "client disconnect"
        try:
            async for raw in websocket:
                try:
                    self.handle_message(session_id, raw)
                except Exception:
                    log.exception("Unhandled error while handling a message from %s", session_id)
                    self._fail()
                    reason = "server error"
                    break
        except websockets.exceptions.ConnectionClosed:
            reason = "connection lost"
        finally:
            channel.close()
            writer.cancel()
            self._connections.pop(session_id, None)
            self.disconnect(session_id, reason)

    # ── HTTP ──

    def add_routes(self, app: web.Application):
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/api/status", self._handle_status)
        app.router.add_get("/api/clients", self._handle_clients)
        app.router.add_get("/api/files", self._handle_files)
        app.router.add_delete("/api/files/{id}", self._handle_delete_file)
        app.router.add_static("/media/", str(self.settings.media_dir))

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        self.add_routes(app)
        return app

    async def _handle_health(self, request):
        return web.json_response(self.health())

    async def _handle_status(self, request):
        return web.json_response(self.status())

    async def _handle_clients(self, request):
        sessions = [s.to_dict() for s in self.registry.sessions()]
        return web.json_response({"clients": sessions, "count": len(sessions)})

    async def _handle_files(self, request):
        files = [e.to_dict() for e in self.catalog.entries()]
        return web.json_response({"files": files, "count": len(files)})

    async def _handle_delete_file(self, request):
        entry_id = request.match_info["id"]
        try:
            entry = self.watcher.delete(entry_id)
        except NotFound as e:
            return web.json_response({"error": str(e)}, status=404)
        return web.json_response({"status": "ok", "deleted": entry.id})

    # ── Lifecycle ──

    async def start(self):
        """Scan, listen, start background tasks. Raises FatalStartupError."""
        media_dir = self.settings.media_dir
        try:
            media_dir.mkdir(parents=True, exist_ok=True)
            self.catalog.scan()
        except OSError as e:
            raise FatalStartupError(f"Media directory {media_dir} unusable: {e}") from e

        try:
            self._ws_server = await websockets.serve(
                self.handle_client, self.settings.host, self.settings.ws_port)
            self._runner = web.AppRunner(self.create_app())
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.settings.host, self.settings.http_port)
            await site.start()
        except OSError as e:
            await self._close_listeners()
            raise FatalStartupError(f"Cannot listen on {self.settings.host}: {e}") from e

        log.info("WebSocket on ws://%s:%d, HTTP on http://%s:%d",
                 self.settings.host, self.settings.ws_port,
                 self.settings.host, self.settings.http_port)

        self._shutdown = asyncio.Event()
        self._watch_stop = asyncio.Event()
        self._spawn(self.watcher.watch(self._watch_stop))
        self._spawn(self.reaper.run())
        self._spawn(watchdog_loop())

    async def stop(self, message: str = "Server shutting down"):
        """Tell every session we are going, then release the listeners."""
        log.info("[SHUTDOWN] Stopping server...")
        self.broadcaster.to_all("server_shutdown", {"message": message})
        channels = [self.broadcaster.channel(sid) for sid in list(self._connections)]
        flushes = [ch.flush(0.5) for ch in channels if ch is not None and hasattr(ch, "flush")]
        if flushes:
            await asyncio.gather(*flushes, return_exceptions=True)

        if self._watch_stop is not None:
            self._watch_stop.set()
        for task in list(self._tasks):
            task.cancel()
        await self._close_listeners()

    async def _close_listeners(self):
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def run(self) -> int:
        """Start, wait for SIGINT/SIGTERM or a fatal error, stop. Returns the exit status."""
        await self.start()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown.set)
        loop.set_exception_handler(self._on_loop_error)
        try:
            await self._shutdown.wait()
        finally:
            await self.stop()
        return 1 if self._fatal else 0

    # ── Internals ──

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.critical("[FATAL] Background task failed", exc_info=exc)
            self._fail()

    def _on_loop_error(self, loop, context):
        log.critical("[FATAL] %s", context.get("message"), exc_info=context.get("exception"))
        self._fail()

    def _fail(self):
        """Uncaught defect: shut down rather than carry on with suspect state."""
        self._fatal = True
        if self._shutdown is not None:
            self._shutdown.set()


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers.update(CORS_HEADERS)
    return resp
