"""
Shared configuration loader for PartySync services.

Loads a single JSON config file per host.  Search order:
  1. $PARTYSYNC_CONFIG                (explicit override)
  2. /etc/partysync/config.json       (deployed install)
  3. config.json                      (CWD — handy for local dev)
  4. ../config/default.json           (repo fallback)

Deployment overrides (PORT, WS_PORT, MEDIA_DIR) stay in environment
variables and are applied by partysync.settings, not here.

Usage:
    from lib.config import cfg

    http_port = cfg("server", "http_port", default=8000)
    debounce  = cfg("media", "debounce_ms", default=1000)
    liveness  = cfg("liveness")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    os.environ.get("PARTYSYNC_CONFIG", ""),
    "/etc/partysync/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

REAP_POLICIES = ("viewers-only", "all-roles")


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    media = config.get("media")
    if not isinstance(media, dict):
        media = {}
    if not media.get("directory"):
        logger.warning("Config %s: missing media.directory — using ./uploads", path)
    liveness = config.get("liveness")
    if not isinstance(liveness, dict):
        liveness = {}
    policy = liveness.get("reap_policy", "viewers-only")
    if policy not in REAP_POLICIES:
        logger.warning("Config %s: unknown liveness.reap_policy '%s'", path, policy)
    timeout = liveness.get("timeout")
    interval = liveness.get("sweep_interval")
    if isinstance(timeout, (int, float)) and isinstance(interval, (int, float)) and interval > timeout:
        logger.warning("Config %s: liveness.sweep_interval (%s) exceeds liveness.timeout (%s)",
                       path, interval, timeout)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _SEARCH_PATHS:
        if not path:
            continue
        try:
            with open(path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                logger.error("Config %s is not a JSON object, skipping", path)
                continue
            _config = data
            logger.info("Config loaded from %s", path)
            _validate(_config, path)
            return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("media")                      → config["media"]
    cfg("server", "http_port")        → config["server"]["http_port"]
    cfg("liveness", "timeout", default=120)  → config["liveness"]["timeout"] or 120
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
