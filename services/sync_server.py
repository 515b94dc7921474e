#!/usr/bin/env python3
"""
PartySync server (partysync)

One controller page drives playback (YouTube links, uploaded video/audio
files) on every viewer page on the LAN.  Viewers follow play/pause/seek/
volume within one round trip; late joiners get the current state on
identify.

Ports: 8000 (HTTP API + /media), 8001 (WebSocket)
"""

import asyncio
import logging
import os
import sys

# Ensure services/ is on the path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from partysync.errors import FatalStartupError
from partysync.service import SyncService
from partysync.settings import Settings

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("partysync")


async def serve() -> int:
    settings = Settings.from_config()
    service = SyncService(settings)
    return await service.run()


def main():
    try:
        status = asyncio.run(serve())
    except FatalStartupError as e:
        logger.critical("[FATAL] %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        status = 0
    sys.exit(status)


if __name__ == "__main__":
    main()
