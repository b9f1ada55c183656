"""Systemd readiness and watchdog notifications.

Sends sd_notify messages over the NOTIFY_SOCKET unix socket that systemd
provides. When NOTIFY_SOCKET is absent (local dev, tests), all calls are
silent no-ops. The watchdog is only fed while the registry reports itself
healthy, so systemd restarts a process whose replay has stalled.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from collections.abc import Callable

logger = logging.getLogger(__name__)

_WATCHDOG_INTERVAL_SECONDS = 15


def sd_notify(state: str) -> None:
    """Send a raw sd_notify message to systemd.

    Does nothing when NOTIFY_SOCKET is not set (i.e. outside systemd).
    """
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return
    # Abstract socket addresses start with @
    if addr.startswith("@"):
        addr = "\0" + addr[1:]
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.connect(addr)
        sock.sendall(state.encode())
    except OSError:
        logger.warning("Failed to send sd_notify: %s", state)
    finally:
        sock.close()


def notify_ready() -> None:
    """Tell systemd the registry is serving."""
    sd_notify("READY=1")
    logger.info("Notified systemd: READY")


def notify_stopping() -> None:
    sd_notify("STOPPING=1")


async def watchdog_loop(healthy: Callable[[], bool], interval: float = _WATCHDOG_INTERVAL_SECONDS) -> None:
    """Ping the systemd watchdog while *healthy()* returns True.

    Runs forever as a background task. Unhealthy intervals are skipped and
    reported through STATUS so ``systemctl status`` shows why.
    """
    while True:
        if healthy():
            sd_notify("WATCHDOG=1")
        else:
            logger.warning("Registry unhealthy, withholding watchdog ping")
            sd_notify("STATUS=registry replay failing")
        await asyncio.sleep(interval)


def start_watchdog(healthy: Callable[[], bool]) -> asyncio.Task | None:
    """Spawn the watchdog loop as a background task.

    Returns the task (useful for testing) or None when not running under
    systemd.
    """
    if not os.environ.get("NOTIFY_SOCKET"):
        logger.debug("NOTIFY_SOCKET not set, watchdog disabled")
        return None
    task = asyncio.create_task(watchdog_loop(healthy), name="systemd-watchdog")
    logger.info("Watchdog loop started (interval=%ds)", _WATCHDOG_INTERVAL_SECONDS)
    return task
