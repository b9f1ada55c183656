"""Tests for the systemd watchdog integration."""

from __future__ import annotations

import asyncio
import shutil
import socket
import sys
import tempfile
from pathlib import Path

import pytest

from pubsub_registry.watchdog import notify_ready, notify_stopping, sd_notify, start_watchdog, watchdog_loop

# macOS has a 104-char limit on AF_UNIX paths; pytest tmp_path is too long.
_is_linux = sys.platform == "linux"


@pytest.fixture
def sock_dir():
    """Yield a short temp directory suitable for AF_UNIX sockets."""
    d = tempfile.mkdtemp(prefix="reg_wd_", dir="/tmp")
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def notify_server(monkeypatch: pytest.MonkeyPatch, sock_dir):
    """A bound datagram socket with NOTIFY_SOCKET pointing at it."""
    sock_path = str(sock_dir / "n.sock")
    server = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    server.bind(sock_path)
    server.setblocking(False)
    monkeypatch.setenv("NOTIFY_SOCKET", sock_path)
    yield server
    server.close()


def _drain(server: socket.socket) -> list[bytes]:
    messages = []
    while True:
        try:
            messages.append(server.recv(256))
        except BlockingIOError:
            return messages


# -- sd_notify -----------------------------------------------------------------


def test_sd_notify_noop_without_socket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    sd_notify("READY=1")


def test_sd_notify_sends_to_socket(notify_server) -> None:
    sd_notify("READY=1")
    assert _drain(notify_server) == [b"READY=1"]


@pytest.mark.skipif(not _is_linux, reason="Abstract sockets are Linux-only")
def test_sd_notify_abstract_socket(monkeypatch: pytest.MonkeyPatch) -> None:
    """Abstract socket addresses (starting with @) are converted correctly."""
    server = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    server.bind("\0test_registry_watchdog")

    monkeypatch.setenv("NOTIFY_SOCKET", "@test_registry_watchdog")
    try:
        sd_notify("WATCHDOG=1")
        assert server.recv(256) == b"WATCHDOG=1"
    finally:
        server.close()


def test_sd_notify_logs_on_oserror(monkeypatch: pytest.MonkeyPatch, sock_dir) -> None:
    """OSError during send is caught and logged, not raised."""
    monkeypatch.setenv("NOTIFY_SOCKET", str(sock_dir / "nonexistent.sock"))
    sd_notify("READY=1")


def test_notify_ready_and_stopping(notify_server) -> None:
    notify_ready()
    notify_stopping()
    assert _drain(notify_server) == [b"READY=1", b"STOPPING=1"]


# -- watchdog_loop -------------------------------------------------------------


async def test_watchdog_loop_pings_while_healthy(notify_server) -> None:
    task = asyncio.create_task(watchdog_loop(lambda: True, interval=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    messages = _drain(notify_server)
    assert len(messages) >= 2
    assert all(m == b"WATCHDOG=1" for m in messages)


async def test_watchdog_loop_withholds_ping_while_unhealthy(notify_server) -> None:
    task = asyncio.create_task(watchdog_loop(lambda: False, interval=0.01))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    messages = _drain(notify_server)
    assert messages
    assert b"WATCHDOG=1" not in messages
    assert all(m.startswith(b"STATUS=") for m in messages)


async def test_watchdog_loop_follows_health(notify_server) -> None:
    state = {"healthy": False}
    task = asyncio.create_task(watchdog_loop(lambda: state["healthy"], interval=0.01))
    await asyncio.sleep(0.03)
    state["healthy"] = True
    await asyncio.sleep(0.03)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    messages = _drain(notify_server)
    assert messages[0].startswith(b"STATUS=")
    assert messages[-1] == b"WATCHDOG=1"


# -- start_watchdog ------------------------------------------------------------


def test_start_watchdog_returns_none_without_socket(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert start_watchdog(lambda: True) is None


async def test_start_watchdog_returns_task(notify_server) -> None:
    task = start_watchdog(lambda: True)
    try:
        assert isinstance(task, asyncio.Task)
        assert not task.done()
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
