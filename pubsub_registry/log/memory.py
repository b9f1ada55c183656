"""In-process compacted log for local development and tests.

Records keep monotonically increasing offsets, so compaction (dropping all
but the latest record per key) never moves an open reader's position.
Nothing survives a process restart.
"""

from __future__ import annotations

import asyncio
import bisect
import logging
from collections import defaultdict

from pubsub_registry.errors import LogUnavailableError
from pubsub_registry.log.base import LogClient, LogRecord, TailingReader

logger = logging.getLogger(__name__)


class MemoryLogClient(LogClient):
    """A ``LogClient`` holding every log in memory."""

    def __init__(self) -> None:
        self._offsets: dict[str, list[int]] = defaultdict(list)
        self._records: dict[str, list[LogRecord]] = defaultdict(list)
        self._next_offset: dict[str, int] = defaultdict(int)
        self._changed = asyncio.Condition()
        self._readers: set[MemoryTailingReader] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def append(self, log_name: str, key: str, payload: bytes) -> None:
        if self._closed:
            raise LogUnavailableError("log client is closed")
        async with self._changed:
            offset = self._next_offset[log_name]
            self._next_offset[log_name] = offset + 1
            self._offsets[log_name].append(offset)
            self._records[log_name].append(LogRecord(key=key, payload=payload))
            self._changed.notify_all()

    def open_reader(self, log_name: str) -> MemoryTailingReader:
        return MemoryTailingReader(self, log_name)

    async def close(self) -> None:
        self._closed = True
        for reader in list(self._readers):
            await reader.close()
        async with self._changed:
            self._changed.notify_all()

    # -- Inspection --------------------------------------------------------------

    def records(self, log_name: str) -> list[LogRecord]:
        """All records currently retained in *log_name*, oldest first."""
        return list(self._records[log_name])

    def compact(self, log_name: str) -> int:
        """Keep only the latest record per key. Returns the number dropped."""
        latest: dict[str, int] = {}
        for i, record in enumerate(self._records[log_name]):
            latest[record.key] = i
        keep = sorted(latest.values())
        dropped = len(self._records[log_name]) - len(keep)
        self._offsets[log_name] = [self._offsets[log_name][i] for i in keep]
        self._records[log_name] = [self._records[log_name][i] for i in keep]
        if dropped:
            logger.debug("Compacted %s: dropped %d record(s)", log_name, dropped)
        return dropped

    # -- Internal ----------------------------------------------------------------

    def _read_from(self, log_name: str, position: int) -> tuple[int, LogRecord] | None:
        offsets = self._offsets[log_name]
        i = bisect.bisect_left(offsets, position)
        if i == len(offsets):
            return None
        return offsets[i], self._records[log_name][i]


class MemoryTailingReader(TailingReader):
    """Reader over a ``MemoryLogClient`` log."""

    def __init__(self, client: MemoryLogClient, log_name: str) -> None:
        self._client = client
        self._log_name = log_name
        self._position = 0
        self._closed = False

    async def open(self) -> None:
        if self._client.closed:
            raise LogUnavailableError("log client is closed")
        self._client._readers.add(self)

    async def next(self) -> LogRecord:
        changed = self._client._changed
        async with changed:
            while True:
                if self._closed:
                    raise LogUnavailableError(f"reader on {self._log_name} is closed")
                found = self._client._read_from(self._log_name, self._position)
                if found is not None:
                    offset, record = found
                    self._position = offset + 1
                    return record
                await changed.wait()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._client._readers.discard(self)
        async with self._client._changed:
            self._client._changed.notify_all()
