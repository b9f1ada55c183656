"""Log client capability consumed by the registry store.

A log is an ordered, keyed, append-only stream whose retention may be
compacted down to the latest record per key. The store needs two things from
it: append a keyed record, and tail the log from its oldest retained record.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class LogRecord:
    """One record read from a log. An empty payload is a compaction tombstone."""

    key: str
    payload: bytes


class TailingReader(ABC):
    """Cursor over a log, from the oldest retained record onwards.

    Use as an async context manager so the underlying connection is always
    released::

        async with client.open_reader("registry") as reader:
            while True:
                record = await reader.next()
    """

    async def __aenter__(self) -> TailingReader:
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def open(self) -> None:
        """Connect the reader. Raises ``LogUnavailableError`` on failure."""

    @abstractmethod
    async def next(self) -> LogRecord:
        """Block until the next record arrives. Raises ``LogUnavailableError``."""

    @abstractmethod
    async def close(self) -> None:
        """Release the reader. Safe to call more than once."""


class LogClient(ABC):
    """Append and tail access to named logs."""

    async def start(self) -> None:
        """Connect the append path. Appends connect lazily if this is skipped."""

    @abstractmethod
    async def append(self, log_name: str, key: str, payload: bytes) -> None:
        """Append a record and wait for the log to acknowledge it.

        Raises:
            LogUnavailableError: the record was not acknowledged.
        """

    @abstractmethod
    def open_reader(self, log_name: str) -> TailingReader:
        """Return an unopened reader positioned at the oldest retained record."""

    @abstractmethod
    async def close(self) -> None:
        """Release the append path and any readers still open."""
