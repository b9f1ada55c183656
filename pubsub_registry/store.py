"""MaterializedStore: a keyed registry whose system of record is a compacted log.

Data design:

- Every document is written to the log as one record keyed by its registry
  key, so log compaction keeps the latest version of each document.
- A delete writes the document with ``Status.DELETED``; that record is the
  tombstone every reader must treat as an eviction.
- The in-memory view is rebuilt by a background task that tails the log from
  the oldest retained record and folds each record into the cache: upsert by
  key, or evict on a tombstone. Folding is idempotent, so re-delivery of this
  process's own writes (or a full replay after a restart) changes nothing.
- CRUD writes append first and only touch the cache after the log
  acknowledged the record.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import ValidationError
from tenacity import AsyncRetrying, RetryCallState, before_sleep_log, retry_if_exception_type

from pubsub_registry.errors import AlreadyExistsError, InvalidStatusError, LogUnavailableError, NotFoundError
from pubsub_registry.keys import derive_key
from pubsub_registry.log import create_log_client
from pubsub_registry.model import FunctionConfig, Status
from pubsub_registry.validation import validate_function_config

if TYPE_CHECKING:
    from pubsub_registry.config import Settings
    from pubsub_registry.log import LogClient, LogRecord

logger = logging.getLogger(__name__)

# Called once per outage: (consecutive failures, last exception)
AlertHook = Callable[[int, BaseException], None]


class MaterializedStore:
    """CRUD over registry documents backed by a log topic.

    Args:
        log_client: Append and tail access to the log.
        log_name: The registry topic.
        initial_backoff: First delay before restarting a failed replay.
        max_backoff: Upper bound on the restart delay.
        alert_after: Consecutive replay failures before the store reports
            itself unhealthy and calls *on_alert*.
        on_alert: Optional hook called when *alert_after* is reached.
    """

    def __init__(
        self,
        log_client: LogClient,
        log_name: str,
        *,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
        alert_after: int = 10,
        on_alert: AlertHook | None = None,
    ) -> None:
        self._log = log_client
        self._log_name = log_name
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._alert_after = alert_after
        self._on_alert = on_alert

        self._cache: dict[str, FunctionConfig] = {}
        # Never held across an await
        self._cache_lock = threading.Lock()
        # Serializes check -> append -> install for CRUD writes
        self._write_lock = asyncio.Lock()

        self._replay_task: asyncio.Task | None = None
        self._failures = 0
        self._restarts = 0
        self._folded = 0
        self._opens = 0

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Connect the append path and start replaying the log."""
        await self._log.start()
        if self._replay_task is None:
            self._replay_task = asyncio.create_task(
                self._replay_forever(), name=f"replay-{self._log_name}"
            )
        logger.info("Registry store started on %s", self._log_name)

    async def close(self) -> None:
        """Stop replaying, then release the log client."""
        if self._replay_task is not None:
            self._replay_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._replay_task
            self._replay_task = None
        await self._log.close()
        logger.info("Registry store closed")

    @property
    def log_name(self) -> str:
        return self._log_name

    @property
    def healthy(self) -> bool:
        """False once replay has failed ``alert_after`` times in a row."""
        return self._failures < self._alert_after

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def restarts(self) -> int:
        """Number of times the replay reader has been reopened."""
        return self._restarts

    @property
    def records_folded(self) -> int:
        """Log records folded into the view since start."""
        return self._folded

    # -- Writes ----------------------------------------------------------------

    async def create(self, doc: FunctionConfig) -> str:
        """Admit a new document. Returns its registry key.

        Raises:
            AlreadyExistsError: the key is already in the registry.
            ConfigValidationError: the document failed validation.
            InvalidStatusError: the document is already marked DELETED.
            LogUnavailableError: the log did not acknowledge the write.
        """
        validate_function_config(doc)
        async with self._write_lock:
            return await self._insert(doc)

    async def update(self, doc: FunctionConfig) -> str:
        """Replace a document, or create it when the key is absent.

        Writing status DELETED to an existing key evicts it like a delete.
        """
        validate_function_config(doc)
        key = doc.key
        async with self._write_lock:
            current = self._lookup(key)
            if current is None:
                return await self._insert(doc)
            replacement = doc.model_copy(
                update={"id": key, "created_at": current.created_at, "updated_at": _now()},
                deep=True,
            )
            await self._write(replacement)
        logger.info("Upserted %s", key)
        return key

    async def delete(self, tenant: str, name: str) -> str:
        """Delete the document for (tenant, name). Returns its key."""
        return await self.delete_by_key(derive_key(tenant, name))

    async def delete_by_key(self, key: str) -> str:
        """Write a tombstone for *key* and evict it.

        Raises:
            NotFoundError: the key is not in the registry.
            LogUnavailableError: the log did not acknowledge the tombstone.
        """
        async with self._write_lock:
            current = self._lookup(key)
            if current is None:
                raise NotFoundError(key)
            now = _now()
            tombstone = current.model_copy(
                update={"function_status": Status.DELETED, "updated_at": now, "deleted_at": now},
                deep=True,
            )
            await self._write(tombstone)
        logger.info("Deleted %s", key)
        return key

    # -- Reads -----------------------------------------------------------------

    def get_by_key(self, key: str) -> FunctionConfig:
        """Return a copy of the document stored under *key*."""
        with self._cache_lock:
            doc = self._cache.get(key)
            if doc is None:
                raise NotFoundError(key)
            return doc.model_copy(deep=True)

    def get_by_topic(self, tenant: str, name: str) -> FunctionConfig:
        """Return a copy of the document for (tenant, name)."""
        return self.get_by_key(derive_key(tenant, name))

    def load(self) -> list[FunctionConfig]:
        """Copies of every document currently in the registry, in no order."""
        with self._cache_lock:
            return [doc.model_copy(deep=True) for doc in self._cache.values()]

    # -- Replay ----------------------------------------------------------------

    def apply_record(self, record: LogRecord) -> None:
        """Fold one log record into the view.

        An empty payload is a compaction tombstone for ``record.key``.
        Undecodable records are logged and skipped.
        """
        self._folded += 1
        if not record.payload:
            if record.key:
                self._apply(record.key, None)
            return
        try:
            doc = FunctionConfig.from_payload(record.payload)
        except ValidationError as exc:
            logger.error(
                "Skipping undecodable record (key=%s): %d error(s)",
                record.key or "-",
                exc.error_count(),
            )
            return
        key = doc.id or record.key
        if not key:
            logger.error("Skipping record with neither a key nor a document id")
            return
        self._apply(key, doc)

    async def _replay_forever(self) -> None:
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            wait=self._backoff,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        async for attempt in retrying:
            with attempt:
                await self._replay_once()

    def _backoff(self, retry_state: RetryCallState) -> float:
        """Exponential in the consecutive failures, so progress resets it."""
        exponent = max(0, self._failures - 1)
        return min(self._max_backoff, self._initial_backoff * 2**exponent)

    async def _replay_once(self) -> None:
        """Tail the log until the reader fails, then re-raise the failure."""
        if self._opens:
            self._restarts += 1
        self._opens += 1
        progressed = False
        try:
            async with self._log.open_reader(self._log_name) as reader:
                logger.info("Replaying %s from the oldest retained record", self._log_name)
                while True:
                    record = await reader.next()
                    self.apply_record(record)
                    if not progressed:
                        progressed = True
                        self._recovered()
        except Exception as exc:
            self._failed(exc)
            raise

    def _failed(self, exc: BaseException) -> None:
        self._failures += 1
        if isinstance(exc, LogUnavailableError):
            logger.error("Replay reader on %s failed: %s", self._log_name, exc)
        else:
            logger.exception("Unexpected replay failure on %s", self._log_name)
        if self._failures == self._alert_after:
            logger.error(
                "Replay of %s has failed %d times in a row, store unhealthy",
                self._log_name,
                self._failures,
            )
            if self._on_alert is not None:
                try:
                    self._on_alert(self._failures, exc)
                except Exception:
                    logger.exception("Replay alert hook failed")

    def _recovered(self) -> None:
        if self._failures >= self._alert_after:
            logger.info("Replay of %s recovered", self._log_name)
        self._failures = 0

    # -- Internal --------------------------------------------------------------

    async def _insert(self, doc: FunctionConfig) -> str:
        key = doc.key
        if doc.function_status == Status.DELETED:
            raise InvalidStatusError(doc.function_status.name)
        if self._lookup(key) is not None:
            raise AlreadyExistsError(key)
        now = _now()
        admitted = doc.model_copy(update={"id": key, "created_at": now, "updated_at": now}, deep=True)
        await self._write(admitted)
        logger.info("Created %s (%s/%s)", key, doc.tenant, doc.name)
        return key

    async def _write(self, doc: FunctionConfig) -> None:
        await self._log.append(self._log_name, doc.id, doc.to_payload())
        self._apply(doc.id, doc)

    def _lookup(self, key: str) -> FunctionConfig | None:
        with self._cache_lock:
            return self._cache.get(key)

    def _apply(self, key: str, doc: FunctionConfig | None) -> None:
        with self._cache_lock:
            if doc is None or doc.function_status == Status.DELETED:
                self._cache.pop(key, None)
            else:
                self._cache[key] = doc


def _now() -> datetime:
    return datetime.now(UTC)


def create_store(settings: Settings, on_alert: AlertHook | None = None) -> MaterializedStore:
    """Build a store and its log client from settings."""
    return MaterializedStore(
        create_log_client(settings),
        settings.db_name,
        initial_backoff=settings.replay_initial_backoff_seconds,
        max_backoff=settings.replay_max_backoff_seconds,
        alert_after=settings.replay_alert_after_failures,
        on_alert=on_alert,
    )
