"""Tests for the store's background replay of the log."""

import asyncio

import pytest

from pubsub_registry.errors import LogUnavailableError, NotFoundError
from pubsub_registry.keys import derive_key
from pubsub_registry.log import LogRecord, MemoryLogClient
from pubsub_registry.log.memory import MemoryTailingReader
from pubsub_registry.model import FunctionConfig, Status
from pubsub_registry.store import MaterializedStore

LOG_NAME = "test-registry"


def _make_function(tenant: str = "t1", name: str = "fn1", **kwargs) -> FunctionConfig:
    return FunctionConfig(tenant=tenant, name=name, **kwargs)


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* until it is true or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.005)


def _record(status: Status, tenant: str = "t1", name: str = "fn1", **kwargs) -> LogRecord:
    key = derive_key(tenant, name)
    doc = FunctionConfig(id=key, tenant=tenant, name=name, function_status=status, **kwargs)
    return LogRecord(key=key, payload=doc.to_payload())


def _as_args(record: LogRecord) -> tuple[str, bytes]:
    return record.key, record.payload


class _FlakyLog(MemoryLogClient):
    """Readers fail to open for the first *failures* attempts."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.opened = 0

    def open_reader(self, log_name: str) -> MemoryTailingReader:
        reader = super().open_reader(log_name)
        original_open = reader.open

        async def open_or_fail() -> None:
            self.opened += 1
            if self.failures > 0:
                self.failures -= 1
                raise LogUnavailableError("log unavailable")
            await original_open()

        reader.open = open_or_fail
        return reader


class _DroppingLog(MemoryLogClient):
    """Readers break after delivering *deliver* records, once."""

    def __init__(self, deliver: int) -> None:
        super().__init__()
        self.deliver = deliver
        self.dropped = False

    def open_reader(self, log_name: str) -> MemoryTailingReader:
        reader = super().open_reader(log_name)
        original_next = reader.next
        delivered = 0

        async def next_or_drop() -> LogRecord:
            nonlocal delivered
            if not self.dropped and delivered == self.deliver:
                self.dropped = True
                raise LogUnavailableError("connection reset")
            delivered += 1
            return await original_next()

        reader.next = next_or_drop
        return reader


# -- Folding ---------------------------------------------------------------------


def test_fold_upserts(store: MaterializedStore) -> None:
    store.apply_record(_record(Status.ACTIVATED))
    assert store.get_by_topic("t1", "fn1").function_status is Status.ACTIVATED


def test_fold_is_idempotent(store: MaterializedStore) -> None:
    record = _record(Status.ACTIVATED, cron="@hourly")
    store.apply_record(record)
    once = store.load()
    store.apply_record(record)
    assert store.load() == once


def test_fold_tombstone_evicts(store: MaterializedStore) -> None:
    store.apply_record(_record(Status.ACTIVATED))
    store.apply_record(_record(Status.DELETED))
    with pytest.raises(NotFoundError):
        store.get_by_topic("t1", "fn1")


def test_fold_tombstone_for_absent_key(store: MaterializedStore) -> None:
    store.apply_record(_record(Status.DELETED))
    assert store.load() == []


def test_fold_empty_payload_evicts_key(store: MaterializedStore) -> None:
    store.apply_record(_record(Status.ACTIVATED))
    store.apply_record(LogRecord(key=derive_key("t1", "fn1"), payload=b""))
    assert store.load() == []


def test_fold_skips_malformed_record(store: MaterializedStore) -> None:
    store.apply_record(LogRecord(key="junk", payload=b"\x00not json"))
    store.apply_record(LogRecord(key="junk", payload=b'{"functionStatus": "nope"}'))
    store.apply_record(_record(Status.ACTIVATED))
    assert [d.name for d in store.load()] == ["fn1"]
    assert store.records_folded == 3


def test_fold_skips_keyless_record(store: MaterializedStore) -> None:
    store.apply_record(LogRecord(key="", payload=b'{"name": "x"}'))
    assert store.load() == []
    with pytest.raises(NotFoundError):
        store.get_by_key("")
    assert store.records_folded == 1


def test_fold_last_write_wins(store: MaterializedStore) -> None:
    store.apply_record(_record(Status.ACTIVATED, parallelism=1))
    store.apply_record(_record(Status.SUSPENDED, parallelism=2))
    doc = store.get_by_topic("t1", "fn1")
    assert doc.function_status is Status.SUSPENDED
    assert doc.parallelism == 2


def test_fold_falls_back_to_record_key(store: MaterializedStore) -> None:
    payload = FunctionConfig(tenant="t1", name="fn1").to_payload()
    store.apply_record(LogRecord(key="k1", payload=payload))
    assert store.get_by_key("k1").name == "fn1"


# -- Replay task -----------------------------------------------------------------


async def test_replay_rebuilds_view_from_log(log_client: MemoryLogClient) -> None:
    writer = MaterializedStore(log_client, LOG_NAME)
    key_a = await writer.create(_make_function("t1", "a"))
    key_b = await writer.create(_make_function("t1", "b"))
    await writer.update(_make_function("t1", "a", function_status=Status.ACTIVATED))
    await writer.delete_by_key(key_b)

    reader = MaterializedStore(log_client, LOG_NAME)
    await reader.start()
    try:
        await _wait_until(lambda: reader.records_folded == 4)
        assert [d.id for d in reader.load()] == [key_a]
        assert reader.get_by_key(key_a).function_status is Status.ACTIVATED
    finally:
        await reader.close()


async def test_replay_sees_writes_from_other_processes(running_store: MaterializedStore, log_client) -> None:
    await log_client.append(running_store.log_name, *_as_args(_record(Status.ACTIVATED, "t9", "remote")))
    await _wait_until(lambda: len(running_store.load()) == 1)
    assert running_store.get_by_topic("t9", "remote").function_status is Status.ACTIVATED


async def test_own_writes_replayed_without_change(running_store: MaterializedStore) -> None:
    key = await running_store.create(_make_function(cron="@daily"))
    before = running_store.get_by_key(key)
    await _wait_until(lambda: running_store.records_folded == 1)
    assert running_store.get_by_key(key) == before


async def test_replay_after_compaction(log_client: MemoryLogClient) -> None:
    writer = MaterializedStore(log_client, LOG_NAME)
    key = await writer.create(_make_function())
    await writer.update(_make_function(parallelism=5))
    log_client.compact(LOG_NAME)

    reader = MaterializedStore(log_client, LOG_NAME)
    await reader.start()
    try:
        await _wait_until(lambda: reader.records_folded == 1)
        assert reader.get_by_key(key).parallelism == 5
    finally:
        await reader.close()


async def test_tombstone_survives_restarts() -> None:
    log = _DroppingLog(deliver=1)
    await log.append(LOG_NAME, *_as_args(_record(Status.ACTIVATED)))
    await log.append(LOG_NAME, *_as_args(_record(Status.DELETED)))

    store = MaterializedStore(log, LOG_NAME, initial_backoff=0.001, max_backoff=0.01)
    await store.start()
    try:
        # 1 record before the drop, then both again after the restart
        await _wait_until(lambda: store.records_folded == 3)
        assert store.restarts == 1
        assert store.load() == []
    finally:
        await store.close()


# -- Supervision -----------------------------------------------------------------


async def test_restarts_after_reader_failures() -> None:
    log = _FlakyLog(failures=2)
    await log.append(LOG_NAME, *_as_args(_record(Status.ACTIVATED)))

    store = MaterializedStore(log, LOG_NAME, initial_backoff=0.001, max_backoff=0.01, alert_after=5)
    await store.start()
    try:
        await _wait_until(lambda: store.records_folded == 1)
        assert log.opened == 3
        assert store.restarts == 2
        assert store.consecutive_failures == 0
        assert store.healthy
    finally:
        await store.close()


async def test_unhealthy_and_alert_after_repeated_failures() -> None:
    log = _FlakyLog(failures=4)
    await log.append(LOG_NAME, *_as_args(_record(Status.ACTIVATED)))
    alerts: list[tuple[int, BaseException, bool]] = []

    def on_alert(n: int, exc: BaseException) -> None:
        alerts.append((n, exc, store.healthy))

    store = MaterializedStore(
        log,
        LOG_NAME,
        initial_backoff=0.001,
        max_backoff=0.005,
        alert_after=3,
        on_alert=on_alert,
    )
    await store.start()
    try:
        await _wait_until(lambda: store.records_folded == 1)
        assert store.healthy
        assert store.consecutive_failures == 0
        assert len(alerts) == 1
        n, exc, healthy_at_alert = alerts[0]
        assert n == 3
        assert isinstance(exc, LogUnavailableError)
        assert not healthy_at_alert
    finally:
        await store.close()


async def test_failing_alert_hook_does_not_stop_replay() -> None:
    log = _FlakyLog(failures=2)
    await log.append(LOG_NAME, *_as_args(_record(Status.ACTIVATED)))

    def explode(n: int, exc: BaseException) -> None:
        raise RuntimeError("pager down")

    store = MaterializedStore(
        log, LOG_NAME, initial_backoff=0.001, max_backoff=0.005, alert_after=1, on_alert=explode
    )
    await store.start()
    try:
        await _wait_until(lambda: store.records_folded == 1)
    finally:
        await store.close()


def test_backoff_grows_and_is_capped(store: MaterializedStore) -> None:
    store._failures = 1
    first = store._backoff(None)
    store._failures = 3
    third = store._backoff(None)
    store._failures = 50
    assert third == first * 4
    assert store._backoff(None) == 0.01


# -- Shutdown --------------------------------------------------------------------


async def test_close_releases_reader_and_client(running_store: MaterializedStore, log_client) -> None:
    await _wait_until(lambda: len(log_client._readers) == 1)
    await running_store.close()
    assert log_client._readers == set()
    assert log_client.closed


async def test_close_without_start(store: MaterializedStore, log_client: MemoryLogClient) -> None:
    await store.close()
    assert log_client.closed

