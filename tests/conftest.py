"""Shared test fixtures."""

import pytest

from pubsub_registry.log import MemoryLogClient
from pubsub_registry.store import MaterializedStore


@pytest.fixture
def log_client() -> MemoryLogClient:
    """An empty in-memory compacted log."""
    return MemoryLogClient()


@pytest.fixture
def store(log_client: MemoryLogClient) -> MaterializedStore:
    """A store whose replay task is not running (CRUD only)."""
    return MaterializedStore(
        log_client,
        "test-registry",
        initial_backoff=0.001,
        max_backoff=0.01,
        alert_after=3,
    )


@pytest.fixture
async def running_store(store: MaterializedStore):
    """The same store with replay started; closed after the test."""
    await store.start()
    yield store
    await store.close()

