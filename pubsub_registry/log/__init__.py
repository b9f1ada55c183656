"""Log clients: the durable system of record behind the registry."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pubsub_registry.log.base import LogClient, LogRecord, TailingReader
from pubsub_registry.log.memory import MemoryLogClient

if TYPE_CHECKING:
    from pubsub_registry.config import Settings

logger = logging.getLogger(__name__)

__all__ = ["LogClient", "LogRecord", "MemoryLogClient", "TailingReader", "create_log_client"]


def create_log_client(settings: Settings) -> LogClient:
    """Build the log client selected by ``settings.log_backend``."""
    if settings.log_backend == "memory":
        logger.warning("Using in-memory log backend; registry will not survive a restart")
        return MemoryLogClient()

    if settings.log_backend != "kafka":
        raise ValueError(f"unknown log backend {settings.log_backend!r}")

    from pubsub_registry.log.kafka import KafkaLogClient

    logger.info("Log backend: kafka (%s)", settings.log_bootstrap_servers)
    return KafkaLogClient(
        settings.get_bootstrap_servers(),
        security_protocol=settings.log_security_protocol,
        sasl_mechanism=settings.log_sasl_mechanism,
        sasl_username=settings.log_sasl_username,
        sasl_password=settings.log_sasl_password,
        send_timeout=settings.log_send_timeout_seconds,
    )
