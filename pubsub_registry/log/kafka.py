"""Kafka-backed log client built on aiokafka.

The registry topic should be created with ``cleanup.policy=compact``; Kafka
then keeps at least the latest record per key. Appends use an idempotent
producer with ``acks="all"``. Readers are group-less consumers that never
commit offsets, so every opened reader replays the topic from the oldest
retained record and then keeps tailing it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from aiokafka.helpers import create_ssl_context

from pubsub_registry.errors import LogUnavailableError
from pubsub_registry.log.base import LogClient, LogRecord, TailingReader

logger = logging.getLogger(__name__)


class KafkaLogClient(LogClient):
    """``LogClient`` over a Kafka cluster.

    Args:
        bootstrap_servers: ``host:port`` entries of the cluster.
        security_protocol: PLAINTEXT, SSL, SASL_PLAINTEXT or SASL_SSL.
        sasl_mechanism: SASL mechanism used when a username is given.
        sasl_username: SASL user; empty disables SASL credentials.
        sasl_password: SASL password or access token.
        send_timeout: seconds to wait for an append to be acknowledged.
    """

    def __init__(
        self,
        bootstrap_servers: list[str],
        *,
        security_protocol: str = "PLAINTEXT",
        sasl_mechanism: str = "PLAIN",
        sasl_username: str = "",
        sasl_password: str = "",
        send_timeout: float = 30.0,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._security_protocol = security_protocol
        self._sasl_mechanism = sasl_mechanism
        self._sasl_username = sasl_username
        self._sasl_password = sasl_password
        self._send_timeout = send_timeout
        self._producer: AIOKafkaProducer | None = None
        self._producer_lock = asyncio.Lock()
        self._readers: set[KafkaTailingReader] = set()

    def connection_config(self) -> dict[str, Any]:
        """Keyword arguments shared by the producer and every consumer."""
        config: dict[str, Any] = {
            "bootstrap_servers": self._bootstrap_servers,
            "security_protocol": self._security_protocol,
        }
        if self._security_protocol.endswith("SSL"):
            config["ssl_context"] = create_ssl_context()
        if self._sasl_username:
            config["sasl_mechanism"] = self._sasl_mechanism
            config["sasl_plain_username"] = self._sasl_username
            config["sasl_plain_password"] = self._sasl_password
        return config

    async def start(self) -> None:
        async with self._producer_lock:
            if self._producer is not None:
                return
            producer = AIOKafkaProducer(
                acks="all",
                enable_idempotence=True,
                **self.connection_config(),
            )
            try:
                await producer.start()
            except KafkaError as exc:
                await producer.stop()
                raise LogUnavailableError(f"cannot connect producer: {exc}") from exc
            self._producer = producer
            logger.info("Kafka producer connected to %s", ",".join(self._bootstrap_servers))

    async def append(self, log_name: str, key: str, payload: bytes) -> None:
        if self._producer is None:
            await self.start()
        try:
            await asyncio.wait_for(
                self._producer.send_and_wait(log_name, value=payload, key=key.encode("utf-8")),
                timeout=self._send_timeout,
            )
        except TimeoutError as exc:
            raise LogUnavailableError(f"append to {log_name} timed out after {self._send_timeout}s") from exc
        except KafkaError as exc:
            raise LogUnavailableError(f"append to {log_name} failed: {exc}") from exc

    def open_reader(self, log_name: str) -> KafkaTailingReader:
        return KafkaTailingReader(self, log_name)

    async def close(self) -> None:
        for reader in list(self._readers):
            await reader.close()
        async with self._producer_lock:
            if self._producer is not None:
                await self._producer.stop()
                self._producer = None
                logger.info("Kafka producer stopped")


class KafkaTailingReader(TailingReader):
    """Tails one topic from the earliest retained offset."""

    def __init__(self, client: KafkaLogClient, log_name: str) -> None:
        self._client = client
        self._log_name = log_name
        self._consumer: AIOKafkaConsumer | None = None

    async def open(self) -> None:
        consumer = AIOKafkaConsumer(
            self._log_name,
            group_id=None,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            **self._client.connection_config(),
        )
        try:
            await consumer.start()
        except KafkaError as exc:
            await consumer.stop()
            raise LogUnavailableError(f"cannot open reader on {self._log_name}: {exc}") from exc
        self._consumer = consumer
        self._client._readers.add(self)
        logger.debug("Reader opened on %s", self._log_name)

    async def next(self) -> LogRecord:
        if self._consumer is None:
            raise LogUnavailableError(f"reader on {self._log_name} is not open")
        try:
            message = await self._consumer.getone()
        except KafkaError as exc:
            raise LogUnavailableError(f"reading {self._log_name} failed: {exc}") from exc
        return LogRecord(key=self._decode_key(message), payload=message.value or b"")

    def _decode_key(self, message) -> str:
        """Record key as text; an undecodable key is reported as empty."""
        if not message.key:
            return ""
        try:
            return message.key.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(
                "Record on %s at offset %s has a non-UTF-8 key",
                self._log_name,
                message.offset,
            )
            return ""

    async def close(self) -> None:
        self._client._readers.discard(self)
        if self._consumer is not None:
            consumer, self._consumer = self._consumer, None
            await consumer.stop()
            logger.debug("Reader closed on %s", self._log_name)
