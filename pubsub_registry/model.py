"""Registry documents: function, topic and webhook configuration.

Documents are stored in the log as JSON using the field aliases below, which
are shared with every other reader and writer of the registry topic. Unknown
fields are ignored on read and missing fields fall back to the defaults here.
``Status`` is encoded as its integer value.
"""

from __future__ import annotations

import time
import uuid
from datetime import UTC, datetime
from enum import IntEnum, StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pubsub_registry.errors import InvalidInitialPositionError, UnsupportedSubscriptionTypeError
from pubsub_registry.keys import derive_key

NON_RESUMABLE = "NonResumable"


class Status(IntEnum):
    """Lifecycle of a registry document.

    Any transition is legal; the store does not police them. ``DELETED`` is a
    tombstone marker: a document carrying it is evicted rather than stored.
    """

    DEACTIVATED = 0
    ACTIVATED = 1
    SUSPENDED = 2
    DELETED = 3

    @classmethod
    def from_string(cls, status: str) -> Status:
        """Parse a status name case-insensitively; unknown names are DEACTIVATED."""
        try:
            return cls[status.strip().upper()]
        except KeyError:
            return cls.DEACTIVATED


class SubscriptionType(StrEnum):
    EXCLUSIVE = "exclusive"
    SHARED = "shared"
    KEY_SHARED = "keyshared"
    FAILOVER = "failover"


class InitialPosition(StrEnum):
    LATEST = "latest"
    EARLIEST = "earliest"


def parse_subscription_type(value: str) -> SubscriptionType:
    """Convert a subscription type name; empty means exclusive."""
    if not value:
        return SubscriptionType.EXCLUSIVE
    try:
        return SubscriptionType(value.lower())
    except ValueError:
        raise UnsupportedSubscriptionTypeError(value) from None


def parse_initial_position(value: str) -> InitialPosition:
    """Convert an initial position name; empty means latest."""
    if not value:
        return InitialPosition.LATEST
    try:
        return InitialPosition(value.lower())
    except ValueError:
        raise InvalidInitialPositionError(value) from None


def _now() -> datetime:
    return datetime.now(UTC)


class _Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_payload(self) -> bytes:
        """Serialize to the JSON bytes written to the log."""
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_payload(cls, payload: bytes | str):
        """Parse a log payload. Raises ``pydantic.ValidationError`` if malformed."""
        return cls.model_validate_json(payload)


class WebhookConfig(_Document):
    """A webhook subscription on a topic."""

    url: str = ""
    headers: list[str] = Field(default_factory=list)
    subscription: str = ""
    subscription_type: str = Field(default=SubscriptionType.EXCLUSIVE.value, alias="subscriptionType")
    initial_position: str = Field(default=InitialPosition.LATEST.value, alias="initialPosition")
    webhook_status: Status = Field(default=Status.DEACTIVATED, alias="webhookStatus")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    deleted_at: datetime | None = Field(default=None, alias="deletedAt")

    @field_validator("headers", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        # other writers encode empty lists as null
        return [] if value is None else value


class TopicConfig(_Document):
    """A topic and the webhooks subscribed to it."""

    topic_full_name: str = Field(default="", alias="TopicFullName")
    pulsar_url: str = Field(default="", alias="PulsarURL")
    token: str = Field(default="", alias="Token")
    tenant: str = Field(default="", alias="Tenant")
    key: str = Field(default="", alias="Key")
    notes: str = Field(default="", alias="Notes")
    topic_status: Status = Field(default=Status.DEACTIVATED, alias="TopicStatus")
    webhooks: list[WebhookConfig] = Field(default_factory=list, alias="Webhooks")
    created_at: datetime | None = Field(default=None, alias="CreatedAt")
    updated_at: datetime | None = Field(default=None, alias="UpdatedAt")

    @field_validator("webhooks", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        # other writers encode empty lists as null
        return [] if value is None else value


class FunctionTopic(_Document):
    """Connection parameters for one topic a function reads or writes."""

    topic_full_name: str = Field(default="", alias="topicFullName")
    pulsar_url: str = Field(default="", alias="pulsarURL")
    token: str = ""
    tenant: str = ""
    key: str = ""
    subscription: str = ""
    subscription_type: str = Field(default=SubscriptionType.EXCLUSIVE.value, alias="subscriptionType")
    key_shared_policy: str = Field(default="", alias="keySharedPolicy")
    initial_position: str = Field(default=InitialPosition.LATEST.value, alias="initialPosition")


class FunctionConfig(_Document):
    """The registry document: one function and the topics and webhooks it uses."""

    name: str = ""
    id: str = ""
    tenant: str = ""
    function_status: Status = Field(default=Status.DEACTIVATED, alias="functionStatus")
    function_file_path: str = Field(default="", alias="functionFilePath")
    language_pack: str = Field(default="", alias="languagePack")
    parallelism: int = 1
    webhook_urls: list[str] = Field(default_factory=list, alias="webhookURLs")
    input_topic: FunctionTopic = Field(default_factory=FunctionTopic, alias="inputTopics")
    output_topic: FunctionTopic = Field(default_factory=FunctionTopic, alias="outputTopics")
    log_topic: FunctionTopic = Field(default_factory=FunctionTopic, alias="logTopic")
    trigger_type: str = Field(default="", alias="triggerType")
    cron: str = ""
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    deleted_at: datetime | None = Field(default=None, alias="deletedAt")

    @field_validator("webhook_urls", mode="before")
    @classmethod
    def null_as_empty(cls, value):
        # other writers encode empty lists as null
        return [] if value is None else value

    @property
    def key(self) -> str:
        """Registry key derived from tenant and name."""
        return derive_key(self.tenant, self.name)

    @property
    def topics(self) -> list[FunctionTopic]:
        """The input, output and log topics that are actually configured."""
        return [t for t in (self.input_topic, self.output_topic, self.log_topic) if t.topic_full_name]


def new_webhook_config(url: str) -> WebhookConfig:
    """Create an active, exclusive webhook with a generated subscription name."""
    now = _now()
    return WebhookConfig(
        url=url,
        subscription=f"{NON_RESUMABLE}{uuid.uuid4().hex}{time.time_ns()}",
        webhook_status=Status.ACTIVATED,
        subscription_type=SubscriptionType.EXCLUSIVE.value,
        initial_position=InitialPosition.LATEST.value,
        created_at=now,
        updated_at=now,
    )


def new_topic_config(topic_full_name: str, pulsar_url: str, token: str, tenant: str = "") -> TopicConfig:
    """Create a topic configuration with no webhooks and a derived key."""
    now = _now()
    return TopicConfig(
        topic_full_name=topic_full_name,
        pulsar_url=pulsar_url,
        token=token,
        tenant=tenant,
        key=derive_key(tenant, topic_full_name),
        created_at=now,
        updated_at=now,
    )
