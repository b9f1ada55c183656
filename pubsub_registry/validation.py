"""Validation of webhook, topic and function configuration.

Plain explicit checks rather than a schema DSL: each rule raises a specific
``ConfigValidationError`` subclass carrying the offending value, and the
first failure in input order is the one reported.
"""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

from pubsub_registry.errors import (
    DuplicateExclusiveSubscriptionError,
    InvalidURLError,
    MissingSubscriptionError,
)
from pubsub_registry.keys import derive_key
from pubsub_registry.model import SubscriptionType, parse_initial_position, parse_subscription_type

if TYPE_CHECKING:
    from collections.abc import Iterable

    from pubsub_registry.model import FunctionConfig, TopicConfig, WebhookConfig


def is_url(value: str) -> bool:
    """True when *value* is an absolute URL with both a scheme and a host."""
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def validate_webhooks(webhooks: Iterable[WebhookConfig]) -> None:
    """Check a topic's webhook set.

    Raises:
        InvalidURLError: a webhook URL is not absolute.
        MissingSubscriptionError: a subscription name is blank.
        UnsupportedSubscriptionTypeError: unknown subscription type.
        InvalidInitialPositionError: unknown initial position.
        DuplicateExclusiveSubscriptionError: two exclusive webhooks share a
            subscription name.
    """
    exclusive_subs: set[str] = set()
    for wh in webhooks:
        if not is_url(wh.url):
            raise InvalidURLError(wh.url)
        if not wh.subscription.strip():
            raise MissingSubscriptionError(wh.subscription)
        if parse_subscription_type(wh.subscription_type) is SubscriptionType.EXCLUSIVE:
            if wh.subscription in exclusive_subs:
                raise DuplicateExclusiveSubscriptionError(wh.subscription)
            exclusive_subs.add(wh.subscription)
        parse_initial_position(wh.initial_position)


def validate_topic_config(topic: TopicConfig) -> str:
    """Validate a topic's webhooks and return the topic's registry key."""
    validate_webhooks(topic.webhooks)
    return derive_key(topic.tenant, topic.topic_full_name)


def validate_function_config(doc: FunctionConfig) -> None:
    """Check the parts of a function document the registry relies on.

    Webhook URLs must be absolute, and every configured topic must name a
    known subscription type and initial position.
    """
    for url in doc.webhook_urls:
        if not is_url(url):
            raise InvalidURLError(url)
    for topic in doc.topics:
        parse_subscription_type(topic.subscription_type)
        parse_initial_position(topic.initial_position)
