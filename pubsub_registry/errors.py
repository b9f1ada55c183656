"""Exceptions raised by the registry store, validation and log clients."""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for all registry errors."""


class AlreadyExistsError(RegistryError):
    """Create was called for a key already present in the registry."""

    def __init__(self, key: str) -> None:
        super().__init__(f"document already exists: {key}")
        self.key = key


class NotFoundError(RegistryError):
    """The requested key is not in the registry."""

    def __init__(self, key: str) -> None:
        super().__init__(f"document not found: {key}")
        self.key = key


class LogUnavailableError(RegistryError):
    """The backing log rejected an append or a reader failed."""


# -- Validation ---------------------------------------------------------------


class ConfigValidationError(RegistryError):
    """A configuration document failed validation.

    ``value`` holds the offending input so callers can echo it back.
    """

    template = "invalid configuration value {value!r}"

    def __init__(self, value: str = "") -> None:
        super().__init__(self.template.format(value=value))
        self.value = value


class InvalidURLError(ConfigValidationError):
    template = "not a URL {value!r}"


class MissingSubscriptionError(ConfigValidationError):
    template = "subscription name is missing"


class UnsupportedSubscriptionTypeError(ConfigValidationError):
    template = "unsupported subscription type {value!r}"


class InvalidInitialPositionError(ConfigValidationError):
    template = "invalid subscription initial position {value!r}"


class DuplicateExclusiveSubscriptionError(ConfigValidationError):
    template = "exclusive subscription {value!r} cannot be shared between multiple webhooks"


class InvalidStatusError(ConfigValidationError):
    template = "cannot create a document with status {value!r}"
