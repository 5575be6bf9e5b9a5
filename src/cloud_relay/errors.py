"""Exception hierarchy for cloud-relay."""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all cloud-relay errors."""


class ConfigError(RelayError, ValueError):
    """Raised when configuration is missing or invalid."""


class CredentialStoreError(RelayError, RuntimeError):
    """Raised when the persisted credential store cannot be read or written."""


class ProvisioningError(RelayError):
    """A provisioning request could not be completed."""


class LocalBrokerError(RelayError):
    """A connect or subscribe step against the local broker failed."""


class CloudConnectError(RelayError):
    """The cloud messaging session could not be opened."""
