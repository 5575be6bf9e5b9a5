"""
Cloud messengers, one variant per provider.

Use create_messenger() to build the variant named by CLOUD_PROVIDER.
"""

from __future__ import annotations

from pathlib import Path

from cloud_relay.config import RelayConfig
from cloud_relay.core.credential_store import CredentialStore
from cloud_relay.messengers.base import CloudMessenger, ConnectOrdering, LocalPublisher, MessengerKind

__all__ = [
    "CloudMessenger",
    "ConnectOrdering",
    "LocalPublisher",
    "MessengerKind",
    "create_messenger",
]


def create_messenger(cfg: RelayConfig, *, store: CredentialStore, certs_dir: Path) -> CloudMessenger:
    kind = MessengerKind(cfg.cloud_provider)
    if kind is MessengerKind.AZURE:
        from cloud_relay.messengers.azure import AzureMessenger

        return AzureMessenger(cfg, certs_dir)

    from cloud_relay.messengers.hub_mqtt import HubMqttMessenger

    return HubMqttMessenger(cfg, store, certs_dir)
