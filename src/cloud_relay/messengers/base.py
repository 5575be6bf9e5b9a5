"""
Cloud messenger call surface.

Every provider variant exposes the same capabilities so the orchestrator never
branches on the provider, only on the connect ordering it reports.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from cloud_relay.registration import RegistrationState

CONTENT_TYPE = "application/json"
CONTENT_ENCODING = "utf-8"
ORIGIN_TOPIC_PROPERTY = "topic"


class MessengerKind(str, Enum):
    AZURE = "azure"
    AZURE_MQTT = "azure-mqtt"


class ConnectOrdering(str, Enum):
    """
    SELF_SEQUENCING: connect() may return before the session is up; subscriptions
    and publishes made afterwards are applied once it is.
    CALLER_SEQUENCED: the caller must complete connect_sync() before subscribing.
    """

    SELF_SEQUENCING = "self_sequencing"
    CALLER_SEQUENCED = "caller_sequenced"


class LocalPublisher(Protocol):
    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any:
        ...


class CloudMessenger(Protocol):
    kind: MessengerKind
    ordering: ConnectOrdering

    def credential_fields(self) -> Mapping[str, Optional[str]]:
        """Provisioning outputs this messenger needs, None where absent."""
        ...

    def registration_state(self) -> RegistrationState:
        ...

    def connect(self) -> None:
        ...

    def connect_sync(self) -> None:
        ...

    def publish(self, topic: str, message: bytes) -> None:
        """Send to the cloud tagged with the origin topic. Never raises."""
        ...

    def subscribe_inbound(self, local: LocalPublisher) -> None:
        ...

    def subscribe_config(self, local: LocalPublisher) -> None:
        ...

    def close(self) -> None:
        ...


def message_properties(topic: str) -> dict[str, str]:
    return {ORIGIN_TOPIC_PROPERTY: topic}


def encode_config(document: Any) -> str:
    """Twin documents go to the local broker as compact JSON."""
    return json.dumps(document, separators=(",", ":"))
