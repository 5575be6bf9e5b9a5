"""
Topic routing for Cloud Relay.

Local broker:
  producers (subscribed, relayed to the cloud verbatim): telemetry, state, device
  consumers (published from cloud data): c2d, device-twin

IoT Hub MQTT endpoint (used by the paho-based messenger):
  devices/<device_id>/messages/events/<property bag>     device-to-cloud
  devices/<device_id>/messages/devicebound/#             cloud-to-device
  $iothub/twin/GET/?$rid=<rid>, $iothub/twin/res/#       twin snapshot request/response
  $iothub/twin/PATCH/properties/desired/#                desired property deltas
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

PRODUCER_TOPICS: tuple[str, ...] = ("telemetry", "state", "device")
C2D_TOPIC = "c2d"
TWIN_TOPIC = "device-twin"
CONSUMER_TOPICS: tuple[str, ...] = (C2D_TOPIC, TWIN_TOPIC)

HUB_API_VERSION = "2021-04-12"

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9\-.%_*?!(),:=@$']{1,128}$")


class TopicSchemaError(ValueError):
    """Raised when an invalid identifier is used to construct topics."""


def is_producer_topic(topic: str) -> bool:
    return topic in PRODUCER_TOPICS


def _validate_device_id(device_id: str) -> str:
    if not isinstance(device_id, str) or not device_id:
        raise TopicSchemaError("device_id must be a non-empty string")
    if not _DEVICE_ID_RE.fullmatch(device_id):
        raise TopicSchemaError(f"device_id '{device_id}' is not a valid IoT Hub device id")
    return device_id


@dataclass(frozen=True, slots=True)
class HubTopics:
    """IoT Hub MQTT topic schema for a single device."""

    device_id: str

    def __post_init__(self) -> None:
        _validate_device_id(self.device_id)

    @property
    def base(self) -> str:
        return f"devices/{self.device_id}"

    def username(self, hub_host: str, api_version: str = HUB_API_VERSION) -> str:
        return f"{hub_host}/{self.device_id}/?api-version={api_version}"

    # -------------------------
    # Device to cloud
    # -------------------------
    def events(self, properties: Optional[Mapping[str, str]] = None) -> str:
        """Telemetry topic with the message properties URL-encoded as the last level."""
        # system properties keep their literal '$.' prefix
        bag = urlencode(dict(properties), safe="$") if properties else ""
        return f"{self.base}/messages/events/{bag}"

    # -------------------------
    # Cloud to device
    # -------------------------
    def devicebound_filter(self) -> str:
        return f"{self.base}/messages/devicebound/#"

    def is_devicebound(self, topic: str) -> bool:
        return topic.startswith(f"{self.base}/messages/devicebound/")

    # -------------------------
    # Twin
    # -------------------------
    @staticmethod
    def twin_get(request_id: str) -> str:
        return f"$iothub/twin/GET/?$rid={request_id}"

    @staticmethod
    def twin_response_filter() -> str:
        return "$iothub/twin/res/#"

    @staticmethod
    def twin_desired_patch_filter() -> str:
        return "$iothub/twin/PATCH/properties/desired/#"

    @staticmethod
    def is_twin_response(topic: str) -> bool:
        return topic.startswith("$iothub/twin/res/")

    @staticmethod
    def is_desired_patch(topic: str) -> bool:
        return topic.startswith("$iothub/twin/PATCH/properties/desired/")


def parse_twin_response(topic: str) -> tuple[int, Optional[str]]:
    """
    Split '$iothub/twin/res/<status>/?$rid=<rid>' into (status, rid).

    Raises TopicSchemaError if the topic is not a twin response.
    """
    if not HubTopics.is_twin_response(topic):
        raise TopicSchemaError(f"not a twin response topic: {topic}")
    rest = topic[len("$iothub/twin/res/"):]
    status_part, _, _ = rest.partition("/")
    try:
        status = int(status_part)
    except ValueError as exc:
        raise TopicSchemaError(f"invalid twin response status in {topic}") from exc
    query = parse_qs(urlsplit(rest).query)
    rids = query.get("$rid")
    return status, (rids[0] if rids else None)
