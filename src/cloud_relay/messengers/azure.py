"""
Messenger for MS Azure IoT Hub via the azure-iot-device SDK.

Authenticates with the X.509 pair the HTTP provisioning backend delivers as
base64 env vars (AZURE_CERT / AZURE_PRIVATE_KEY). The SDK's connect() blocks
until the session is open, so this messenger is caller-sequenced.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Optional

from azure.iot.device import IoTHubDeviceClient, Message, X509

from cloud_relay.certs import decode_base64_pem, write_pem_pair
from cloud_relay.config import RelayConfig
from cloud_relay.errors import CloudConnectError
from cloud_relay.messengers.base import (
    CONTENT_ENCODING,
    CONTENT_TYPE,
    ConnectOrdering,
    LocalPublisher,
    MessengerKind,
    encode_config,
    message_properties,
)
from cloud_relay.registration import RegistrationState, classify_registration
from cloud_relay.topics import C2D_TOPIC, TWIN_TOPIC

logger = logging.getLogger(__name__)


def _is_newer(patch: dict, snapshot_version: Optional[int]) -> bool:
    patch_version = patch.get("$version")
    if patch_version is None or snapshot_version is None:
        return True
    return patch_version > snapshot_version


class AzureMessenger:
    kind = MessengerKind.AZURE
    ordering = ConnectOrdering.CALLER_SEQUENCED

    def __init__(self, cfg: RelayConfig, certs_dir: Path) -> None:
        self.cfg = cfg
        self.certs_dir = certs_dir
        self._client: Optional[IoTHubDeviceClient] = None

    def __str__(self) -> str:
        return "Azure cloud messenger"

    def credential_fields(self) -> dict[str, Optional[str]]:
        return {
            "AZURE_PRIVATE_KEY": self.cfg.azure_private_key,
            "AZURE_CERT": self.cfg.azure_cert,
        }

    def registration_state(self) -> RegistrationState:
        return classify_registration(self.credential_fields())

    def _create_client(self) -> IoTHubDeviceClient:
        hub_host = self.cfg.require("azure_hub_host", "AZURE_HUB_HOST")
        cert = decode_base64_pem(self.cfg.require("azure_cert", "AZURE_CERT"), name="AZURE_CERT")
        key = decode_base64_pem(self.cfg.require("azure_private_key", "AZURE_PRIVATE_KEY"), name="AZURE_PRIVATE_KEY")
        cert_path, key_path = write_pem_pair(cert, key, self.certs_dir, stem="azure")

        x509 = X509(cert_file=str(cert_path), key_file=str(key_path))
        return IoTHubDeviceClient.create_from_x509_certificate(
            x509=x509,
            hostname=hub_host,
            device_id=self.cfg.device_uuid,
        )

    def connect_sync(self) -> None:
        if self._client is None:
            self._client = self._create_client()
        logger.info("Connecting to host %s", self.cfg.azure_hub_host)
        try:
            self._client.connect()
        except Exception as exc:
            raise CloudConnectError(f"Cannot connect to Azure IoT: {exc}") from exc
        logger.info("Connected to Azure IoT messaging")

    def connect(self) -> None:
        # The SDK has no non-blocking open
        self.connect_sync()

    def _connected_client(self) -> IoTHubDeviceClient:
        if self._client is None:
            self.connect_sync()
        return self._client

    def publish(self, topic: str, message: bytes) -> None:
        if self._client is None:
            logger.warning("Dropping message on %s: not connected to Azure IoT", topic)
            return
        msg = Message(message, content_encoding=CONTENT_ENCODING, content_type=CONTENT_TYPE)
        msg.custom_properties.update(message_properties(topic))
        try:
            self._client.send_message(msg)
        except Exception as exc:
            logger.warning("Error sending message: %s", exc)

    def subscribe_inbound(self, local: LocalPublisher) -> None:
        client = self._connected_client()

        def _on_message(message: Any) -> None:
            logger.debug("C2D message %s", getattr(message, "message_id", None))
            local.publish(C2D_TOPIC, message.data)

        client.on_message_received = _on_message
        logger.info("Relaying cloud-to-device messages to local topic %s", C2D_TOPIC)

    def subscribe_config(self, local: LocalPublisher) -> None:
        """
        Publish the desired-properties snapshot, then every patch after it.

        The SDK only listens for patches once the handler is set, so the handler
        goes in before get_twin(). Patches arriving before the snapshot is out are
        held back; those already covered by the snapshot's $version are dropped.
        """
        client = self._connected_client()
        lock = threading.Lock()
        held: list[dict] = []
        snapshot_out = False

        def _on_patch(patch: dict) -> None:
            with lock:
                if not snapshot_out:
                    held.append(patch)
                    return
            local.publish(TWIN_TOPIC, encode_config(patch))

        client.on_twin_desired_properties_patch_received = _on_patch

        desired = client.get_twin().get("desired", {})
        with lock:
            local.publish(TWIN_TOPIC, encode_config(desired))
            logger.info("Published device twin snapshot to local topic %s", TWIN_TOPIC)
            version = desired.get("$version")
            for patch in held:
                if _is_newer(patch, version):
                    local.publish(TWIN_TOPIC, encode_config(patch))
            held.clear()
            snapshot_out = True

    def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.shutdown()
        except Exception as exc:
            logger.warning("Error shutting down Azure client: %s", exc)
