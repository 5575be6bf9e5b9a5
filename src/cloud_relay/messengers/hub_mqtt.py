"""
Messenger for Azure IoT Hub over its MQTT endpoint with paho.

Used with DPS provisioning: the assigned hub and device id come from the
CredentialStore and TLS uses the device identity rebuilt from DEVICE_CERTIFICATE
/ DEVICE_KEY. connect() starts a non-blocking handshake; subscriptions are
(re)applied in on_connect and QoS 1 publishes are queued by paho until the
session is up, so this messenger is self-sequencing.
"""

from __future__ import annotations

import json
import logging
import ssl
import threading
from pathlib import Path
from typing import Any, Optional

import paho.mqtt.client as mqtt

from cloud_relay.certs import load_device_identity, write_pem_pair
from cloud_relay.config import RelayConfig
from cloud_relay.core.credential_store import CredentialStore
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
from cloud_relay.topics import C2D_TOPIC, TWIN_TOPIC, HubTopics, TopicSchemaError, parse_twin_response

logger = logging.getLogger(__name__)

HUB_MQTT_PORT = 8883
TWIN_SNAPSHOT_RID = "relay-twin-1"


class HubMqttMessenger:
    kind = MessengerKind.AZURE_MQTT
    ordering = ConnectOrdering.SELF_SEQUENCING

    def __init__(
        self,
        cfg: RelayConfig,
        store: CredentialStore,
        certs_dir: Path,
        *,
        port: int = HUB_MQTT_PORT,
        keepalive: int = 60,
        connect_timeout_s: float = 30.0,
    ) -> None:
        self.cfg = cfg
        self.store = store
        self.certs_dir = certs_dir
        self.port = port
        self.keepalive = keepalive
        self.connect_timeout_s = connect_timeout_s

        self.topics: Optional[HubTopics] = None
        self.hub_host: Optional[str] = None
        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._subscriptions: list[str] = []
        self._inbound: Optional[LocalPublisher] = None
        self._config: Optional[LocalPublisher] = None
        self._snapshot_lock = threading.Lock()
        self._snapshot_delivered = False

    def __str__(self) -> str:
        return "Azure IoT Hub MQTT messenger"

    def credential_fields(self) -> dict[str, Optional[str]]:
        return self.store.connection_fields()

    def registration_state(self) -> RegistrationState:
        return classify_registration(self.credential_fields())

    # -------------------------
    # Session
    # -------------------------
    def _create_client(self) -> mqtt.Client:
        fields = self.credential_fields()
        hub_host, device_id = fields.get("HostName"), fields.get("DeviceId")
        if not hub_host or not device_id:
            raise CloudConnectError("No stored IoT Hub assignment; provision the device first")
        try:
            self.topics = HubTopics(device_id)
        except TopicSchemaError as exc:
            raise CloudConnectError(str(exc)) from exc
        self.hub_host = hub_host

        identity = load_device_identity(self.cfg)
        cert_path, key_path = write_pem_pair(identity.certificate, identity.private_key, self.certs_dir)
        ssl_context = ssl.create_default_context()
        ssl_context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path), password=identity.passphrase)

        client = mqtt.Client(client_id=device_id, protocol=mqtt.MQTTv311)
        client.username_pw_set(self.topics.username(hub_host))
        client.tls_set_context(ssl_context)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def connect(self) -> None:
        if self._client is not None:
            return
        client = self._create_client()
        self._client = client
        logger.info("Connecting to host %s", self.hub_host)
        client.connect_async(self.hub_host, self.port, keepalive=self.keepalive)
        client.loop_start()

    def connect_sync(self) -> None:
        self.connect()
        if not self._connected.wait(timeout=self.connect_timeout_s):
            raise CloudConnectError(f"Cannot connect to {self.hub_host} within {self.connect_timeout_s}s")

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: dict, rc: int) -> None:
        if rc != 0:
            logger.warning("Cannot connect to Azure IoT: %s", mqtt.connack_string(rc))
            return
        self._connected.set()
        logger.info("Connected to Azure IoT messaging")

        # Iterate over a copy; subscribe_* may append concurrently
        for topic in list(self._subscriptions):
            client.subscribe(topic, qos=1)
            logger.info("Subscribed: %s", topic)

        if self._config is not None:
            self._request_twin()

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, rc: int) -> None:
        self._connected.clear()
        if rc != 0:
            logger.warning("Unexpected disconnect from Azure IoT rc=%s", rc)

    def _subscribe(self, topic: str) -> None:
        if topic in self._subscriptions:
            return
        self._subscriptions.append(topic)
        if self._client is not None and self._client.is_connected():
            self._client.subscribe(topic, qos=1)
            logger.info("Subscribed: %s", topic)

    # -------------------------
    # Device to cloud
    # -------------------------
    def publish(self, topic: str, message: bytes) -> None:
        if self._client is None or self.topics is None:
            logger.warning("Dropping message on %s: not connected to Azure IoT", topic)
            return
        properties = {"$.ct": CONTENT_TYPE, "$.ce": CONTENT_ENCODING, **message_properties(topic)}
        try:
            info = self._client.publish(self.topics.events(properties), payload=message, qos=1)
        except Exception as exc:
            logger.warning("Error sending message: %s", exc)
            return
        if info.rc == mqtt.MQTT_ERR_NO_CONN:
            logger.debug("Queued message on %s until Azure IoT connects", topic)
        elif info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("Error sending message: %s", mqtt.error_string(info.rc))

    # -------------------------
    # Cloud to device
    # -------------------------
    def subscribe_inbound(self, local: LocalPublisher) -> None:
        if self.topics is None:
            raise CloudConnectError("subscribe_inbound called before connect")
        self._inbound = local
        self._subscribe(self.topics.devicebound_filter())

    def subscribe_config(self, local: LocalPublisher) -> None:
        if self.topics is None:
            raise CloudConnectError("subscribe_config called before connect")
        self._config = local
        self._subscribe(HubTopics.twin_response_filter())
        self._subscribe(HubTopics.twin_desired_patch_filter())
        if self._client is not None and self._client.is_connected():
            self._request_twin()

    def _request_twin(self) -> None:
        with self._snapshot_lock:
            if self._snapshot_delivered:
                return
        if self._client is None:
            return
        self._client.publish(HubTopics.twin_get(TWIN_SNAPSHOT_RID), payload="", qos=1)
        logger.debug("Requested device twin snapshot")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            self._dispatch(msg.topic, msg.payload)
        except Exception:
            logger.exception("Failed to relay cloud message on %s", msg.topic)

    def _dispatch(self, topic: str, payload: bytes) -> None:
        if self.topics is not None and self.topics.is_devicebound(topic):
            if self._inbound is not None:
                self._inbound.publish(C2D_TOPIC, payload)
            return

        if HubTopics.is_desired_patch(topic):
            if self._config is not None:
                self._config.publish(TWIN_TOPIC, encode_config(json.loads(payload)))
            return

        if HubTopics.is_twin_response(topic):
            status, rid = parse_twin_response(topic)
            if rid != TWIN_SNAPSHOT_RID or self._config is None:
                return
            if status != 200:
                logger.warning("Device twin request failed with status %s", status)
                return
            with self._snapshot_lock:
                if self._snapshot_delivered:
                    return
                self._snapshot_delivered = True
            twin = json.loads(payload) if payload else {}
            self._config.publish(TWIN_TOPIC, encode_config(twin.get("desired", {})))
            logger.info("Published device twin snapshot to local topic %s", TWIN_TOPIC)
            return

        logger.debug("Ignoring cloud message on %s", topic)

    def close(self) -> None:
        client, self._client = self._client, None
        self._connected.clear()
        if client is None:
            return
        try:
            client.loop_stop()
            client.disconnect()
        except Exception as exc:
            logger.warning("Error disconnecting from Azure IoT: %s", exc)
