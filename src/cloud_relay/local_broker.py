"""
Local MQTT broker connection for Cloud Relay.

Connects to the on-device broker with a small fixed-delay retry, subscribes to the
producer topics at QoS 1 and hands back a LocalBrokerHandle. None means the local
half of the relay is disabled for this run.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from cloud_relay.errors import LocalBrokerError
from cloud_relay.topics import PRODUCER_TOPICS

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]

# SUBACK return code for a refused subscription
SUBACK_FAILURE = 0x80


def _stop_client(client: mqtt.Client) -> None:
    try:
        client.loop_stop()
        client.disconnect()
    except Exception as exc:
        logger.debug("Ignoring error while discarding local client: %s", exc)


class LocalBrokerHandle:
    """A connected, subscribed local broker client. Publish to it; receive from it."""

    def __init__(self, client: mqtt.Client, *, host: str = "", port: int = 0) -> None:
        self._client = client
        self.host = host
        self.port = port
        self._handler: Optional[MessageHandler] = None
        client.on_message = self._on_message

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._handler = handler

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        handler = self._handler
        if handler is None:
            logger.debug("Dropping local message on %s; no handler attached yet", msg.topic)
            return
        try:
            handler(msg.topic, msg.payload)
        except Exception:
            logger.exception("Local message handler failed for topic %s", msg.topic)

    def publish(self, topic: str, payload: Any, *, qos: int = 0, retain: bool = False) -> Any:
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload)
        return self._client.publish(topic, payload=payload, qos=qos, retain=retain)

    def disconnect(self) -> None:
        try:
            self._client.loop_stop()
            self._client.disconnect()
        finally:
            self._handler = None


class LocalBrokerConnector:
    """
    Bounded-retry connect + subscribe against the local broker.

    An attempt only succeeds once the broker has accepted the session (CONNACK)
    and granted every subscription (SUBACK). Each attempt reuses a client that
    already connected on an earlier attempt, so a subscribe failure retries only
    the subscriptions over the same connection.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 1883,
        *,
        topics: tuple[str, ...] = PRODUCER_TOPICS,
        max_tries: int = 3,
        retry_delay_s: float = 5.0,
        ack_timeout_s: float = 10.0,
        keepalive: int = 60,
        client_id: str = "",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.port = port
        self.topics = tuple(topics)
        self.max_tries = max_tries
        self.retry_delay_s = retry_delay_s
        self.ack_timeout_s = ack_timeout_s
        self.keepalive = keepalive
        self.client_id = client_id
        self._sleep = sleep

        self._client: Optional[mqtt.Client] = None
        self._subscribed = False
        self._connack = threading.Event()
        self._connack_rc: Optional[int] = None
        self._suback = threading.Condition()
        self._granted: dict[int, tuple[int, ...]] = {}
        self.attempts = 0

    @property
    def url(self) -> str:
        return f"mqtt://{self.host}:{self.port}"

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: dict, rc: int) -> None:
        self._connack_rc = rc
        self._connack.set()
        if rc != 0:
            logger.error("Local MQTT connect refused: %s", mqtt.connack_string(rc))
            return
        # paho reconnects on its own; a clean session drops our subscriptions
        if self._subscribed:
            for topic in self.topics:
                client.subscribe(topic, qos=1)
            logger.info("Reconnected to %s; resubscribed %d topics", self.url, len(self.topics))

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, granted_qos: tuple) -> None:
        if self._subscribed:
            # resubscription after a reconnect; nobody waits on it
            if SUBACK_FAILURE in granted_qos:
                logger.warning("Local broker rejected a resubscription (mid=%s)", mid)
            return
        with self._suback:
            self._granted[mid] = tuple(granted_qos)
            self._suback.notify_all()

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, rc: int) -> None:
        if rc != 0:
            logger.warning("Unexpected local MQTT disconnect rc=%s", rc)

    def _connect(self) -> mqtt.Client:
        if self._client is not None:
            return self._client

        client = mqtt.Client(client_id=self.client_id, protocol=mqtt.MQTTv311)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe

        self._connack.clear()
        self._connack_rc = None
        try:
            client.connect(self.host, self.port, keepalive=self.keepalive)
        except OSError as exc:
            raise LocalBrokerError(f"cannot connect to {self.url}: {exc}") from exc
        client.loop_start()

        if not self._connack.wait(self.ack_timeout_s):
            _stop_client(client)
            raise LocalBrokerError(f"no CONNACK from {self.url} within {self.ack_timeout_s}s")
        if self._connack_rc != 0:
            rc = self._connack_rc
            _stop_client(client)
            raise LocalBrokerError(f"{self.url} refused the connection: {mqtt.connack_string(rc)}")

        self._client = client
        logger.info("Connected to %s", self.url)
        return client

    def _await_suback(self, mid: int) -> tuple[int, ...]:
        with self._suback:
            if not self._suback.wait_for(lambda: mid in self._granted, timeout=self.ack_timeout_s):
                raise LocalBrokerError(f"no SUBACK from {self.url} within {self.ack_timeout_s}s")
            return self._granted.pop(mid)

    def _subscribe_all(self, client: mqtt.Client) -> None:
        for topic in self.topics:
            rc, mid = client.subscribe(topic, qos=1)
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise LocalBrokerError(f"subscribe to {topic} failed: {mqtt.error_string(rc)}")
            if SUBACK_FAILURE in self._await_suback(mid):
                raise LocalBrokerError(f"broker rejected subscription to {topic}")
            logger.info("Subscribed to topic: %s", topic)
        self._subscribed = True

    def _discard(self) -> None:
        client, self._client = self._client, None
        self._subscribed = False
        with self._suback:
            self._granted.clear()
        if client is not None:
            _stop_client(client)

    def connect_and_subscribe(self) -> Optional[LocalBrokerHandle]:
        """
        Up to max_tries attempts, sleeping retry_delay_s between them.

        Returns the handle, or None once retries are exhausted.
        """
        self.attempts = 0
        while self.attempts < self.max_tries:
            self.attempts += 1
            try:
                client = self._connect()
                self._subscribe_all(client)
                return LocalBrokerHandle(client, host=self.host, port=self.port)
            except LocalBrokerError as exc:
                logger.warning(
                    "Cannot connect to local MQTT (attempt %d/%d): %s",
                    self.attempts,
                    self.max_tries,
                    exc,
                )
                if self.attempts < self.max_tries:
                    logger.info("Retry in %s seconds", self.retry_delay_s)
                    self._sleep(self.retry_delay_s)

        logger.warning("Retries exhausted")
        self._discard()
        return None
