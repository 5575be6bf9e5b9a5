"""
Registration-and-relay state machine.

One pass per process invocation:

  UNREGISTERED          -> provision once, end the run (next run sees the result)
  PARTIALLY_REGISTERED  -> log, end the run
  REGISTERED            -> connect local broker; if that fails, end the run with
                           the cloud side untouched
                        -> connect cloud, relay c2d and twin updates to the local
                           broker, relay producer topics to the cloud

Any exception in the pass is logged and ends the run; nothing crashes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from cloud_relay.certs import DeviceIdentity
from cloud_relay.errors import ConfigError
from cloud_relay.local_broker import LocalBrokerConnector, LocalBrokerHandle
from cloud_relay.messengers import CloudMessenger, ConnectOrdering
from cloud_relay.provisioning import Provisioner
from cloud_relay.registration import RegistrationState
from cloud_relay.topics import is_producer_topic

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    PROVISIONED = "provisioned"
    PROVISIONING_FAILED = "provisioning_failed"
    PARTIALLY_REGISTERED = "partially_registered"
    LOCAL_UNAVAILABLE = "local_unavailable"
    BRIDGED = "bridged"
    FAILED = "failed"


@dataclass
class RelaySession:
    """Connection handles owned by one run; read by the relay callbacks."""

    local: Optional[LocalBrokerHandle] = None
    cloud: Optional[CloudMessenger] = None

    def close(self) -> None:
        # Cloud first: its callbacks publish to the local broker
        if self.cloud is not None:
            try:
                self.cloud.close()
            except Exception:
                logger.exception("Error closing cloud session")
            self.cloud = None
        if self.local is not None:
            try:
                self.local.disconnect()
            except Exception:
                logger.exception("Error disconnecting local MQTT")
            self.local = None


class RelayOrchestrator:
    def __init__(
        self,
        messenger: CloudMessenger,
        local_connector: LocalBrokerConnector,
        provisioner_factory: Callable[[], Provisioner],
        identity_loader: Callable[[bool], DeviceIdentity],
    ) -> None:
        self.messenger = messenger
        self.local_connector = local_connector
        self.provisioner_factory = provisioner_factory
        self.identity_loader = identity_loader
        self.session = RelaySession()

    def forward_local(self, topic: str, payload: bytes) -> None:
        """Relay a local message to the cloud; only producer topics leave the device."""
        if not is_producer_topic(topic):
            logger.debug("Ignoring local message on unexpected topic %s", topic)
            return
        self.messenger.publish(topic, payload)

    def run(self) -> RunOutcome:
        try:
            return self._run()
        except ConfigError as exc:
            logger.error("Configuration error: %s", exc)
        except Exception:
            logger.exception("Relay run failed")
        self.session.close()
        return RunOutcome.FAILED

    def _run(self) -> RunOutcome:
        state = self.messenger.registration_state()
        logger.info("Registration state with %s: %s", self.messenger, state.value)

        if state is RegistrationState.UNREGISTERED:
            return self._provision()
        if state is RegistrationState.PARTIALLY_REGISTERED:
            logger.info("Partially registered; try again later")
            return RunOutcome.PARTIALLY_REGISTERED

        local = self.local_connector.connect_and_subscribe()
        if local is None:
            logger.warning("Local MQTT unavailable; relay disabled for this run")
            return RunOutcome.LOCAL_UNAVAILABLE
        self.session.local = local

        self.session.cloud = self.messenger
        if self.messenger.ordering is ConnectOrdering.SELF_SEQUENCING:
            self.messenger.connect()
        else:
            self.messenger.connect_sync()
        self.messenger.subscribe_inbound(local)
        self.messenger.subscribe_config(local)

        local.set_message_handler(self.forward_local)
        logger.info("Relay bridged: %s <-> %s", self.local_connector.url, self.messenger)
        return RunOutcome.BRIDGED

    def _provision(self) -> RunOutcome:
        provisioner = self.provisioner_factory()
        identity = self.identity_loader(provisioner.requires_x509)
        result = provisioner.provision(identity)
        if result.ok:
            # The fresh credentials are picked up by the next invocation
            logger.info("Provisioning complete; cloud relay starts on the next run")
            return RunOutcome.PROVISIONED
        logger.warning(
            "Provisioning failed (%s); will try again on the next run",
            result.failure.value if result.failure else "unknown",
        )
        return RunOutcome.PROVISIONING_FAILED

    def shutdown(self) -> None:
        logger.info("Shutting down relay...")
        self.session.close()
