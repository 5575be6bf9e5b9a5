"""
Device provisioning for Cloud Relay.

Two protocols share one call surface, provision(identity) -> ProvisioningResult:

  http  POST {uuid, balena_service} to PROVISION_URL. A backend creates the
        device in the cloud and pushes the resulting credentials into the
        device's env vars (AZURE_CERT / AZURE_PRIVATE_KEY).
  dps   X.509 registration with the Azure Device Provisioning Service. The
        assigned hub and device id are persisted in the CredentialStore.

Neither retries. A successful result is only acted on by the next run, which
observes the persisted credentials as a registered state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from azure.iot.device import ProvisioningDeviceClient, X509

from cloud_relay.certs import DeviceIdentity, write_pem_pair
from cloud_relay.config import RelayConfig
from cloud_relay.core.credential_store import CredentialStore
from cloud_relay.core.supervisor import SupervisorClient
from cloud_relay.errors import ConfigError, ProvisioningError

logger = logging.getLogger(__name__)

ALREADY_EXISTS_PREFIX = "DeviceAlreadyExistsError"
REQUEST_TIMEOUT_S = 30


class ProvisioningProtocol(str, Enum):
    HTTP = "http"
    DPS = "dps"


class ProvisioningFailure(str, Enum):
    ALREADY_EXISTS = "already_exists"
    REJECTED = "rejected"
    NOT_ASSIGNED = "not_assigned"
    TRANSPORT = "transport"


@dataclass(frozen=True, slots=True)
class ProvisioningResult:
    ok: bool
    assigned_hub: Optional[str] = None
    device_id: Optional[str] = None
    failure: Optional[ProvisioningFailure] = None
    detail: str = ""

    @classmethod
    def success(cls, assigned_hub: Optional[str] = None, device_id: Optional[str] = None, detail: str = "") -> "ProvisioningResult":
        return cls(ok=True, assigned_hub=assigned_hub, device_id=device_id, detail=detail)

    @classmethod
    def failed(cls, failure: ProvisioningFailure, detail: str = "") -> "ProvisioningResult":
        return cls(ok=False, failure=failure, detail=detail)


class Provisioner(Protocol):
    protocol: ProvisioningProtocol
    requires_x509: bool

    def provision(self, identity: DeviceIdentity) -> ProvisioningResult:
        ...


class HttpProvisioner:
    """Registers the device through a provisioning web service."""

    protocol = ProvisioningProtocol.HTTP
    requires_x509 = False

    def __init__(
        self,
        url: str,
        service_name: str,
        supervisor: SupervisorClient,
        *,
        provider_name: str = "azure",
        timeout_s: float = REQUEST_TIMEOUT_S,
    ) -> None:
        self.url = url
        self.service_name = service_name
        self.supervisor = supervisor
        self.provider_name = provider_name
        self.timeout_s = timeout_s

    def _post(self, body: dict) -> tuple[int, str]:
        req = Request(
            self.url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Cache-Control": "no-cache",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout_s) as resp:
                return resp.status, resp.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            # urllib raises for 4xx/5xx; the body still carries the error kind
            return exc.code, exc.read().decode("utf-8", errors="replace")
        except (URLError, OSError) as exc:
            raise ProvisioningError(f"POST {self.url} failed: {exc}") from exc

    def provision(self, identity: DeviceIdentity) -> ProvisioningResult:
        logger.info("Provisioning with cloud provider")
        body = {"uuid": identity.registration_id, "balena_service": self.service_name}
        try:
            status, text = self._post(body)
        except ProvisioningError as exc:
            logger.warning("Provisioning failure: %s", exc)
            return ProvisioningResult.failed(ProvisioningFailure.TRANSPORT, str(exc))

        if 200 <= status < 300:
            logger.info("Provisioned OK: %s %s", status, text)
            return ProvisioningResult.success(detail=text)

        logger.warning("Provisioning failure: %s %s", status, text)
        if text.startswith(ALREADY_EXISTS_PREFIX):
            # The backend has this device, but the supervisor has not delivered the
            # resulting env vars yet. Force a refresh; the next run sees them.
            logger.warning(
                "Device already exists on %s; updating environment vars", self.provider_name
            )
            self.supervisor.request_update()
            return ProvisioningResult.failed(ProvisioningFailure.ALREADY_EXISTS, text)
        return ProvisioningResult.failed(ProvisioningFailure.REJECTED, f"{status} {text}")


class DpsProvisioner:
    """Registers the device's X.509 identity with the Azure Device Provisioning Service."""

    protocol = ProvisioningProtocol.DPS
    requires_x509 = True

    def __init__(self, provisioning_host: str, id_scope: str, store: CredentialStore, certs_dir: Path) -> None:
        self.provisioning_host = provisioning_host
        self.id_scope = id_scope
        self.store = store
        self.certs_dir = certs_dir

    def provision(self, identity: DeviceIdentity) -> ProvisioningResult:
        if not identity.certificate or not identity.private_key:
            raise ConfigError("DPS provisioning requires DEVICE_CERTIFICATE and DEVICE_KEY")

        cert_path, key_path = write_pem_pair(identity.certificate, identity.private_key, self.certs_dir)
        x509 = X509(cert_file=str(cert_path), key_file=str(key_path), pass_phrase=identity.passphrase)

        logger.info(
            "Registering %s with DPS %s (scope %s)",
            identity.registration_id,
            self.provisioning_host,
            self.id_scope,
        )
        client = ProvisioningDeviceClient.create_from_x509_certificate(
            provisioning_host=self.provisioning_host,
            registration_id=identity.registration_id,
            id_scope=self.id_scope,
            x509=x509,
        )
        try:
            result = client.register()
        except Exception as exc:
            logger.error("DPS registration failed: %s", exc)
            return ProvisioningResult.failed(ProvisioningFailure.TRANSPORT, str(exc))

        state = result.registration_state
        if result.status != "assigned" or state is None:
            logger.warning("DPS registration not assigned: status=%s", result.status)
            return ProvisioningResult.failed(ProvisioningFailure.NOT_ASSIGNED, f"status={result.status}")

        self.store.save_connection(state.assigned_hub, state.device_id)
        logger.info("Provisioned OK: hub=%s device=%s", state.assigned_hub, state.device_id)
        return ProvisioningResult.success(state.assigned_hub, state.device_id)


def create_provisioner(
    cfg: RelayConfig,
    *,
    store: CredentialStore,
    supervisor: SupervisorClient,
    certs_dir: Path,
) -> Provisioner:
    """Build the provisioner named by cfg.provision_protocol. Raises ConfigError."""
    protocol = ProvisioningProtocol(cfg.provision_protocol)
    if protocol is ProvisioningProtocol.HTTP:
        return HttpProvisioner(
            cfg.require("provision_url", "PROVISION_URL"),
            cfg.service_name,
            supervisor,
            provider_name=cfg.cloud_provider,
        )
    return DpsProvisioner(
        cfg.provisioning_host,
        cfg.require("provisioning_id_scope", "PROVISIONING_ID_SCOPE"),
        store,
        certs_dir,
    )
