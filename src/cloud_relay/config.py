"""
Cloud Relay configuration.

Single source for runtime configuration. Values come from environment variables,
optionally loaded from standard env files.

Priority (lowest -> highest):
1) /etc/cloud-relay/relay.env (system install)
2) ~/.config/cloud-relay/.env (user install)
3) ./.env (project override)
4) process environment variables (always win)

On balena devices the supervisor injects device variables (RESIN_/BALENA_ prefixed
identity, provisioning outputs such as AZURE_CERT) straight into the process env.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as _pkg_version
from pathlib import Path
from typing import Iterable, Optional

from dotenv import load_dotenv

from cloud_relay.errors import ConfigError

__all__ = ["ConfigError", "RelayConfig", "load_config"]

PROVIDERS = ("azure", "azure-mqtt")
PROVISION_PROTOCOLS = ("http", "dps")

# Where each provider reads its credentials from: env vars set by the HTTP
# backend, or the DPS assignment in the credential store
PROVIDER_PROTOCOLS = {"azure": "http", "azure-mqtt": "dps"}

DEFAULT_PROVISIONING_HOST = "global.azure-devices-provisioning.net"
DEFAULT_KEY_PASSPHRASE = "123123"


def _package_version() -> str:
    try:
        return _pkg_version("cloud-relay")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _env_paths() -> Iterable[Path]:
    # 1) system install
    yield Path("/etc/cloud-relay/relay.env")

    # 2) user config dir
    if sys.platform == "win32":
        base = Path(os.environ.get("APPDATA", str(Path.home())))
    else:
        base = Path(os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config")))
    yield base / "cloud-relay" / ".env"

    # 3) project override
    yield Path(".env")


def _optional_env(*keys: str) -> Optional[str]:
    """First non-empty value among keys (e.g. BALENA_ name, then legacy RESIN_ name)."""
    for key in keys:
        v = os.getenv(key)
        if v:
            return v
    return None


def _require_env(*keys: str) -> str:
    v = _optional_env(*keys)
    if v is None:
        raise ConfigError(f"Missing required environment variable: {' or '.join(keys)}")
    return v


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}") from exc


def _parse_choice(key: str, raw: str, choices: tuple[str, ...]) -> str:
    value = raw.strip().lower()
    if value not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}; got {raw!r}")
    return value


@dataclass(frozen=True, slots=True)
class RelayConfig:
    cloud_provider: str
    provision_protocol: str
    device_uuid: str
    service_name: str
    local_mqtt_host: str
    local_mqtt_port: int
    local_retries: int
    local_retry_delay_s: float
    version: str
    provision_url: Optional[str] = None
    supervisor_address: Optional[str] = None
    supervisor_api_key: Optional[str] = None
    azure_hub_host: Optional[str] = None
    azure_cert: Optional[str] = None
    azure_private_key: Optional[str] = None
    device_certificate: Optional[str] = None
    device_key: Optional[str] = None
    device_key_passphrase: str = DEFAULT_KEY_PASSPHRASE
    provisioning_host: str = DEFAULT_PROVISIONING_HOST
    provisioning_id_scope: Optional[str] = None

    def require(self, field: str, env_name: str) -> str:
        """Return a variant-specific value or raise ConfigError naming its env var."""
        value = getattr(self, field)
        if not value:
            raise ConfigError(f"Missing required environment variable: {env_name}")
        return value


def load_config(*, dotenv_enabled: bool = True) -> RelayConfig:
    """
    Load config by reading env files and then validating environment variables.

    Only the device identity is required up front; values tied to one provider
    or provisioning protocol are checked when that variant is used.

    Returns an immutable RelayConfig. Raises ConfigError on failure.
    """
    if dotenv_enabled:
        for p in _env_paths():
            if p.is_file():
                # do not override existing env vars; later files can fill missing
                load_dotenv(p, override=False)

    cloud_provider = _parse_choice(
        "CLOUD_PROVIDER", os.getenv("CLOUD_PROVIDER") or "azure", PROVIDERS
    )
    provision_protocol = _parse_choice(
        "PROVISION_PROTOCOL",
        os.getenv("PROVISION_PROTOCOL") or PROVIDER_PROTOCOLS[cloud_provider],
        PROVISION_PROTOCOLS,
    )
    if provision_protocol != PROVIDER_PROTOCOLS[cloud_provider]:
        raise ConfigError(
            f"PROVISION_PROTOCOL={provision_protocol} cannot register a {cloud_provider} device; "
            f"{cloud_provider} requires {PROVIDER_PROTOCOLS[cloud_provider]}"
        )

    device_uuid = _require_env("BALENA_DEVICE_UUID", "RESIN_DEVICE_UUID")
    service_name = _optional_env("BALENA_SERVICE_NAME", "RESIN_SERVICE_NAME") or ""

    local_mqtt_host = os.getenv("LOCAL_MQTT_HOST") or "127.0.0.1"
    local_mqtt_port = _parse_int("LOCAL_MQTT_PORT", os.getenv("LOCAL_MQTT_PORT") or "1883")
    if not (1 <= local_mqtt_port <= 65535):
        raise ConfigError(f"LOCAL_MQTT_PORT out of range: {local_mqtt_port}")

    local_retries = _parse_int("RELAY_LOCAL_RETRIES", os.getenv("RELAY_LOCAL_RETRIES") or "3")
    if local_retries < 1:
        raise ConfigError("RELAY_LOCAL_RETRIES must be >= 1")

    delay_raw = os.getenv("RELAY_LOCAL_RETRY_DELAY_S") or "5"
    try:
        local_retry_delay_s = float(delay_raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for RELAY_LOCAL_RETRY_DELAY_S: {delay_raw!r}") from exc
    if local_retry_delay_s < 0:
        raise ConfigError("RELAY_LOCAL_RETRY_DELAY_S must be >= 0")

    return RelayConfig(
        cloud_provider=cloud_provider,
        provision_protocol=provision_protocol,
        device_uuid=device_uuid,
        service_name=service_name,
        local_mqtt_host=local_mqtt_host,
        local_mqtt_port=local_mqtt_port,
        local_retries=local_retries,
        local_retry_delay_s=local_retry_delay_s,
        version=_package_version(),
        provision_url=_optional_env("PROVISION_URL"),
        supervisor_address=_optional_env("BALENA_SUPERVISOR_ADDRESS", "RESIN_SUPERVISOR_ADDRESS"),
        supervisor_api_key=_optional_env("BALENA_SUPERVISOR_API_KEY", "RESIN_SUPERVISOR_API_KEY"),
        azure_hub_host=_optional_env("AZURE_HUB_HOST"),
        azure_cert=_optional_env("AZURE_CERT"),
        azure_private_key=_optional_env("AZURE_PRIVATE_KEY"),
        device_certificate=_optional_env("DEVICE_CERTIFICATE"),
        device_key=_optional_env("DEVICE_KEY"),
        device_key_passphrase=_optional_env("DEVICE_KEY_PASSPHRASE") or DEFAULT_KEY_PASSPHRASE,
        provisioning_host=_optional_env("PROVISIONING_HOST") or DEFAULT_PROVISIONING_HOST,
        provisioning_id_scope=_optional_env("PROVISIONING_ID_SCOPE"),
    )
