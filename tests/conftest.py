"""
Pytest configuration and shared fixtures
"""
import os
import sys
import pytest
from unittest.mock import MagicMock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


RELAY_ENV_KEYS = [
    'CLOUD_PROVIDER',
    'PROVISION_PROTOCOL',
    'BALENA_DEVICE_UUID',
    'RESIN_DEVICE_UUID',
    'BALENA_SERVICE_NAME',
    'RESIN_SERVICE_NAME',
    'PROVISION_URL',
    'BALENA_SUPERVISOR_ADDRESS',
    'BALENA_SUPERVISOR_API_KEY',
    'RESIN_SUPERVISOR_ADDRESS',
    'RESIN_SUPERVISOR_API_KEY',
    'LOCAL_MQTT_HOST',
    'LOCAL_MQTT_PORT',
    'RELAY_LOCAL_RETRIES',
    'RELAY_LOCAL_RETRY_DELAY_S',
    'AZURE_HUB_HOST',
    'AZURE_CERT',
    'AZURE_PRIVATE_KEY',
    'DEVICE_CERTIFICATE',
    'DEVICE_KEY',
    'DEVICE_KEY_PASSPHRASE',
    'PROVISIONING_HOST',
    'PROVISIONING_ID_SCOPE',
    'RELAY_BASE_DIR',
    'RELAY_LOG_LEVEL',
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every variable the relay reads"""
    for key in RELAY_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def mock_env(clean_env):
    """Set up a minimal device environment"""
    env_vars = {
        'RESIN_DEVICE_UUID': 'a1b2c3d4e5f6',
        'RESIN_SERVICE_NAME': 'cloud-relay',
        'PROVISION_URL': 'https://provision.example.test/register',
        'BALENA_SUPERVISOR_ADDRESS': 'http://127.0.0.1:48484',
        'BALENA_SUPERVISOR_API_KEY': 'super-key',
    }

    for key, value in env_vars.items():
        clean_env.setenv(key, value)

    return env_vars


@pytest.fixture
def relay_paths(tmp_path):
    """Point the global Paths at a temp base directory"""
    from cloud_relay.paths import build_paths, ensure_dirs, reset_paths, set_paths

    paths = build_paths(tmp_path / "relay")
    ensure_dirs(paths)
    set_paths(paths)
    yield paths
    reset_paths()


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.subscribe.return_value = (0, 1)  # (rc, mid)
    fake.publish.return_value = MagicMock(rc=0)

    def _ctor(*args, **kwargs):
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


@pytest.fixture
def local_publisher():
    """Stands in for a LocalBrokerHandle"""
    local = MagicMock()
    local.publish.return_value = MagicMock(rc=0)
    return local
