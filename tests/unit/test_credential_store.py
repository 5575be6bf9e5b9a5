from __future__ import annotations

import json
import stat

import pytest

from cloud_relay.core.credential_store import (
    CredentialStore,
    build_connection_string,
    parse_connection_string,
)
from cloud_relay.errors import CredentialStoreError


@pytest.fixture
def store(tmp_path):
    return CredentialStore(str(tmp_path / "data" / "creds.json"))


def test_missing_file_loads_empty(store):
    assert store.load() == {}
    assert store.connection_fields() == {"HostName": None, "DeviceId": None}


def test_save_connection_persists_connection_string(store):
    conn = store.save_connection("hub.azure-devices.net", "dev-01")

    assert conn == "HostName=hub.azure-devices.net;DeviceId=dev-01;x509=true"
    on_disk = json.loads(store.path.read_text())
    assert on_disk["connection_string"] == conn
    assert on_disk["assigned_hub"] == "hub.azure-devices.net"
    assert on_disk["device_id"] == "dev-01"
    assert "provisioned_ts" in on_disk
    assert stat.S_IMODE(store.path.stat().st_mode) == 0o600


def test_saved_connection_visible_to_a_fresh_store(store):
    store.save_connection("hub.azure-devices.net", "dev-01")

    fresh = CredentialStore(str(store.path))
    fresh.load()

    assert fresh.connection_fields() == {"HostName": "hub.azure-devices.net", "DeviceId": "dev-01"}


def test_get_cached_loads_lazily(store):
    store.save_connection("hub", "dev")
    fresh = CredentialStore(str(store.path))

    assert fresh.get_cached()["device_id"] == "dev"


def test_corrupted_file_loads_empty(store):
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text("{not json")

    assert store.load() == {}


def test_unknown_keys_are_ignored_on_load(store):
    store.path.parent.mkdir(parents=True, exist_ok=True)
    store.path.write_text(json.dumps({"connection_string": "HostName=h;DeviceId=d", "extra": 1}))

    assert store.load() == {}


def test_save_rejects_invalid_values(store):
    with pytest.raises(CredentialStoreError):
        store.save({"connection_string": 42})
    with pytest.raises(CredentialStoreError):
        store.save({"password": "x"})


def test_partial_connection_string(store):
    store.save({"connection_string": "HostName=hub.azure-devices.net"})

    assert store.connection_fields() == {"HostName": "hub.azure-devices.net", "DeviceId": None}


def test_connection_string_helpers():
    conn = build_connection_string("h", "d")
    assert parse_connection_string(conn) == {"HostName": "h", "DeviceId": "d", "x509": "true"}
    assert parse_connection_string("") == {}
    assert parse_connection_string("garbage;=x;DeviceId=d") == {"DeviceId": "d"}
