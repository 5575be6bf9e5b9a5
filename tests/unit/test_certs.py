from __future__ import annotations

import base64
import stat

import pytest

from cloud_relay.certs import (
    CERT_BEGIN,
    CERT_END,
    KEY_BEGIN,
    KEY_END,
    certificate_from_fragments,
    decode_base64_pem,
    load_device_identity,
    pem_from_fragments,
    private_key_from_fragments,
    write_pem_pair,
)
from cloud_relay.config import load_config
from cloud_relay.errors import ConfigError


def test_certificate_fragments_are_wrapped_in_order():
    pem = certificate_from_fragments("MIIBaa bbCCdd eeFF==")

    assert pem.splitlines() == [CERT_BEGIN, "MIIBaa", "bbCCdd", "eeFF==", CERT_END]


def test_private_key_uses_encrypted_key_markers():
    pem = private_key_from_fragments("AAAA BBBB")

    assert pem == "\n".join([KEY_BEGIN, "AAAA", "BBBB", KEY_END])


@pytest.mark.parametrize("raw", ["x", "a b c d", "MIIB+/= q==", ""])
def test_reconstruction_is_deterministic(raw: str):
    first = pem_from_fragments(raw, "-----BEGIN X-----", "-----END X-----")
    second = pem_from_fragments(raw, "-----BEGIN X-----", "-----END X-----")

    assert first == second
    assert first.startswith("-----BEGIN X-----\n")
    assert first.endswith("\n-----END X-----")


def test_malformed_fragments_are_not_validated():
    # garbage in, garbage PEM out: the TLS layer reports it
    pem = certificate_from_fragments("not base64 !!")
    assert "not" in pem.splitlines()


def test_decode_base64_pem_round_trips_text():
    text = "-----BEGIN CERTIFICATE-----\nabc\n-----END CERTIFICATE-----\n"
    encoded = base64.b64encode(text.encode()).decode()

    assert decode_base64_pem(encoded, name="AZURE_CERT") == text


def test_decode_base64_pem_rejects_garbage():
    with pytest.raises(ConfigError) as exc:
        decode_base64_pem("@@not-base64@@", name="AZURE_CERT")
    assert "AZURE_CERT" in str(exc.value)


def test_load_device_identity_from_fragments(mock_env, clean_env):
    clean_env.setenv("DEVICE_CERTIFICATE", "CERT1 CERT2")
    clean_env.setenv("DEVICE_KEY", "KEY1 KEY2")
    cfg = load_config(dotenv_enabled=False)

    identity = load_device_identity(cfg)

    assert identity.registration_id == mock_env["RESIN_DEVICE_UUID"]
    assert identity.certificate == certificate_from_fragments("CERT1 CERT2")
    assert identity.private_key == private_key_from_fragments("KEY1 KEY2")
    assert identity.passphrase == "123123"


def test_load_device_identity_requires_fragments(mock_env):
    cfg = load_config(dotenv_enabled=False)

    with pytest.raises(ConfigError) as exc:
        load_device_identity(cfg)
    assert "DEVICE_CERTIFICATE" in str(exc.value)


def test_load_device_identity_without_x509(mock_env):
    cfg = load_config(dotenv_enabled=False)

    identity = load_device_identity(cfg, require_x509=False)

    assert identity.registration_id == mock_env["RESIN_DEVICE_UUID"]
    assert identity.certificate is None
    assert identity.private_key is None


def test_write_pem_pair_is_owner_only(tmp_path):
    cert_path, key_path = write_pem_pair("CERT", "KEY", tmp_path / "certs", stem="dev")

    assert cert_path.read_text() == "CERT"
    assert key_path.read_text() == "KEY"
    assert cert_path.name == "dev-cert.pem"
    for path in (cert_path, key_path):
        assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_write_pem_pair_overwrites(tmp_path):
    write_pem_pair("OLD", "OLD", tmp_path)
    cert_path, key_path = write_pem_pair("NEW-CERT", "NEW-KEY", tmp_path)

    assert cert_path.read_text() == "NEW-CERT"
    assert key_path.read_text() == "NEW-KEY"
