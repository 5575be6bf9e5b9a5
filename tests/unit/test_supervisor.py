from __future__ import annotations

import io
import json
from urllib.error import HTTPError, URLError

import pytest

import cloud_relay.core.supervisor as sup
from cloud_relay.core.supervisor import SupervisorClient


class FakeResponse:
    def __init__(self, status: int, body: bytes = b""):
        self.status = status
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def captured(monkeypatch):
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append(req)
        return FakeResponse(200)

    monkeypatch.setattr(sup, "urlopen", fake_urlopen)
    return calls


def test_request_update_posts_force(captured):
    client = SupervisorClient("http://127.0.0.1:48484/", "k3y")

    assert client.request_update() is True

    assert len(captured) == 1
    req = captured[0]
    assert req.full_url == "http://127.0.0.1:48484/v1/update?apikey=k3y"
    assert req.get_method() == "POST"
    assert json.loads(req.data) == {"force": True}
    assert req.get_header("Content-type") == "application/json"


def test_request_update_without_address_is_skipped(captured):
    assert SupervisorClient(None, "k").request_update() is False
    assert SupervisorClient("http://sup", None).request_update() is False
    assert captured == []


def test_request_update_http_error_returns_false(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise HTTPError(req.full_url, 401, "Unauthorized", {}, io.BytesIO(b""))

    monkeypatch.setattr(sup, "urlopen", fake_urlopen)

    assert SupervisorClient("http://sup", "bad").request_update() is False


def test_request_update_network_error_returns_false(monkeypatch):
    def fake_urlopen(req, timeout=None):
        raise URLError("connection refused")

    monkeypatch.setattr(sup, "urlopen", fake_urlopen)

    assert SupervisorClient("http://sup", "k").request_update() is False


def test_api_key_is_url_quoted():
    client = SupervisorClient("http://sup", "a/b c")
    assert client.update_url() == "http://sup/v1/update?apikey=a%2Fb%20c"
