"""Unit tests for parley.client.api."""

import pytest
import requests

from parley.common import wire
from parley.client import api


class FakeResponse:
    def __init__(self, status_code=200, reason="OK", data=None, text=""):
        self.status_code = status_code
        self.reason = reason
        self.data = data
        self.text = text

    def json(self):
        return self.data


class TestRelayAvailable:
    def test_up(self, monkeypatch):
        urls = []
        def fake_get(url, **kwargs):
            urls.append(url)
            return FakeResponse()
        monkeypatch.setattr(api.requests, "get", fake_get)
        assert api.relay_available("http://relay.example")
        assert urls == ["http://relay.example/health"]

    def test_down(self, monkeypatch):
        def fake_get(url, **kwargs):
            raise requests.exceptions.ConnectionError("refused")
        monkeypatch.setattr(api.requests, "get", fake_get)
        assert not api.relay_available("http://relay.example")

    def test_no_answer(self, monkeypatch):
        def fake_get(url, **kwargs):
            assert kwargs["timeout"]
            raise requests.exceptions.ReadTimeout("no answer in 5 s")
        monkeypatch.setattr(api.requests, "get", fake_get)
        assert not api.relay_available("http://relay.example")

    def test_unhealthy(self, monkeypatch):
        monkeypatch.setattr(api.requests, "get", lambda url, **kwargs: FakeResponse(status_code=503, reason="Service Unavailable"))
        assert not api.relay_available("http://relay.example")


class TestChat:
    def test_chat(self, monkeypatch):
        posted = []
        def fake_post(url, json=None, timeout=None):
            assert timeout is not None
            posted.append((url, json))
            return FakeResponse(data={"content": "Hello", "model": "test-model"})
        monkeypatch.setattr(api.requests, "post", fake_post)
        result = api.chat("http://relay.example", [wire.Turn(role="user", content="hi")])
        assert (result.content, result.model) == ("Hello", "test-model")
        assert posted == [("http://relay.example/api/chat", {"messages": [{"role": "user", "content": "hi"}]})]

    def test_http_error(self, monkeypatch):
        monkeypatch.setattr(api.requests, "post", lambda url, **kwargs: FakeResponse(status_code=500, reason="Internal Server Error"))
        with pytest.raises(RuntimeError, match="HTTP 500"):
            api.chat("http://relay.example", [wire.Turn(role="user", content="hi")])
