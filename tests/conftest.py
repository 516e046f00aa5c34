from __future__ import annotations

import base64
import json
import logging
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest
import structlog

from akeeba_client.events import EVENTS
from akeeba_client.net import BackupClient, TransportResponse
from akeeba_common.protocol import PADDING, SUCCESS

SITE = "https://example.test/"
SECRET = "s3cr3t"


def wrap_response(data: Any, status: int = SUCCESS, pad: str = "###") -> str:
    """A response as the server writes it: data JSON-encoded into body.data, padded on each side."""
    assert len(pad) == PADDING
    body = {"status": status, "data": json.dumps(data)}
    return pad + json.dumps({"body": body}) + pad


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def ok(data: Any) -> TransportResponse:
    return TransportResponse(status_code=200, content=wrap_response(data).encode())


def raw(content: bytes, status_code: int = 200) -> TransportResponse:
    return TransportResponse(status_code=status_code, content=content)


def sent_call(url: str) -> dict:
    """Inner body of a request url: method, challenge and data."""
    query = parse_qs(urlsplit(url).query)
    outer = json.loads(query["json"][0])
    assert outer["encapsulation"] == 1
    return json.loads(outer["body"])


class ScriptedTransport:
    """Replays canned responses in order and records every url sent."""

    def __init__(self, *responses: TransportResponse):
        self.responses = list(responses)
        self.urls: list[str] = []

    def send(self, url: str) -> TransportResponse:
        self.urls.append(url)
        if not self.responses:
            raise AssertionError(f"unexpected request: {sent_call(url)['method']}")
        return self.responses.pop(0)

    @property
    def calls(self) -> list[dict]:
        return [sent_call(u) for u in self.urls]

    @property
    def methods(self) -> list[str]:
        return [c["method"] for c in self.calls]


class Recorder:
    """Collects (event, payload) pairs from a client."""

    def __init__(self, client: BackupClient):
        self.events: list[tuple[str, dict]] = []
        for name in EVENTS:
            client.on(name, lambda payload, name=name: self.events.append((name, payload)))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def payloads(self, name: str) -> list[dict]:
        return [p for n, p in self.events if n == name]


@pytest.fixture
def make_client():
    def factory(*responses: TransportResponse, **kwargs):
        transport = ScriptedTransport(*responses)
        client = BackupClient(SITE, SECRET, transport=transport, **kwargs)
        return client, transport, Recorder(client)
    return factory


@pytest.fixture(autouse=True)
def quiet_logs():
    """Keep structlog output out of captured stdout."""
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield
    structlog.reset_defaults()
