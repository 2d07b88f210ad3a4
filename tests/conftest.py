# conftest.py
import os
import sys
from typing import Callable, List

import httpx
import pytest
import pytest_asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from proxy_core import ProxyServer
from structures import ProxyConfig, ProxyMode
from verify_certs import CertManager

from proxy_helpers import running_server

class RecordingCallback:
    """Collects (level, payload) pairs emitted by the proxy."""
    def __init__(self):
        self.records: List[tuple] = []

    def __call__(self, level, payload):
        self.records.append((level, payload))

    def of(self, level):
        return [p for lvl, p in self.records if lvl == level]

@pytest.fixture
def callback():
    return RecordingCallback()

@pytest.fixture
def outbound():
    """
    Deterministic outbound transport. Tests set `outbound.handler`;
    every request the proxy sends is appended to `outbound.requests`.
    """
    class Outbound:
        def __init__(self):
            self.requests: List[httpx.Request] = []
            self.handler: Callable[[httpx.Request], httpx.Response] = (
                lambda request: httpx.Response(200, content=b"ok")
            )

        def __call__(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return self.handler(request)

    return Outbound()

@pytest.fixture
def cert_manager(tmp_path):
    return CertManager(
        ca_cert_path=str(tmp_path / "ca.pem"),
        ca_key_path=str(tmp_path / "ca.key"),
        certs_dir=str(tmp_path / "certs"),
    )

@pytest.fixture
def make_proxy(outbound, callback):
    def _make(mode=ProxyMode.NORMAL, ssl_context_factory=None, **config_overrides):
        config = ProxyConfig(mode=mode, **config_overrides)
        client = httpx.AsyncClient(transport=httpx.MockTransport(outbound))
        return ProxyServer(
            config, ssl_context_factory=ssl_context_factory,
            manager_callback=callback, client=client
        )
    return _make

@pytest_asyncio.fixture
async def proxy_addr(make_proxy):
    """A Normal-mode proxy listening on an ephemeral loopback port."""
    proxy = make_proxy(tunnel_close_grace=1.0)
    async with running_server(proxy.handle_connection) as addr:
        yield addr
    await proxy.aclose()
