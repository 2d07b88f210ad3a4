# tests/test_tunnel_mitm.py
import asyncio
import ssl

import httpx
import pytest
import pytest_asyncio

from proxy_core import ProxyServer
from structures import ProxyConfig, ProxyMode
from proxy_helpers import header, read_head, read_response, running_server, send

@pytest_asyncio.fixture
async def mitm_addr(make_proxy, cert_manager):
    proxy = make_proxy(mode=ProxyMode.MITM, ssl_context_factory=cert_manager.get_context_for_host)
    async with running_server(proxy.handle_connection) as addr:
        yield addr
    await proxy.aclose()

async def _open_intercepted(addr, cert_manager, authority: str, sni: str):
    reader, writer = await asyncio.open_connection(*addr)
    await send(writer, f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode())
    status, _ = await read_head(reader)
    assert status == 200
    client_ctx = ssl.create_default_context(cafile=cert_manager.ca_cert_path)
    await asyncio.wait_for(writer.start_tls(client_ctx, server_hostname=sni), timeout=5)
    return reader, writer

@pytest.mark.asyncio
async def test_intercepted_request_reaches_real_origin(mitm_addr, cert_manager, outbound):
    outbound.handler = lambda req: httpx.Response(
        200, headers=[("X-Origin", "1"), ("X-Origin", "2")], content=b"secret page"
    )
    reader, writer = await _open_intercepted(mitm_addr, cert_manager, "secure.example:443", "secure.example")

    await send(writer, (
        b"GET /account?id=7 HTTP/1.1\r\n"
        b"Host: secure.example\r\n"
        b"Proxy-Connection: keep-alive\r\n"
        b"Accept-Encoding: gzip, br\r\n\r\n"
    ))
    status, headers, body = await read_response(reader)
    writer.close()

    assert status == 200
    assert body == b"secret page"
    assert header(headers, "x-origin") == ["1", "2"]
    sent = outbound.requests[0]
    assert str(sent.url) == "https://secure.example/account?id=7"
    assert "proxy-connection" not in sent.headers
    assert "br" not in sent.headers.get("accept-encoding", "")

@pytest.mark.asyncio
async def test_non_default_port_kept_in_origin(mitm_addr, cert_manager, outbound):
    reader, writer = await _open_intercepted(mitm_addr, cert_manager, "api.example:8443", "api.example")
    await send(writer, b"POST /v1 HTTP/1.1\r\nHost: api.example:8443\r\nContent-Length: 2\r\n\r\n{}")
    status, _, _ = await read_response(reader)
    writer.close()

    assert status == 200
    assert str(outbound.requests[0].url) == "https://api.example:8443/v1"
    assert outbound.requests[0].content == b"{}"

@pytest.mark.asyncio
async def test_inner_requests_get_fresh_increasing_sessions(mitm_addr, cert_manager, outbound, callback):
    reader, writer = await _open_intercepted(mitm_addr, cert_manager, "secure.example:443", "secure.example")
    for path in (b"/a", b"/b", b"/c"):
        await send(writer, b"GET " + path + b" HTTP/1.1\r\nHost: secure.example\r\n\r\n")
        status, _, _ = await read_response(reader)
        assert status == 200
    writer.close()
    await writer.wait_closed()
    await asyncio.sleep(0.2)

    requests = [e for e in callback.of("EVENT") if e.kind == "request"]
    tunnels = [e for e in callback.of("EVENT") if e.kind == "tunnel"]
    ids = [e.session_id for e in requests]
    assert len(ids) == 3
    assert ids == sorted(ids) and len(set(ids)) == 3
    assert tunnels and tunnels[-1].outcome == "closed"
    assert tunnels[-1].session_id < ids[0]
    assert [str(r.url) for r in outbound.requests] == [
        "https://secure.example/a", "https://secure.example/b", "https://secure.example/c"
    ]

@pytest.mark.asyncio
async def test_nested_connect_rejected(mitm_addr, cert_manager, outbound):
    reader, writer = await _open_intercepted(mitm_addr, cert_manager, "secure.example:443", "secure.example")
    await send(writer, b"CONNECT other.example:443 HTTP/1.1\r\nHost: other.example:443\r\n\r\n")
    status, _, body = await read_response(reader)
    writer.close()

    assert status == 500
    assert b"proxy server" in body
    assert outbound.requests == []

@pytest.mark.asyncio
async def test_forgery_failure_aborts_handshake(make_proxy, cert_manager, callback):
    def broken_factory(hostname):
        raise RuntimeError("CA offline")

    proxy = make_proxy(mode=ProxyMode.MITM, ssl_context_factory=broken_factory)
    async with running_server(proxy.handle_connection) as addr:
        reader, writer = await asyncio.open_connection(*addr)
        await send(writer, b"CONNECT secure.example:443 HTTP/1.1\r\nHost: secure.example:443\r\n\r\n")
        status, _ = await read_head(reader)
        assert status == 200

        client_ctx = ssl.create_default_context(cafile=cert_manager.ca_cert_path)
        with pytest.raises(OSError):
            await asyncio.wait_for(writer.start_tls(client_ctx, server_hostname="secure.example"), timeout=5)
        writer.close()
    await proxy.aclose()

    failed = [e for e in callback.of("EVENT") if e.kind == "tunnel"]
    assert failed[-1].outcome == "handshake_failed"
    assert "CA offline" in failed[-1].error

@pytest.mark.asyncio
async def test_untrusted_client_drops_tunnel(mitm_addr, callback):
    reader, writer = await asyncio.open_connection(*mitm_addr)
    await send(writer, b"CONNECT secure.example:443 HTTP/1.1\r\nHost: secure.example:443\r\n\r\n")
    status, _ = await read_head(reader)
    assert status == 200

    # Default trust store does not know the proxy CA.
    with pytest.raises(ssl.SSLError):
        await asyncio.wait_for(
            writer.start_tls(ssl.create_default_context(), server_hostname="secure.example"), timeout=5
        )
    writer.close()
    await asyncio.sleep(0.2)

    failed = [e for e in callback.of("EVENT") if e.kind == "tunnel"]
    assert failed and failed[-1].outcome == "handshake_failed"

def test_mitm_mode_requires_certificate_factory():
    with pytest.raises(ValueError):
        ProxyServer(ProxyConfig(mode=ProxyMode.MITM), client=httpx.AsyncClient())

@pytest.mark.asyncio
async def test_absolute_form_inner_request_pinned_to_tunnel_origin(mitm_addr, cert_manager, outbound):
    reader, writer = await _open_intercepted(mitm_addr, cert_manager, "secure.example:443", "secure.example")
    await send(writer, b"GET http://other.example/steal?x=1 HTTP/1.1\r\nHost: other.example\r\n\r\n")
    status, _, _ = await read_response(reader)
    writer.close()

    assert status == 200
    assert [str(r.url) for r in outbound.requests] == ["https://secure.example/steal?x=1"]
