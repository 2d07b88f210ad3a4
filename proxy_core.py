#Filename: proxy_core.py
"""
ASYNC PROXY CORE
Dispatcher, Forwarding Engine and Tunnel Engine for the forward proxy.

- Plain requests with an absolute URI are sanitized and forwarded through a
  shared, pooled httpx.AsyncClient; responses are streamed back to the client.
- CONNECT requests are either spliced byte-for-byte (Normal mode) or
  terminated with a forged certificate (MITM mode), in which case every
  decrypted request re-enters the same dispatch/forward path.
"""

import asyncio
import ssl
import time
from typing import Awaitable, Callable, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from structures import (
    NON_SUPPORT_MESSAGE, OUTBOUND_ACCEPT_ENCODING, RESPONSE_FRAMING_HEADERS,
    TRANSPORT_DECODED_ENCODINGS, Headers, ProxyConfig, ProxyEvent, ProxyMode,
    ProxyRequest, RequestContext, TunnelSession
)
from proxy_common import (
    BaseProxyHandler, ClientProtocolError, CertificateForgeryError, ConnectionPair,
    ManagerCallback, PayloadTooLargeError, SessionAllocator, StreamingError,
    TunnelEstablishError, UpstreamDialError, UpstreamRoundTripError,
    COMPACTION_THRESHOLD, CONNECT_ESTABLISHED, MAX_HEADER_LIST_SIZE, READ_CHUNK_SIZE,
    RELAY_CHUNK_SIZE, STRICT_HEADER_PATTERN,
    copy_headers, format_headers, log_to_logger, remove_proxy_related_headers
)

SslContextFactory = Callable[[str], ssl.SSLContext]
NonSupportHandler = Callable[['Http11ProxyHandler', RequestContext], Awaitable[None]]

async def reject_non_proxy_request(handler: 'Http11ProxyHandler', ctx: RequestContext) -> None:
    """Default non-support handler: the client talked to us like an origin server."""
    handler.log("ERROR", f"[Session: {ctx.session_id}] Rejected non-proxy request: {ctx.request.target}")
    await handler.send_error(500, "Internal Server Error", NON_SUPPORT_MESSAGE)

def build_outbound_client(config: ProxyConfig) -> httpx.AsyncClient:
    """
    Creates the pooled transport shared by every forwarding call.
    Environment proxies are ignored so the proxy never loops back into itself.
    """
    verify: object
    if not config.upstream_verify_ssl:
        verify = False
    elif config.upstream_ca_bundle:
        verify = ssl.create_default_context(cafile=config.upstream_ca_bundle)
    else:
        verify = True
    return httpx.AsyncClient(
        verify=verify,
        timeout=httpx.Timeout(config.upstream_timeout, connect=config.dial_timeout),
        follow_redirects=False,
        trust_env=False
    )

class ProxyServer:
    """
    Long-lived proxy configuration: session counter, outbound transport,
    non-support handler and tunnel mode. One instance serves every connection.
    """
    __slots__ = (
        'config', 'mode', 'sessions', 'client', 'non_support_handler',
        'ssl_context_factory', 'callback'
    )

    def __init__(
        self,
        config: Optional[ProxyConfig] = None,
        ssl_context_factory: Optional[SslContextFactory] = None,
        manager_callback: Optional[ManagerCallback] = None,
        client: Optional[httpx.AsyncClient] = None,
        non_support_handler: Optional[NonSupportHandler] = None
    ) -> None:
        self.config = config or ProxyConfig()
        self.mode = self.config.mode
        if self.mode is ProxyMode.MITM and ssl_context_factory is None:
            raise ValueError("MITM mode requires an ssl_context_factory")
        self.ssl_context_factory = ssl_context_factory
        self.sessions = SessionAllocator()
        self.client = client if client is not None else build_outbound_client(self.config)
        self.non_support_handler = non_support_handler or reject_non_proxy_request
        self.callback = manager_callback or log_to_logger

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Entry point for asyncio.start_server."""
        await Http11ProxyHandler(reader, writer, self).run()

    async def aclose(self) -> None:
        """Releases pooled outbound connections."""
        await self.client.aclose()

class Http11ProxyHandler(BaseProxyHandler):
    """
    Handles one client connection: parses HTTP/1.1 requests, dispatches them,
    and owns the tunnel state machine for CONNECT.
    When `tunnel` is set the handler is running inside a decrypted MITM
    channel and relative request targets resolve against the tunnel target.
    """
    __slots__ = (
        'reader', 'writer', 'server', 'tunnel', 'buffer',
        '_buffer_offset', '_previous_byte_was_cr'
    )

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        server: ProxyServer,
        tunnel: Optional[TunnelSession] = None,
        initial_data: bytes = b""
    ):
        raw_addr = writer.get_extra_info('peername')
        client_addr = (
            (str(raw_addr[0]), int(raw_addr[1]))
            if isinstance(raw_addr, tuple) and len(raw_addr) >= 2 else None
        )
        super().__init__(server.callback, client_addr)
        self.reader = reader
        self.writer = writer
        self.server = server
        self.tunnel = tunnel
        self.buffer = bytearray(initial_data)
        self._buffer_offset = 0
        self._previous_byte_was_cr = False

    @property
    def config(self) -> ProxyConfig:
        return self.server.config

    @property
    def tunnel_host(self) -> Optional[Tuple[str, int]]:
        return (self.tunnel.host, self.tunnel.port) if self.tunnel else None

    # -- Framing --

    async def _fill(self) -> bool:
        """Reads more bytes into the buffer. Returns False at EOF."""
        if (
            self._buffer_offset > COMPACTION_THRESHOLD
            and self._buffer_offset > (len(self.buffer) // 2)
        ):
            del self.buffer[:self._buffer_offset]
            self._buffer_offset = 0
        try:
            data = await asyncio.wait_for(
                self.reader.read(READ_CHUNK_SIZE), timeout=self.config.idle_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ClientProtocolError("Read Timeout (Idle)") from exc
        if not data:
            return False
        self.buffer.extend(data)
        return True

    async def _read_strict_line(self) -> Optional[bytes]:
        """
        Reads a single line from the buffer/stream, strictly adhering to RFC limits.
        Returns None on a clean EOF.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index == -1:
                pending = len(self.buffer) - self._buffer_offset
                if pending > 0:
                    self._previous_byte_was_cr = self.buffer[-1] == 0x0D
                if pending > MAX_HEADER_LIST_SIZE:
                    raise ClientProtocolError("Header Line Exceeded Max Length")
                if not await self._fill():
                    if len(self.buffer) - self._buffer_offset > 0:
                        raise ClientProtocolError("Incomplete message")
                    return None
                continue

            if lf_index - self._buffer_offset > MAX_HEADER_LIST_SIZE:
                raise ClientProtocolError("Header Line Exceeded Max Length")

            is_crlf = False
            if lf_index > self._buffer_offset:
                is_crlf = self.buffer[lf_index - 1] == 0x0D
            elif self._previous_byte_was_cr:
                is_crlf = True

            line_end = lf_index - 1 if is_crlf else lf_index
            line = bytes(self.buffer[self._buffer_offset:line_end]) if line_end > self._buffer_offset else b""
            self._buffer_offset = lf_index + 1
            self._previous_byte_was_cr = False
            return line

    async def _read_bytes(self, n: int) -> bytes:
        """Reads exactly n bytes from the stream."""
        if n > self.config.max_request_body:
            raise PayloadTooLargeError(f"Content-Length {n} exceeds limit.")
        while (len(self.buffer) - self._buffer_offset) < n:
            if not await self._fill():
                raise ClientProtocolError("Incomplete read")
        chunk = bytes(self.buffer[self._buffer_offset:self._buffer_offset + n])
        self._buffer_offset += n
        return chunk

    async def _read_chunked_body(self) -> bytes:
        """Reads a chunked HTTP body, discarding trailers."""
        parts = []
        total = 0
        while True:
            line = await self._read_strict_line()
            if line is None:
                raise ClientProtocolError("Incomplete chunked body")
            if b';' in line:
                line, _ = line.split(b';', 1)
            try:
                size = int(line.strip(), 16)
            except ValueError as exc:
                raise ClientProtocolError("Invalid chunk size") from exc
            if size == 0:
                while True:
                    trailer = await self._read_strict_line()
                    if not trailer:
                        break
                break
            total += size
            if total > self.config.max_request_body:
                raise PayloadTooLargeError(f"Chunked body exceeded {self.config.max_request_body} bytes.")
            parts.append(await self._read_bytes(size))
            await self._read_strict_line()
        return b"".join(parts)

    def _take_buffered(self) -> bytes:
        """Returns (and forgets) bytes already read past the current request."""
        rem = bytes(self.buffer[self._buffer_offset:])
        del self.buffer[:]
        self._buffer_offset = 0
        return rem

    async def _read_request(self) -> Optional[ProxyRequest]:
        """Parses one request (line, headers and body). None on clean EOF."""
        line = await self._read_strict_line()
        while line == b"":
            # Tolerate stray CRLF between pipelined requests.
            line = await self._read_strict_line()
        if line is None:
            return None

        parts = line.split(b' ')
        if len(parts) != 3:
            raise ClientProtocolError("Malformed Request Line")
        try:
            method, target, version = (p.decode('ascii') for p in parts)
        except UnicodeDecodeError as exc:
            raise ClientProtocolError("Malformed Request Line") from exc
        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise ClientProtocolError(f"Unsupported protocol version {version}")

        headers: Headers = []
        header_bytes = 0
        while True:
            h_line = await self._read_strict_line()
            if h_line is None:
                raise ClientProtocolError("Incomplete message")
            if not h_line:
                break
            header_bytes += len(h_line)
            if header_bytes > MAX_HEADER_LIST_SIZE:
                raise ClientProtocolError("Header List Exceeded Max Size")
            if h_line[0] in (0x20, 0x09):
                raise ClientProtocolError("Obsolete Line Folding Rejected")
            match = STRICT_HEADER_PATTERN.match(h_line)
            if not match:
                raise ClientProtocolError("Invalid Header Syntax")
            headers.append((match.group(1).decode('ascii'), match.group(2).decode('latin-1').strip()))

        request = ProxyRequest(method, target, version, headers)
        if method == 'CONNECT':
            return request

        te = request.get_header('transfer-encoding')
        cl = request.get_header('content-length')
        if te:
            enc = [e.strip().lower() for e in te.split(',')]
            if enc[-1] != 'chunked':
                raise ClientProtocolError("Bad Transfer-Encoding")
            request.del_header('content-length')
        elif cl:
            try:
                length = int(cl)
                if length < 0:
                    raise ValueError
            except ValueError as exc:
                raise ClientProtocolError("Invalid Content-Length") from exc

        expect = (request.get_header('expect') or '').lower()
        if expect == '100-continue' and (te or (cl and cl != '0')):
            self.writer.write(b"HTTP/1.1 100 Continue\r\n\r\n")
            await self.writer.drain()
        request.del_header('expect')

        if te:
            request.body = await self._read_chunked_body()
            request.del_header('transfer-encoding')
        elif cl:
            request.body = await self._read_bytes(int(cl))
        return request

    # -- Connection loop --

    async def run(self) -> None:
        """Main loop: one request at a time until the client goes away."""
        try:
            while True:
                try:
                    request = await self._read_request()
                except PayloadTooLargeError as e:
                    self.log("ERROR", f"Request rejected: {e}")
                    await self.send_error(413, "Payload Too Large", str(e), close=True)
                    return
                except ClientProtocolError as e:
                    self.log("ERROR", f"Framing Error: {e}")
                    if "Timeout" not in str(e) and "Incomplete" not in str(e):
                        await self.send_error(400, "Bad Request", str(e), close=True)
                    return
                if request is None:
                    break
                if not await self.dispatch(request):
                    break
        except Exception as e: # pylint: disable=broad-exception-caught
            self.log("ERROR", f"HTTP/1.1 Proxy Error: {e!r}")
        finally:
            if self.tunnel is None and not self.writer.is_closing():
                self.writer.close()

    async def send_error(self, code: int, reason: str, body: str = "", close: bool = False) -> None:
        """Sends a plain-text error response, shaped like Go's http.Error."""
        payload = (body + "\n").encode('utf-8') if body else b""
        head = [
            ("Content-Type", "text/plain; charset=utf-8"),
            ("X-Content-Type-Options", "nosniff"),
            ("Content-Length", str(len(payload))),
        ]
        if close:
            head.append(("Connection", "close"))
        try:
            self.writer.write(
                f"HTTP/1.1 {code} {reason}\r\n".encode('ascii') + format_headers(head) + b"\r\n" + payload
            )
            await self.writer.drain()
        except (OSError, RuntimeError) as e:
            self.log("ERROR", f"Failed to send {code} response: {e}")

    # -- Dispatcher --

    def _resolve_url(self, request: ProxyRequest) -> str:
        """
        Absolute URL for the request. Inside a MITM tunnel the origin is always
        the CONNECT target; only path and query are taken from the request.
        Raises ClientProtocolError for an unparseable target.
        """
        try:
            parts = urlsplit(request.target)
        except ValueError as exc:
            raise ClientProtocolError(f"Malformed request target: {exc}") from exc
        if self.tunnel is None:
            return request.target

        if request.target.startswith('/'):
            path = request.target
        elif parts.scheme and parts.netloc:
            path = parts.path or '/'
            if parts.query:
                path += '?' + parts.query
        else:
            return request.target
        authority = self.tunnel.authority
        if self.tunnel.port == 443:
            authority = authority.rsplit(':', 1)[0]
        return f"https://{authority}{path}"

    async def dispatch(self, request: ProxyRequest) -> bool:
        """
        Routes a single request. Returns True if the connection may carry
        another request afterwards.
        """
        ctx = RequestContext(request, self.server.sessions.next(), self.tunnel_host)

        if request.method == 'CONNECT':
            if self.tunnel is not None:
                await self.server.non_support_handler(self, ctx)
                return False
            await self.handle_connect(ctx)
            return False

        keep_alive = not request.wants_close()
        try:
            ctx.url = self._resolve_url(request)
            parts = urlsplit(ctx.url)
        except (ClientProtocolError, ValueError) as e:
            self.log("ERROR", f"[Session: {ctx.session_id}] {e}")
            self.emit(ProxyEvent(
                ctx.session_id, "request", request.method, request.get_header('host') or "",
                request.target, "rejected", error=str(e)
            ))
            await self.send_error(400, "Bad Request", str(e))
            return keep_alive

        host = parts.netloc or request.get_header('host') or ""
        self.log(
            "INFO",
            f"[Session: {ctx.session_id}] Got request: {request.method}, {host}, {parts.path}, {ctx.url}"
        )

        if not (parts.scheme and parts.netloc):
            self.emit(ProxyEvent(ctx.session_id, "request", request.method, host, parts.path, "rejected"))
            await self.server.non_support_handler(self, ctx)
            return keep_alive

        remove_proxy_related_headers(request)
        return await self.forward(ctx, keep_alive)

    # -- Forwarding Engine --

    async def forward(self, ctx: RequestContext, keep_alive: bool = True) -> bool:
        """
        Performs exactly one round trip for a sanitized absolute-URI request
        and streams the response to the client. Never retried.
        """
        request = ctx.request
        parts = urlsplit(ctx.url)
        # Field values may carry obs-text; hand httpx the original bytes.
        headers = [(k.encode('latin-1'), v.encode('latin-1')) for k, v in request.headers]
        headers.append((b"Accept-Encoding", OUTBOUND_ACCEPT_ENCODING.encode('ascii')))

        try:
            outbound = httpx.Request(
                request.method, ctx.url, headers=headers, content=request.body or None
            )
            response = await self.server.client.send(outbound, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            err = UpstreamRoundTripError(str(e) or repr(e))
            error_string = f"Received error status: {err}"
            self.log("ERROR", f"[Session: {ctx.session_id}] The error is: {error_string}")
            await self.send_error(500, "Internal Server Error", error_string)
            self.emit(ProxyEvent(
                ctx.session_id, "request", request.method, parts.netloc, parts.path,
                "upstream_error", duration=time.time() - ctx.start_time, error=str(err)
            ))
            return keep_alive

        try:
            return await self._relay_response(ctx, response, keep_alive)
        finally:
            await response.aclose()

    async def _relay_response(self, ctx: RequestContext, response: httpx.Response, keep_alive: bool) -> bool:
        """Writes the status line and headers, then copies the body chunk by chunk."""
        request = ctx.request
        status = response.status_code
        no_body = request.method == 'HEAD' or 100 <= status < 200 or status in (204, 304)

        encodings = [
            e.strip().lower()
            for e in response.headers.get('content-encoding', '').split(',') if e.strip()
        ]
        decoded = bool(encodings) and all(e in TRANSPORT_DECODED_ENCODINGS for e in encodings)

        skip = set(RESPONSE_FRAMING_HEADERS)
        if decoded and not no_body:
            # The transport hands us decoded bytes; the upstream framing no longer applies.
            skip.update(('content-encoding', 'content-length'))

        headers: Headers = []
        copy_headers(
            headers,
            ((k.decode('latin-1'), v.decode('latin-1')) for k, v in response.headers.raw),
            skip=skip
        )

        chunked = False
        if not no_body and not any(k.lower() == 'content-length' for k, _ in headers):
            if request.version == "HTTP/1.1":
                chunked = True
                headers.append(("Transfer-Encoding", "chunked"))
            else:
                keep_alive = False
        if not keep_alive:
            headers.append(("Connection", "close"))
        elif request.version == "HTTP/1.0":
            headers.append(("Connection", "keep-alive"))

        reason = response.reason_phrase or ""
        head = f"HTTP/1.1 {status} {reason}\r\n".encode('latin-1') + format_headers(headers) + b"\r\n"

        written = 0
        outcome = "ok"
        error: Optional[str] = None
        try:
            self.writer.write(head)
            await self.writer.drain()
            if not no_body:
                chunks = response.aiter_bytes() if decoded else response.aiter_raw()
                async for chunk in chunks:
                    if not chunk:
                        continue
                    if chunked:
                        self.writer.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
                    else:
                        self.writer.write(chunk)
                    await self.writer.drain()
                    written += len(chunk)
                if chunked:
                    self.writer.write(b"0\r\n\r\n")
                    await self.writer.drain()
        except (httpx.HTTPError, OSError) as e:
            err = StreamingError(str(e) or repr(e))
            self.log("ERROR", f"[Session: {ctx.session_id}] Error copying data from remote to client: {err}")
            outcome = "stream_error"
            error = str(err)
            keep_alive = False
        finally:
            self.log("INFO", f"[Session: {ctx.session_id}] Deliver {written} bytes from remote to client")
            parts = urlsplit(ctx.url)
            self.emit(ProxyEvent(
                ctx.session_id, "request", request.method, parts.netloc, parts.path,
                outcome, nbytes=written,
                duration=time.time() - ctx.start_time, error=error
            ))
        return keep_alive

    # -- Tunnel Engine --

    async def handle_connect(self, ctx: RequestContext) -> None:
        """Runs the CONNECT state machine for the configured mode."""
        host, port = self._parse_target(ctx.request.target)
        session = TunnelSession(ctx.session_id, host, port, self.server.mode)
        self.log(
            "INFO",
            f"[Session: {ctx.session_id}] Got CONNECT: {ctx.request.target} ({session.mode.value})"
        )
        if not host:
            await self.send_error(400, "Bad Request", "CONNECT requires host:port", close=True)
            return

        if session.mode is ProxyMode.NORMAL:
            await self._tunnel_normal(session)
        elif session.mode is ProxyMode.MITM:
            await self._tunnel_mitm(session)
        else:
            raise AssertionError(f"Unhandled proxy mode {session.mode!r}")

    def _tunnel_event(self, session: TunnelSession, outcome: str, error: Optional[str] = None) -> ProxyEvent:
        return ProxyEvent(
            session.session_id, "tunnel", "CONNECT", session.authority, "", outcome,
            nbytes=session.bytes_up + session.bytes_down,
            duration=time.time() - session.start_time, error=error
        )

    async def _tunnel_normal(self, session: TunnelSession) -> None:
        """Connecting -> Relaying -> Closed."""
        try:
            u_r, u_w = await self._dial_upstream(session.host, session.port, self.config.dial_timeout)
        except UpstreamDialError as e:
            err = TunnelEstablishError(str(e))
            self.log("ERROR", f"[Session: {session.session_id}] Tunnel setup failed: {err}")
            await self.send_error(502, "Bad Gateway", str(err), close=True)
            self.emit(self._tunnel_event(session, "dial_failed", str(err)))
            return

        try:
            self.writer.write(CONNECT_ESTABLISHED)
            await self.writer.drain()
            pending = self._take_buffered()
            if pending:
                u_w.write(pending)
                session.bytes_up += len(pending)
        except OSError as e:
            self.log("ERROR", f"[Session: {session.session_id}] Client went away before relay: {e}")
            u_w.close()
            self.emit(self._tunnel_event(session, "client_gone", str(e)))
            return

        await self._splice(session, u_r, u_w)
        self.log(
            "INFO",
            f"[Session: {session.session_id}] Tunnel {session.authority} closed "
            f"(up {session.bytes_up}b, down {session.bytes_down}b)"
        )
        self.emit(self._tunnel_event(session, "closed"))

    async def _splice(
        self, session: TunnelSession, u_r: asyncio.StreamReader, u_w: asyncio.StreamWriter
    ) -> None:
        """
        Runs both relay directions. Once the first finishes, the second gets
        `tunnel_close_grace` seconds before the pair is closed under it.
        """
        pair = ConnectionPair(self.writer, u_w)
        up = asyncio.create_task(self._relay(self.reader, u_w, pair, session, True))
        down = asyncio.create_task(self._relay(u_r, self.writer, pair, session, False))
        try:
            _, pending = await asyncio.wait({up, down}, return_when=asyncio.FIRST_COMPLETED)
            if pending:
                await asyncio.wait(pending, timeout=self.config.tunnel_close_grace)
        finally:
            await pair.close()
            for task in (up, down):
                if not task.done():
                    task.cancel()
            await asyncio.gather(up, down, return_exceptions=True)

    async def _relay(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        pair: ConnectionPair,
        session: TunnelSession,
        upstream: bool
    ) -> None:
        """Copies one direction until EOF, then half-closes the destination."""
        direction = "client->target" if upstream else "target->client"
        try:
            while True:
                data = await reader.read(RELAY_CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                if upstream:
                    session.bytes_up += len(data)
                else:
                    session.bytes_down += len(data)
            if not pair.closed and writer.can_write_eof() and not writer.is_closing():
                writer.write_eof()
            else:
                await pair.close()
        except OSError as e:
            if not pair.closed:
                self.log("ERROR", f"[Session: {session.session_id}] Relay {direction} failed: {e}")
            await pair.close()

    async def _tunnel_mitm(self, session: TunnelSession) -> None:
        """Handshaking -> Decrypting-Loop -> Closed."""
        try:
            self.writer.write(CONNECT_ESTABLISHED)
            await self.writer.drain()
        except OSError as e:
            self.log("ERROR", f"[Session: {session.session_id}] Client went away before handshake: {e}")
            return

        try:
            await self._start_client_tls(session)
        except TunnelEstablishError as e:
            self.log("ERROR", f"[Session: {session.session_id}] MITM Upgrade Failed: {e}")
            self.emit(self._tunnel_event(session, "handshake_failed", str(e)))
            return

        self.log("INFO", f"[Session: {session.session_id}] Intercepting {session.authority}")
        inner = Http11ProxyHandler(self.reader, self.writer, self.server, tunnel=session)
        await inner.run()
        self.emit(self._tunnel_event(session, "closed"))

    async def _start_client_tls(self, session: TunnelSession) -> None:
        """Forges the leaf for the tunnel host and terminates the client's TLS."""
        factory = self.server.ssl_context_factory
        try:
            session.ssl_context = await asyncio.to_thread(factory, session.host)
        except Exception as e: # pylint: disable=broad-exception-caught
            raise CertificateForgeryError(f"Cannot forge certificate for {session.host}: {e}") from e

        if len(self.buffer) > self._buffer_offset:
            raise TunnelEstablishError("Client sent data before the tunnel was acknowledged")

        try:
            await self.writer.start_tls(
                session.ssl_context, ssl_handshake_timeout=self.config.tls_handshake_timeout
            )
        except (ssl.SSLError, OSError, asyncio.TimeoutError) as e:
            raise TunnelEstablishError(f"TLS handshake with client failed: {e!r}") from e

async def start_proxy_server(proxy: ProxyServer, host: str, port: int) -> None:
    """
    Starts the TCP server on the given host/port and serves until cancelled.
    """
    server = await asyncio.start_server(proxy.handle_connection, host, port)
    proxy.callback("SYSTEM", f"Forward proxy ({proxy.mode.value}) listening on {host}:{port}")

    async with server:
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            pass
        finally:
            proxy.callback("SYSTEM", "Proxy stopped")
            server.close()
            await server.wait_closed()
            await proxy.aclose()
