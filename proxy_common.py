#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared logic, constants, and base classes for the proxy core.
Error taxonomy, session allocation, header sanitization and the
connection-pair abstraction used by the tunnel relay live here.
"""

import asyncio
import logging
import re
import socket
import threading
from typing import Callable, Iterable, List, Optional, Tuple

from structures import SANITIZED_HEADERS, Headers, ProxyEvent, ProxyRequest

log = logging.getLogger(__name__)

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
MAX_HEADER_LIST_SIZE = 262144
READ_CHUNK_SIZE = 65536
RELAY_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536
CONNECT_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"

ManagerCallback = Callable[[str, object], None]

class ProxyError(Exception):
    """Base exception for Proxy operations."""

class ClientProtocolError(ProxyError):
    """Malformed, unparseable or non-absolute request from the client."""

class PayloadTooLargeError(ClientProtocolError):
    """Raised when a request body exceeds the configured limit."""

class UpstreamDialError(ProxyError):
    """The origin (or CONNECT target) could not be reached."""

class UpstreamRoundTripError(ProxyError):
    """The outbound round trip failed before a response was available."""

class StreamingError(ProxyError):
    """Copying failed after the response head was already sent."""

class TunnelEstablishError(ProxyError):
    """Dial or TLS handshake failure while setting up a CONNECT tunnel."""

class CertificateForgeryError(TunnelEstablishError):
    """No leaf certificate could be produced for the requested host."""

class SessionAllocator:
    """
    Hands out strictly increasing session identifiers.
    Safe to share across threads and event loops.
    """
    __slots__ = ('_value', '_lock')

    def __init__(self, start: int = 0) -> None:
        self._value = start
        self._lock = threading.Lock()

    def next(self) -> int:
        """Atomically increments the counter and returns the new value."""
        with self._lock:
            self._value += 1
            return self._value

    @property
    def current(self) -> int:
        """Last identifier handed out."""
        return self._value

# -- Stateless Helper Functions --

def remove_proxy_related_headers(request: ProxyRequest) -> None:
    """
    Strips single-hop and proxy-specific headers in place.
    Connection options must not be communicated over further connections
    (RFC 9110 Section 7.6.1); dropping Accept-Encoding lets the outbound
    transport negotiate compression it can undo itself.
    """
    request.headers[:] = [
        (k, v) for k, v in request.headers if k.lower() not in SANITIZED_HEADERS
    ]

def copy_headers(dst: Headers, src: Iterable[Tuple[str, str]], skip: Iterable[str] = ()) -> None:
    """Appends every (name, value) pair from src to dst, keeping repeats and order."""
    skipped = {s.lower() for s in skip}
    for k, v in src:
        if k.lower() not in skipped:
            dst.append((k, v))

def log_to_logger(level: str, msg: object) -> None:
    """Default manager callback: routes handler output into `logging`."""
    if level == "ERROR":
        log.error("%s", msg)
    elif level == "EVENT" and isinstance(msg, ProxyEvent):
        log.info("%s", msg, extra={'proxy_event': msg.to_dict()})
    else:
        log.info("%s", msg)

class ConnectionPair:
    """
    The two writers of a tunnel. Either relay task may close it; only the
    first call does any work.
    """
    __slots__ = ('client_writer', 'upstream_writer', '_closed')

    def __init__(self, client_writer: asyncio.StreamWriter, upstream_writer: asyncio.StreamWriter) -> None:
        self.client_writer = client_writer
        self.upstream_writer = upstream_writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Closes both ends. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for w in (self.client_writer, self.upstream_writer):
            try:
                if not w.is_closing():
                    w.close()
            except Exception: # pylint: disable=broad-exception-caught
                pass
        for w in (self.client_writer, self.upstream_writer):
            try:
                await w.wait_closed()
            except Exception: # pylint: disable=broad-exception-caught
                pass

class BaseProxyHandler:
    """
    Base class containing shared logic for request and tunnel handling.
    Manages upstream dialing and logging.
    """
    __slots__ = ('callback', 'client_addr')

    def __init__(
        self,
        manager_callback: Optional[ManagerCallback],
        client_addr: Optional[Tuple[str, int]] = None
    ):
        self.callback = manager_callback
        self.client_addr = client_addr

    def log(self, level: str, msg: object) -> None:
        """Emits a log message via the callback."""
        if self.callback:
            try:
                self.callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                log.exception("Manager callback failed")

    def emit(self, event: ProxyEvent) -> None:
        """Emits a structured lifecycle record."""
        self.log("EVENT", event)

    def _parse_target(self, target: str, default_port: int = 443) -> Tuple[str, int]:
        """Parses a host string into (hostname, port)."""
        if not target:
            return "", 0
        if target.startswith('['):
            end = target.find(']')
            if end != -1:
                host = target[1:end]
                rem = target[end+1:]
                if rem.startswith(':'):
                    try:
                        return host, int(rem[1:])
                    except ValueError:
                        pass
                else:
                    return host, default_port
        if ':' in target:
            host, port_str = target.rsplit(':', 1)
            try:
                return host, int(port_str)
            except ValueError:
                pass
        return target, default_port

    async def _dial_upstream(
        self, host: str, port: int, timeout: float
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Opens a plain TCP connection to host:port."""
        if not host or not port:
            raise UpstreamDialError(f"Invalid tunnel target {host!r}:{port}")
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamDialError(f"Dial {host}:{port} timed out after {timeout}s") from exc
        except OSError as exc:
            raise UpstreamDialError(f"Dial {host}:{port} failed: {exc}") from exc

        sock = writer.get_extra_info('socket')
        if sock is not None:
            try:
                sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            except OSError:
                pass
        return reader, writer

def format_headers(headers: List[Tuple[str, str]]) -> bytes:
    """Serializes a header list into an HTTP/1.1 header block (without the blank line)."""
    return b"".join(f"{k}: {v}\r\n".encode('latin-1') for k, v in headers)
