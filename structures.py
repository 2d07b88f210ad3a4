#Filename: structures.py
"""
CORE DATA STRUCTURES
Shared types for the Dispatcher, Forwarding Engine and Tunnel Engine.
Per-request and per-tunnel state lives here; nothing in this module performs I/O.
"""

import enum
import time
from typing import Any, Dict, List, Optional, Set, Tuple

# -- Constants --

# Single-hop and proxy-specific request headers, never relayed to the next hop.
# Accept-Encoding is included so the outbound transport negotiates (and
# transparently decodes) its own compression.
SANITIZED_HEADERS: Set[str] = {
    'accept-encoding', 'proxy-connection', 'proxy-authenticate',
    'proxy-authorization', 'connection'
}

# Connection-level response headers owned by the client-facing hop.
RESPONSE_FRAMING_HEADERS: Set[str] = {
    'connection', 'keep-alive', 'transfer-encoding'
}

# Encodings the outbound transport advertises and decodes on its own.
TRANSPORT_DECODED_ENCODINGS: Set[str] = {'gzip', 'deflate', 'identity'}
OUTBOUND_ACCEPT_ENCODING: str = "gzip, deflate"

NON_SUPPORT_MESSAGE: str = "This is a proxy server, your request cannot be recognized."

Headers = List[Tuple[str, str]]

# -- Types --

class ProxyMode(enum.Enum):
    """How a CONNECT tunnel is executed."""
    NORMAL = "normal"
    MITM = "mitm"

class ProxyRequest:
    """
    A parsed inbound HTTP/1.1 request.
    Headers are kept as an ordered list so repeated names survive.
    """
    __slots__ = ('method', 'target', 'version', 'headers', 'body')

    def __init__(
        self,
        method: str,
        target: str,
        version: str,
        headers: Headers,
        body: bytes = b""
    ) -> None:
        if not isinstance(headers, list):
            raise TypeError(f"Headers must be List[Tuple[str, str]], got {type(headers).__name__}")
        self.method = method
        self.target = target
        self.version = version
        self.headers = headers
        self.body = body

    def get_header(self, name: str) -> Optional[str]:
        """Returns the first value for a header name (case-insensitive)."""
        name = name.lower()
        for k, v in self.headers:
            if k.lower() == name:
                return v
        return None

    def del_header(self, name: str) -> None:
        """Removes every occurrence of a header name (case-insensitive)."""
        name = name.lower()
        self.headers[:] = [(k, v) for k, v in self.headers if k.lower() != name]

    def wants_close(self) -> bool:
        """True if the client asked for the connection to end after this exchange."""
        tokens = set()
        for k, v in self.headers:
            if k.lower() in ('connection', 'proxy-connection'):
                tokens.update(t.strip().lower() for t in v.split(','))
        if self.version == "HTTP/1.0":
            return 'keep-alive' not in tokens
        return 'close' in tokens

    def __repr__(self) -> str:
        return f"<ProxyRequest {self.method} {self.target} {self.version}>"

class RequestContext:
    """
    Ephemeral state for one inbound request, including each request
    decrypted inside a MITM tunnel. `tunnel_host` is set only for the latter
    and names the CONNECT target that serves as the implicit origin.
    """
    __slots__ = ('request', 'session_id', 'tunnel_host', 'url', 'start_time')

    def __init__(
        self,
        request: ProxyRequest,
        session_id: int,
        tunnel_host: Optional[Tuple[str, int]] = None
    ) -> None:
        self.request = request
        self.session_id = session_id
        self.tunnel_host = tunnel_host
        self.url: str = request.target
        self.start_time = time.time()

    @property
    def is_intercepted(self) -> bool:
        """True for requests that arrived over a decrypted MITM channel."""
        return self.tunnel_host is not None

    def __repr__(self) -> str:
        return f"<RequestContext #{self.session_id} {self.request.method} {self.url}>"

class TunnelSession:
    """
    State for a single CONNECT. Created when the CONNECT arrives, discarded
    once both relay directions (or the MITM loop) have exited.
    """
    __slots__ = (
        'session_id', 'host', 'port', 'mode', 'ssl_context',
        'bytes_up', 'bytes_down', 'start_time'
    )

    def __init__(self, session_id: int, host: str, port: int, mode: ProxyMode) -> None:
        self.session_id = session_id
        self.host = host
        self.port = port
        self.mode = mode
        self.ssl_context: Any = None
        self.bytes_up = 0
        self.bytes_down = 0
        self.start_time = time.time()

    @property
    def authority(self) -> str:
        """host:port form, bracketing IPv6 literals."""
        host = f"[{self.host}]" if ':' in self.host else self.host
        return f"{host}:{self.port}"

    def __repr__(self) -> str:
        return f"<TunnelSession #{self.session_id} {self.mode.value} {self.authority}>"

class ProxyEvent:
    """
    Structured record emitted once per request and per tunnel lifecycle event.
    """
    __slots__ = (
        'session_id', 'kind', 'method', 'host', 'path', 'outcome',
        'bytes', 'duration', 'error'
    )

    def __init__(
        self,
        session_id: int,
        kind: str,
        method: str,
        host: str,
        path: str,
        outcome: str,
        nbytes: int = 0,
        duration: float = 0.0,
        error: Optional[str] = None
    ) -> None:
        self.session_id = session_id
        self.kind = kind
        self.method = method
        self.host = host
        self.path = path
        self.outcome = outcome
        self.bytes = nbytes
        self.duration = duration
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        """Converts the event to a dictionary for log shipping."""
        return {
            'session_id': self.session_id,
            'kind': self.kind,
            'method': self.method,
            'host': self.host,
            'path': self.path,
            'outcome': self.outcome,
            'bytes': self.bytes,
            'duration': self.duration,
            'error': self.error
        }

    def __str__(self) -> str:
        text = (f"[Session: {self.session_id}] {self.kind} {self.method} "
                f"{self.host}{self.path} -> {self.outcome} ({self.bytes}b, {self.duration * 1000:.1f}ms)")
        if self.error:
            text += f" error={self.error}"
        return text

    def __repr__(self) -> str:
        return f"<ProxyEvent #{self.session_id} {self.kind} {self.outcome}>"

class ProxyConfig:
    """
    Runtime configuration for the proxy. Every field may be overridden from the CLI.
    """
    __slots__ = (
        'bind_address', 'port', 'mode', 'ca_cert_path', 'ca_key_path', 'certs_dir',
        'upstream_verify_ssl', 'upstream_ca_bundle', 'dial_timeout',
        'tls_handshake_timeout', 'idle_timeout', 'upstream_timeout',
        'tunnel_close_grace', 'max_request_body'
    )

    def __init__(
        self,
        bind_address: str = "127.0.0.1",
        port: int = 8080,
        mode: ProxyMode = ProxyMode.NORMAL,
        ca_cert_path: str = "proxy_ca.pem",
        ca_key_path: str = "proxy_ca.key",
        certs_dir: str = "certs",
        upstream_verify_ssl: bool = True,
        upstream_ca_bundle: Optional[str] = None,
        dial_timeout: float = 10.0,
        tls_handshake_timeout: float = 10.0,
        idle_timeout: float = 60.0,
        upstream_timeout: float = 30.0,
        tunnel_close_grace: float = 5.0,
        max_request_body: int = 64 * 1024 * 1024
    ) -> None:
        self.bind_address = bind_address
        self.port = port
        self.mode = mode
        self.ca_cert_path = ca_cert_path
        self.ca_key_path = ca_key_path
        self.certs_dir = certs_dir
        self.upstream_verify_ssl = upstream_verify_ssl
        self.upstream_ca_bundle = upstream_ca_bundle
        self.dial_timeout = dial_timeout
        self.tls_handshake_timeout = tls_handshake_timeout
        self.idle_timeout = idle_timeout
        self.upstream_timeout = upstream_timeout
        self.tunnel_close_grace = tunnel_close_grace
        self.max_request_body = max_request_body

    def __repr__(self) -> str:
        return f"<ProxyConfig {self.bind_address}:{self.port} mode={self.mode.value}>"
