# proxy_manager.py

"""
Proxy Manager.
Wires the certificate authority, the proxy core and logging together and
owns the listener lifecycle. Also the command-line entry point.
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Callable, List, Optional

from colorama import Fore, Style, init as colorama_init

import proxy_core
from structures import ProxyConfig, ProxyEvent, ProxyMode
from verify_certs import CertManager

log = logging.getLogger("ProxyManager")

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%H:%M:%S"

class ColorFormatter(logging.Formatter):
    """Colors console records by level."""
    COLORS = {
        logging.DEBUG: Style.DIM,
        logging.INFO: "",
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        color = self.COLORS.get(record.levelno, "")
        return f"{color}{text}{Style.RESET_ALL}" if color else text

def configure_logging(level: int = logging.INFO, color: bool = True) -> None:
    """Installs a single console handler on the root logger."""
    if color:
        colorama_init()
    handler = logging.StreamHandler()
    formatter_cls = ColorFormatter if color else logging.Formatter
    handler.setFormatter(formatter_cls(LOG_FORMAT, datefmt=LOG_DATEFMT))
    logging.basicConfig(level=level, handlers=[handler], force=True)

class ProxyManager:
    """
    Builds the ProxyServer for a ProxyConfig and runs it until stopped.
    Handler output arrives through `unified_callback` and is routed into
    `logging`; an optional external callback sees every record too.
    """
    def __init__(
        self,
        config: ProxyConfig,
        external_callback: Optional[Callable[[str, Any], None]] = None,
        cert_manager: Optional[CertManager] = None
    ):
        self.config = config
        self.external_callback = external_callback
        self.cert_manager = cert_manager
        if self.cert_manager is None and config.mode is ProxyMode.MITM:
            self.cert_manager = CertManager(config.ca_cert_path, config.ca_key_path, config.certs_dir)
        factory = self.cert_manager.get_context_for_host if self.cert_manager else None
        self.proxy = proxy_core.ProxyServer(
            config, ssl_context_factory=factory, manager_callback=self.unified_callback
        )
        self.stop_event = asyncio.Event()
        self.proxy_task: Optional[asyncio.Task] = None
        self.event_count = 0

    def unified_callback(self, level: str, payload: Any) -> None:
        """Single sink for every handler log line and structured event."""
        if level == "EVENT" and isinstance(payload, ProxyEvent):
            self.event_count += 1
            if payload.error:
                log.warning("%s", payload, extra={'proxy_event': payload.to_dict()})
            else:
                log.info("%s", payload, extra={'proxy_event': payload.to_dict()})
        elif level == "SYSTEM":
            log.info("[SYSTEM] %s", payload)
        elif level == "ERROR":
            log.error("%s", payload)
        else:
            log.info("%s", payload)

        if self.external_callback:
            try:
                self.external_callback(level, payload)
            except Exception: # pylint: disable=broad-exception-caught
                log.exception("External callback failed")

    async def run(self) -> None:
        log.info("=== Starting Proxy Manager ===")
        if self.cert_manager:
            log.info("MITM enabled; clients must trust %s", self.cert_manager.ca_cert_path)
        self.proxy_task = asyncio.create_task(proxy_core.start_proxy_server(
            self.proxy, self.config.bind_address, self.config.port
        ))
        try:
            await self.stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            if self.proxy_task:
                self.proxy_task.cancel()
                await asyncio.gather(self.proxy_task, return_exceptions=True)

    def stop(self) -> None:
        self.stop_event.set()

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Forward HTTP proxy with CONNECT tunneling and TLS interception")
    defaults = ProxyConfig()
    parser.add_argument("-p", "--port", type=int, default=defaults.port, help="Proxy listen port (default: 8080)")
    parser.add_argument("-b", "--bind", default=defaults.bind_address, help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--mitm", action="store_true", help="Intercept CONNECT tunnels with forged certificates")
    parser.add_argument("--ca-cert", default=defaults.ca_cert_path, help="CA certificate path (PEM)")
    parser.add_argument("--ca-key", default=defaults.ca_key_path, help="CA private key path (PEM)")
    parser.add_argument("--certs-dir", default=defaults.certs_dir, help="Directory for forged leaf certificates")
    parser.add_argument("--insecure-upstream", action="store_true", help="Do not verify upstream TLS certificates")
    parser.add_argument("--upstream-ca-bundle", default=None, help="CA bundle for upstream TLS verification")
    parser.add_argument("--dial-timeout", type=float, default=defaults.dial_timeout)
    parser.add_argument("--handshake-timeout", type=float, default=defaults.tls_handshake_timeout)
    parser.add_argument("--idle-timeout", type=float, default=defaults.idle_timeout)
    parser.add_argument("--upstream-timeout", type=float, default=defaults.upstream_timeout)
    parser.add_argument("--tunnel-close-grace", type=float, default=defaults.tunnel_close_grace)
    parser.add_argument("--max-body", type=int, default=defaults.max_request_body, help="Max request body in bytes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--no-color", action="store_true", help="Plain log output")
    return parser

def config_from_args(args: argparse.Namespace) -> ProxyConfig:
    return ProxyConfig(
        bind_address=args.bind,
        port=args.port,
        mode=ProxyMode.MITM if args.mitm else ProxyMode.NORMAL,
        ca_cert_path=args.ca_cert,
        ca_key_path=args.ca_key,
        certs_dir=args.certs_dir,
        upstream_verify_ssl=not args.insecure_upstream,
        upstream_ca_bundle=args.upstream_ca_bundle,
        dial_timeout=args.dial_timeout,
        tls_handshake_timeout=args.handshake_timeout,
        idle_timeout=args.idle_timeout,
        upstream_timeout=args.upstream_timeout,
        tunnel_close_grace=args.tunnel_close_grace,
        max_request_body=args.max_body,
    )

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, color=not args.no_color)
    config = config_from_args(args)

    async def _run() -> None:
        await ProxyManager(config).run()

    try:
        if sys.platform == "win32":
            asyncio.run(_run())
        else:
            import uvloop
            uvloop.run(_run())
    except KeyboardInterrupt:
        log.info("Shutting down...")
    return 0

if __name__ == "__main__":
    sys.exit(main())
