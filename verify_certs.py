#Filename: verify_certs.py
"""
CERTIFICATE AUTHORITY COLLABORATOR
Loads (or generates) the proxy CA and forges leaf certificates for
intercepted hosts on demand. The proxy core only sees
`CertManager.get_context_for_host`, a hostname -> ssl.SSLContext factory.
"""

import datetime
import ipaddress
import logging
import os
import ssl
import stat
import threading
from typing import Dict, Optional

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

log = logging.getLogger(__name__)

# -- Constants --
CA_KEY_PATH = "proxy_ca.key"
CA_CERT_PATH = "proxy_ca.pem"
CERTS_DIR = "certs"
CA_VALIDITY_DAYS = 3650
LEAF_VALIDITY_DAYS = 365

def _pem_key(key: ec.EllipticCurvePrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )

def _san_entry(hostname: str) -> x509.GeneralName:
    """IP literals get an IPAddress SAN, everything else a DNSName."""
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        return x509.DNSName(hostname)

class CertManager:
    """
    Owns the interception CA and signs per-host server certificates
    for CONNECT targets as they are first seen.

    Leaves are forged once per hostname and cached for the life of the
    process; every leaf shares one ephemeral key.
    """
    def __init__(
        self,
        ca_cert_path: str = CA_CERT_PATH,
        ca_key_path: str = CA_KEY_PATH,
        certs_dir: str = CERTS_DIR
    ):
        self.ca_cert_path = ca_cert_path
        self.ca_key_path = ca_key_path
        self.certs_dir = certs_dir
        self.ca_key: Optional[ec.EllipticCurvePrivateKey] = None
        self.ca_cert: Optional[x509.Certificate] = None
        self.lock = threading.Lock()
        self.cache: Dict[str, ssl.SSLContext] = {}

        # Pre-generating one key for all leaf certs keeps forging cheap.
        self.shared_leaf_key = ec.generate_private_key(ec.SECP256R1())

        # Leaf private keys are written here; keep it private to this user.
        if not os.path.exists(self.certs_dir):
            os.makedirs(self.certs_dir, mode=0o700)
        else:
            current_mode = stat.S_IMODE(os.stat(self.certs_dir).st_mode)
            if current_mode != 0o700:
                os.chmod(self.certs_dir, 0o700)

        self._load_or_generate_ca()

    def _load_or_generate_ca(self) -> None:
        """
        Reads the CA pair from disk, or creates a fresh ECC P-256 CA.
        Corrupted key/cert files are replaced with a fresh CA.
        """
        if os.path.exists(self.ca_key_path) and os.path.exists(self.ca_cert_path):
            try:
                log.info("Loading existing proxy CA from %s", self.ca_cert_path)
                with open(self.ca_key_path, "rb") as f:
                    self.ca_key = serialization.load_pem_private_key(f.read(), password=None)
                with open(self.ca_cert_path, "rb") as f:
                    self.ca_cert = x509.load_pem_x509_certificate(f.read())
                return
            except (ValueError, TypeError, AttributeError) as e:
                log.warning("CA state corrupted (%s); generating a new CA", e)

        log.info("Generating new proxy CA (ECC P-256)")
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.datetime.now(datetime.timezone.utc)

        name = x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, "Forward Proxy Interception CA"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Forward Proxy"),
        ])

        self.ca_cert = x509.CertificateBuilder().subject_name(
            name
        ).issuer_name(
            name
        ).public_key(
            self.ca_key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - datetime.timedelta(hours=1)
        ).not_valid_after(
            now + datetime.timedelta(days=CA_VALIDITY_DAYS)
        ).add_extension(
            x509.BasicConstraints(ca=True, path_length=0), critical=True,
        ).add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False
            ),
            critical=True,
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(self.ca_key.public_key()), critical=False,
        ).sign(self.ca_key, hashes.SHA256())

        with open(self.ca_key_path, "wb") as f:
            f.write(_pem_key(self.ca_key))
        os.chmod(self.ca_key_path, 0o600)
        with open(self.ca_cert_path, "wb") as f:
            f.write(self.ca_cert.public_bytes(serialization.Encoding.PEM))

        log.info("CA generated: %s", self.ca_cert_path)

    def forge_leaf(self, hostname: str) -> x509.Certificate:
        """Signs a server certificate for hostname with the proxy CA."""
        key = self.shared_leaf_key
        now = datetime.datetime.now(datetime.timezone.utc)
        return x509.CertificateBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname[:64])])
        ).issuer_name(
            self.ca_cert.subject
        ).public_key(
            key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - datetime.timedelta(hours=1)
        ).not_valid_after(
            now + datetime.timedelta(days=LEAF_VALIDITY_DAYS)
        ).add_extension(
            x509.BasicConstraints(ca=False, path_length=None), critical=True,
        ).add_extension(
            x509.SubjectAlternativeName([_san_entry(hostname)]), critical=False,
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False,
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(self.ca_key.public_key()),
            critical=False,
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False,
        ).sign(self.ca_key, hashes.SHA256())

    def get_context_for_host(self, hostname: str) -> ssl.SSLContext:
        """
        Server-side SSLContext presenting a leaf forged for hostname.
        Uses a read-through cache; safe to call from worker threads.
        """
        if not hostname:
            raise ValueError("hostname is required")

        with self.lock:
            if hostname in self.cache:
                return self.cache[hostname]

            # Never let a hostname pick its own path on disk.
            safe_hostname = os.path.basename(hostname.replace(os.sep, "_"))
            if not safe_hostname or safe_hostname in ('.', '..'):
                safe_hostname = "unknown_host"

            cert = self.forge_leaf(hostname)

            key_path = os.path.join(self.certs_dir, f"{safe_hostname}.key")
            cert_path = os.path.join(self.certs_dir, f"{safe_hostname}.crt")
            with open(key_path, "wb") as f:
                f.write(_pem_key(self.shared_leaf_key))
            with open(cert_path, "wb") as f:
                f.write(cert.public_bytes(serialization.Encoding.PEM))

            ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            ctx.load_cert_chain(certfile=cert_path, keyfile=key_path)
            # Inner traffic is parsed as HTTP/1.1 only.
            ctx.set_alpn_protocols(["http/1.1"])

            self.cache[hostname] = ctx
            log.debug("Forged leaf certificate for %s", hostname)
            return ctx

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s")
    cm = CertManager()
    print(f"[+] CA Ready at: {os.path.abspath(cm.ca_cert_path)}")
