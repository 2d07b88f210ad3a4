# tests/test_verify_certs.py

"""
Tests for verify_certs.py.
Covers CA generation/loading, leaf forging and SSLContext caching.
"""
import ipaddress
import os
import ssl
import stat
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from verify_certs import CertManager

def _paths(tmp_path):
    return dict(
        ca_cert_path=str(tmp_path / "ca.pem"),
        ca_key_path=str(tmp_path / "ca.key"),
        certs_dir=str(tmp_path / "certs"),
    )

class TestCertificateAuthority:
    def test_generates_ca_on_first_use(self, tmp_path):
        mgr = CertManager(**_paths(tmp_path))

        assert os.path.exists(mgr.ca_cert_path)
        assert os.path.exists(mgr.ca_key_path)
        assert stat.S_IMODE(os.stat(mgr.ca_key_path).st_mode) == 0o600
        bc = mgr.ca_cert.extensions.get_extension_for_class(x509.BasicConstraints).value
        assert bc.ca is True

    def test_reloads_existing_ca(self, tmp_path):
        first = CertManager(**_paths(tmp_path))
        second = CertManager(**_paths(tmp_path))
        assert first.ca_cert.serial_number == second.ca_cert.serial_number

    def test_corrupted_ca_is_regenerated(self, tmp_path):
        paths = _paths(tmp_path)
        with open(paths["ca_key_path"], "wb") as f:
            f.write(b"not a key")
        with open(paths["ca_cert_path"], "wb") as f:
            f.write(b"not a cert")

        mgr = CertManager(**paths)

        with open(paths["ca_cert_path"], "rb") as f:
            assert x509.load_pem_x509_certificate(f.read()).serial_number == mgr.ca_cert.serial_number

    def test_certs_dir_is_private(self, tmp_path):
        certs = tmp_path / "certs"
        certs.mkdir(mode=0o755)
        os.chmod(certs, 0o755)
        CertManager(**_paths(tmp_path))
        assert stat.S_IMODE(os.stat(certs).st_mode) == 0o700

class TestLeafForging:
    @pytest.fixture
    def mgr(self, tmp_path):
        return CertManager(**_paths(tmp_path))

    def test_dns_leaf_has_server_auth_san(self, mgr):
        cert = mgr.forge_leaf("secure.example")
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.DNSName) == ["secure.example"]
        eku = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        assert ExtendedKeyUsageOID.SERVER_AUTH in eku
        assert cert.issuer == mgr.ca_cert.subject

    def test_ip_leaf_uses_ip_san(self, mgr):
        cert = mgr.forge_leaf("10.0.0.5")
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        assert san.get_values_for_type(x509.IPAddress) == [ipaddress.ip_address("10.0.0.5")]
        assert san.get_values_for_type(x509.DNSName) == []

    def test_context_is_cached_per_host(self, mgr):
        with patch.object(mgr, "forge_leaf", wraps=mgr.forge_leaf) as forge:
            a = mgr.get_context_for_host("a.example")
            again = mgr.get_context_for_host("a.example")
            b = mgr.get_context_for_host("b.example")

        assert a is again
        assert a is not b
        assert forge.call_count == 2
        assert isinstance(a, ssl.SSLContext)

    def test_hostname_cannot_escape_certs_dir(self, mgr):
        mgr.get_context_for_host("../../etc/passwd")
        assert ".._.._etc_passwd.crt" in os.listdir(mgr.certs_dir)
        parent = os.path.dirname(os.path.abspath(mgr.certs_dir))
        assert not os.path.exists(os.path.join(parent, "passwd.crt"))

    def test_empty_hostname_rejected(self, mgr):
        with pytest.raises(ValueError):
            mgr.get_context_for_host("")
