import ssl
from pathlib import Path

import pytest

from k6clickhouse.tlsconfig import TLSConfig, TLSConfigError, validate_file_readable


def test_disabled_returns_none():
    assert TLSConfig(enabled=False).build_ssl_context() is None


def test_enabled_with_system_ca_verifies():
    context = TLSConfig(enabled=True).build_ssl_context()
    assert isinstance(context, ssl.SSLContext)
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname is True


def test_insecure_skip_verify_disables_checks():
    context = TLSConfig(enabled=True, insecure_skip_verify=True).build_ssl_context()
    assert context.verify_mode == ssl.CERT_NONE
    assert context.check_hostname is False


def test_missing_ca_file():
    cfg = TLSConfig(enabled=True, ca_file="/nonexistent/ca.pem")
    with pytest.raises(TLSConfigError, match="failed to read CA certificate file"):
        cfg.build_ssl_context()


def test_ca_file_without_pem(tmp_path: Path):
    bad = tmp_path / "invalid-ca.pem"
    bad.write_text("not a valid PEM certificate")
    cfg = TLSConfig(enabled=True, ca_file=str(bad))
    with pytest.raises(TLSConfigError, match="failed to parse CA certificate"):
        cfg.build_ssl_context()


def test_ca_file_with_corrupt_pem(tmp_path: Path):
    bad = tmp_path / "corrupt-ca.pem"
    bad.write_text(
        "-----BEGIN CERTIFICATE-----\nnot base64 !!!\n-----END CERTIFICATE-----\n"
    )
    cfg = TLSConfig(enabled=True, ca_file=str(bad))
    with pytest.raises(TLSConfigError, match="failed to parse CA certificate"):
        cfg.build_ssl_context()


def test_missing_client_cert(tmp_path: Path):
    key = tmp_path / "client-key.pem"
    key.write_text("junk")
    cfg = TLSConfig(enabled=True, cert_file="/nonexistent/cert.pem", key_file=str(key))
    with pytest.raises(TLSConfigError, match="failed to load client certificate/key pair"):
        cfg.build_ssl_context()


def test_missing_client_key(tmp_path: Path):
    cert = tmp_path / "client-cert.pem"
    cert.write_text("junk")
    cfg = TLSConfig(enabled=True, cert_file=str(cert), key_file="/nonexistent/key.pem")
    with pytest.raises(TLSConfigError, match="failed to load client certificate/key pair"):
        cfg.build_ssl_context()


def test_unusable_client_cert_content(tmp_path: Path):
    cert = tmp_path / "client-cert.pem"
    key = tmp_path / "client-key.pem"
    cert.write_text("junk")
    key.write_text("junk")
    cfg = TLSConfig(enabled=True, cert_file=str(cert), key_file=str(key))
    with pytest.raises(TLSConfigError, match="failed to load client certificate/key pair"):
        cfg.build_ssl_context()


def test_validate_empty_path():
    with pytest.raises(TLSConfigError, match="file path is empty"):
        validate_file_readable("")


def test_validate_nonexistent_file():
    with pytest.raises(TLSConfigError, match="file does not exist"):
        validate_file_readable("/nonexistent/file.txt")


def test_validate_directory(tmp_path: Path):
    with pytest.raises(TLSConfigError, match="path is a directory"):
        validate_file_readable(str(tmp_path))


def test_validate_readable_file(tmp_path: Path):
    target = tmp_path / "test.txt"
    target.write_text("test content")
    assert validate_file_readable(str(target)) == target