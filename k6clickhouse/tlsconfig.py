"""TLS settings for the ClickHouse connection."""

from __future__ import annotations

import os
import ssl
import stat
from dataclasses import dataclass
from pathlib import Path

_PEM_CERT_MARKER = "-----BEGIN CERTIFICATE-----"


class TLSConfigError(ValueError):
    """Raised when TLS files are missing, unreadable or unusable."""


def validate_file_readable(path: str | os.PathLike[str]) -> Path:
    """Return ``path`` as a Path once it is known to name a readable file."""
    if not path:
        raise TLSConfigError("file path is empty")
    target = Path(path)
    try:
        info = target.stat()
    except FileNotFoundError:
        raise TLSConfigError(f"file does not exist: {path}") from None
    except OSError as err:
        raise TLSConfigError(f"cannot access file {path}: {err}") from err

    if stat.S_ISDIR(info.st_mode):
        raise TLSConfigError(f"path is a directory, not a file: {path}")

    try:
        with target.open("rb"):
            pass
    except OSError as err:
        raise TLSConfigError(f"file is not readable: {path}: {err}") from err
    return target


@dataclass
class TLSConfig:
    """TLS options; ``server_name`` is the host name sent for SNI when connecting."""

    enabled: bool = False
    insecure_skip_verify: bool = False
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    server_name: str = ""

    def build_ssl_context(self) -> ssl.SSLContext | None:
        """Build a client SSL context, or return None when TLS is disabled.

        The system trust store is always loaded; ``ca_file`` adds to it.
        A client certificate is loaded only when both certificate and key are set.
        """
        if not self.enabled:
            return None

        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        if self.insecure_skip_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if self.ca_file:
            try:
                pem = Path(self.ca_file).read_bytes().decode("latin-1")
            except OSError as err:
                raise TLSConfigError(
                    f"failed to read CA certificate file {self.ca_file}: {err}"
                ) from err
            parse_error = (
                f"failed to parse CA certificate from {self.ca_file}: "
                "no valid certificates found"
            )
            if _PEM_CERT_MARKER not in pem:
                raise TLSConfigError(parse_error)
            try:
                context.load_verify_locations(cadata=pem)
            except (ssl.SSLError, ValueError) as err:
                raise TLSConfigError(parse_error) from err

        if self.cert_file and self.key_file:
            try:
                context.load_cert_chain(self.cert_file, self.key_file)
            except (OSError, ValueError) as err:
                raise TLSConfigError(
                    f"failed to load client certificate/key pair: {err}"
                ) from err

        return context