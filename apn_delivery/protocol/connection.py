from __future__ import annotations

import logging
import os
import socket
import ssl
import tempfile
from types import TracebackType

from apn_delivery.errors import ApnConnectionError, MissingCertificateError

logger = logging.getLogger(__name__)


def build_ssl_context(certificate: bytes, passphrase: str = "") -> ssl.SSLContext:
    """Client TLS context presenting ``certificate`` (PEM cert and key) to the peer."""
    if not certificate:
        raise MissingCertificateError()
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    # load_cert_chain only reads from disk.
    fd, path = tempfile.mkstemp(suffix=".pem")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(certificate)
        context.load_cert_chain(certfile=path, password=passphrase or None)
    except ssl.SSLError as exc:
        raise ApnConnectionError(f"Unable to load certificate: {exc}") from exc
    finally:
        os.unlink(path)
    return context


class TLSConnection:
    """One TLS session to a push service host. Use as a context manager."""

    kind = "tls"

    def __init__(
        self,
        host: str,
        port: int,
        certificate: bytes | None = None,
        passphrase: str = "",
        timeout: float | None = 10.0,
        sock: socket.socket | None = None,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.certificate = certificate
        self.passphrase = passphrase
        self.timeout = timeout
        self.ssl_context = ssl_context
        self.sock = sock

    @property
    def is_open(self) -> bool:
        return self.sock is not None

    def open(self) -> TLSConnection:
        if self.sock is not None:
            return self
        context = self.ssl_context or build_ssl_context(self.certificate or b"", self.passphrase)
        raw: socket.socket | None = None
        try:
            raw = socket.create_connection((self.host, self.port), timeout=self.timeout)
            self.sock = context.wrap_socket(raw, server_hostname=self.host)
        except (OSError, ssl.SSLError) as exc:
            if raw is not None:
                raw.close()
            logger.warning(
                "Push service connection failed",
                extra={"kind": self.kind, "host": self.host, "port": self.port, "error": str(exc)},
            )
            raise ApnConnectionError(f"Unable to connect to {self.host}:{self.port}: {exc}") from exc
        # Blocking I/O from here on; gateway polls set their own deadline.
        self.sock.settimeout(None)
        logger.debug("Push service connection opened", extra={"kind": self.kind, "host": self.host, "port": self.port})
        return self

    def close(self) -> None:
        if self.sock is None:
            return
        try:
            self.sock.close()
        except OSError as exc:
            logger.debug("Ignoring error while closing socket", extra={"kind": self.kind, "error": str(exc)})
        finally:
            self.sock = None
        logger.debug("Push service connection closed", extra={"kind": self.kind, "host": self.host, "port": self.port})

    def _require_socket(self) -> socket.socket:
        if self.sock is None:
            raise ApnConnectionError(f"{self.kind} connection to {self.host}:{self.port} is not open")
        return self.sock

    def __enter__(self) -> TLSConnection:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()
