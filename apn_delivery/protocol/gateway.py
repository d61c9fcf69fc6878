from __future__ import annotations

import logging
import socket
import ssl
import time

from apn_delivery.errors import MalformedFrameError, WriteError
from apn_delivery.models.notification import ErrorResponse
from apn_delivery.protocol.codec import ERROR_FRAME_LENGTH, decode_error_frame
from apn_delivery.protocol.connection import TLSConnection

logger = logging.getLogger(__name__)

DEFAULT_POLL_TIMEOUT = 1.0


class GatewayConnection(TLSConnection):
    kind = "gateway"

    def __enter__(self) -> GatewayConnection:
        self.open()
        return self

    def write(self, frame: bytes) -> None:
        sock = self._require_socket()
        try:
            sock.sendall(frame)
        except (OSError, ssl.SSLError) as exc:
            logger.info("Gateway write failed", extra={"host": self.host, "error": str(exc)})
            raise WriteError(f"Gateway {self.host}:{self.port} rejected write: {exc}") from exc

    def _read_frame(self, size: int, timeout: float) -> bytes:
        """Read up to ``size`` bytes, giving up once ``timeout`` seconds have passed.

        TLS records with no application data (session tickets, key updates) can
        arrive at any time, so each recv is bounded by what is left of the window.
        """
        sock = self._require_socket()
        deadline = time.monotonic() + max(0.0, timeout)
        chunks: list[bytes] = []
        received = 0
        try:
            while received < size:
                sock.settimeout(max(0.0, deadline - time.monotonic()))
                try:
                    chunk = sock.recv(size - received)
                except (socket.timeout, BlockingIOError, ssl.SSLWantReadError):
                    break
                except (OSError, ssl.SSLError) as exc:
                    if chunks:
                        raise MalformedFrameError(f"Error frame truncated after {received} bytes") from exc
                    # Peer reset without sending an error frame.
                    logger.info("Gateway reset before error frame", extra={"host": self.host, "error": str(exc)})
                    return b""
                if not chunk:
                    break
                chunks.append(chunk)
                received += len(chunk)
        finally:
            if self.sock is not None:
                self.sock.settimeout(None)
        return b"".join(chunks)

    def poll_error(self, timeout: float = DEFAULT_POLL_TIMEOUT) -> ErrorResponse | None:
        """Wait up to ``timeout`` seconds for an error frame.

        Silence within the window is the healthy case and returns ``None``, as does
        a clean close before any byte arrives. A frame cut short by a close or by
        the end of the window raises ``MalformedFrameError``.
        """
        data = self._read_frame(ERROR_FRAME_LENGTH, timeout)
        if not data:
            return None
        response = decode_error_frame(data)
        logger.info(
            "Gateway reported error",
            extra={
                "host": self.host,
                "notification_id": response.notification_id,
                "status_code": response.status_code,
                "status": response.status,
            },
        )
        return response
