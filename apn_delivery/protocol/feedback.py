from __future__ import annotations

import logging
import ssl
from collections.abc import Iterator

from apn_delivery.errors import ApnConnectionError
from apn_delivery.models.notification import FeedbackRecord
from apn_delivery.protocol.codec import FEEDBACK_RECORD_LENGTH, decode_feedback_record
from apn_delivery.protocol.connection import TLSConnection

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class FeedbackConnection(TLSConnection):
    kind = "feedback"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._drained = False

    def __enter__(self) -> FeedbackConnection:
        self.open()
        return self

    def read_all(self) -> Iterator[FeedbackRecord]:
        """Yield feedback records until the service closes the connection.

        The sequence can only be consumed once. A trailing partial record at close
        is dropped.
        """
        if self._drained:
            raise RuntimeError("Feedback stream has already been read")
        self._drained = True
        return self._records()

    def _records(self) -> Iterator[FeedbackRecord]:
        sock = self._require_socket()
        buffer = b""
        count = 0
        while True:
            try:
                chunk = sock.recv(READ_CHUNK_SIZE)
            except (OSError, ssl.SSLError) as exc:
                raise ApnConnectionError(f"Feedback read from {self.host}:{self.port} failed: {exc}") from exc
            if not chunk:
                break
            buffer += chunk
            while len(buffer) >= FEEDBACK_RECORD_LENGTH:
                record, buffer = buffer[:FEEDBACK_RECORD_LENGTH], buffer[FEEDBACK_RECORD_LENGTH:]
                count += 1
                yield decode_feedback_record(record)
        if buffer:
            logger.warning("Dropping partial feedback record", extra={"host": self.host, "bytes": len(buffer)})
        logger.info("Feedback stream drained", extra={"host": self.host, "records": count})
