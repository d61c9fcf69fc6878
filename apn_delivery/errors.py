from __future__ import annotations


class ApnError(Exception):
    """Base class for every failure raised by the delivery engine."""


class ApnConnectionError(ApnError, ConnectionError):
    """TLS handshake, DNS or unexpected-close failure on a gateway or feedback session."""


class WriteError(ApnError):
    """A frame could not be written because the peer reset or closed the socket."""


class MalformedFrameError(ApnError, ValueError):
    """An inbound frame had an unexpected length or command byte."""


class PayloadTooLargeError(ApnError, ValueError):
    def __init__(self, alert: str | None = None, size: int | None = None) -> None:
        self.alert = alert
        self.size = size
        if size is not None:
            message = f"Payload of {size} bytes exceeds the 256 byte limit"
        else:
            message = f"Alert of {len(alert or '')} characters exceeds the 256 character limit"
        super().__init__(message)


class RetryBudgetExceededError(ApnError):
    def __init__(self, attempt: int, max_attempts: int) -> None:
        self.attempt = attempt
        self.max_attempts = max_attempts
        super().__init__(f"Delivery attempt {attempt} exceeds the retry budget of {max_attempts}")


class MissingCertificateError(ApnError):
    def __init__(self, message: str = "This app has no certificate for the selected environment") -> None:
        super().__init__(message)
