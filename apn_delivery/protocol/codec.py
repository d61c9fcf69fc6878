"""Binary framing for the legacy push gateway and its feedback service.

Outbound notifications use the "enhanced" format:

    command(1)=1 | identifier(4) | expiry(4) | token length(1)=32 | token(32) | payload length(2) | payload

The gateway answers a rejected frame with a single 6 byte error frame:

    command(1)=8 | status(1) | identifier(4)

The feedback service streams 38 byte records until it closes the connection:

    timestamp(4) | token length(2)=32 | token(32)

All integers are big-endian. Nothing in here performs I/O.
"""

from __future__ import annotations

import json
import struct
from collections.abc import Iterator, Mapping
from datetime import datetime
from typing import Any

from apn_delivery.errors import MalformedFrameError, PayloadTooLargeError
from apn_delivery.models.notification import (
    ApnGroupNotification,
    ApnNotification,
    ErrorResponse,
    FeedbackRecord,
)
from apn_delivery.utils.time import from_epoch, to_epoch, utc_now

NOTIFICATION_COMMAND = 1
ERROR_COMMAND = 8
TOKEN_LENGTH = 32
MAX_PAYLOAD_LENGTH = 256
MAX_ALERT_LENGTH = 256
DEFAULT_SOUND = "1.aiff"

_HEADER = struct.Struct(">BiIB")
_PAYLOAD_LENGTH = struct.Struct(">H")
_ERROR_FRAME = struct.Struct(">BBi")
_FEEDBACK_HEADER = struct.Struct(">IH")

HEADER_LENGTH = _HEADER.size + TOKEN_LENGTH + _PAYLOAD_LENGTH.size
ERROR_FRAME_LENGTH = _ERROR_FRAME.size
FEEDBACK_RECORD_LENGTH = _FEEDBACK_HEADER.size + TOKEN_LENGTH


def normalize_token(token: str | bytes) -> bytes:
    """Return the 32 raw token bytes for a raw or hex-encoded device token."""
    if isinstance(token, (bytes, bytearray)):
        raw = bytes(token)
        if len(raw) == TOKEN_LENGTH:
            return raw
        token = raw.decode("ascii", errors="replace")
    clean = token.strip().strip("<>").replace(" ", "")
    try:
        raw = bytes.fromhex(clean)
    except ValueError as exc:
        raise ValueError(f"Device token is not valid hex: {token!r}") from exc
    if len(raw) != TOKEN_LENGTH:
        raise ValueError(f"Device token must be {TOKEN_LENGTH} bytes, got {len(raw)}")
    return raw


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_payload(
    alert: str | None = None,
    badge: int | None = None,
    sound: str | bool | None = None,
    custom_properties: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    aps: dict[str, Any] = {}
    if alert is not None:
        aps["alert"] = alert
    if badge is not None:
        aps["badge"] = int(badge)
    if sound is True:
        aps["sound"] = DEFAULT_SOUND
    elif isinstance(sound, str):
        aps["sound"] = sound

    payload: dict[str, Any] = {"aps": aps}
    for key, value in (custom_properties or {}).items():
        payload[str(key)] = _stringify(value)
    return payload


def payload_json(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def check_payload_size(payload: Mapping[str, Any]) -> bytes:
    """Serialize ``payload`` and enforce the alert and payload ceilings."""
    alert = payload.get("aps", {}).get("alert")
    if isinstance(alert, str) and len(alert) > MAX_ALERT_LENGTH:
        raise PayloadTooLargeError(alert=alert)
    body = payload_json(payload)
    if len(body) > MAX_PAYLOAD_LENGTH:
        raise PayloadTooLargeError(alert=alert, size=len(body))
    return body


def encode_notification(
    identifier: int,
    token: str | bytes,
    expiry_seconds: int,
    payload: Mapping[str, Any] | bytes,
    now: datetime | None = None,
) -> bytes:
    body = payload if isinstance(payload, bytes) else check_payload_size(payload)
    if len(body) > MAX_PAYLOAD_LENGTH:
        raise PayloadTooLargeError(size=len(body))
    expiry = to_epoch(now or utc_now()) + int(expiry_seconds)
    return b"".join(
        [
            _HEADER.pack(NOTIFICATION_COMMAND, identifier, expiry & 0xFFFFFFFF, TOKEN_LENGTH),
            normalize_token(token),
            _PAYLOAD_LENGTH.pack(len(body)),
            body,
        ]
    )


def notification_payload(notification: ApnNotification | ApnGroupNotification) -> dict[str, Any]:
    return build_payload(
        alert=notification.alert,
        badge=notification.badge,
        sound=notification.sound,
        custom_properties=notification.custom_properties,
    )


def message_for_sending(notification: ApnNotification, now: datetime | None = None) -> bytes:
    return encode_notification(
        notification.id,
        notification.device_token,
        notification.expiry_seconds,
        notification_payload(notification),
        now=now,
    )


def group_message_for_sending(
    notification: ApnGroupNotification,
    token: str | bytes,
    now: datetime | None = None,
) -> bytes:
    return encode_notification(
        notification.id,
        token,
        notification.expiry_seconds,
        notification_payload(notification),
        now=now,
    )


def encode_error_frame(command: int, status_code: int, notification_id: int) -> bytes:
    return _ERROR_FRAME.pack(command, status_code, notification_id)


def decode_error_frame(data: bytes) -> ErrorResponse:
    if len(data) != ERROR_FRAME_LENGTH:
        raise MalformedFrameError(f"Error frame must be {ERROR_FRAME_LENGTH} bytes, got {len(data)}")
    command, status_code, notification_id = _ERROR_FRAME.unpack(data)
    if command != ERROR_COMMAND:
        raise MalformedFrameError(f"Unexpected error frame command {command}")
    return ErrorResponse(command=command, status_code=status_code, notification_id=notification_id)


def encode_feedback_record(timestamp: datetime | int, token: str | bytes) -> bytes:
    seconds = timestamp if isinstance(timestamp, int) else to_epoch(timestamp)
    return _FEEDBACK_HEADER.pack(seconds, TOKEN_LENGTH) + normalize_token(token)


def decode_feedback_record(data: bytes) -> FeedbackRecord:
    if len(data) != FEEDBACK_RECORD_LENGTH:
        raise MalformedFrameError(f"Feedback record must be {FEEDBACK_RECORD_LENGTH} bytes, got {len(data)}")
    seconds, token_length = _FEEDBACK_HEADER.unpack_from(data)
    if token_length != TOKEN_LENGTH:
        raise MalformedFrameError(f"Unexpected feedback token length {token_length}")
    return FeedbackRecord(token=bytes(data[_FEEDBACK_HEADER.size :]), feedback_at=from_epoch(seconds))


def decode_feedback_records(data: bytes) -> Iterator[FeedbackRecord]:
    # A partial trailing record is end-of-stream.
    for offset in range(0, len(data) - FEEDBACK_RECORD_LENGTH + 1, FEEDBACK_RECORD_LENGTH):
        yield decode_feedback_record(data[offset : offset + FEEDBACK_RECORD_LENGTH])
