from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

ALERT_MAX_LENGTH = 150
ALERT_TRUNCATION_MARKER = "..."
DEFAULT_EXPIRY_SECONDS = 30 * 24 * 60 * 60

ERROR_RESPONSE_STATUS_CODES: dict[int, str] = {
    0: "no_errors_encountered",
    1: "processing_error",
    2: "missing_device_token",
    3: "missing_topic",
    4: "missing_payload",
    5: "invalid_token_size",
    6: "invalid_topic_size",
    7: "invalid_payload_size",
    8: "invalid_token",
    255: "unknown",
}
INVALID_PAYLOAD_SIZE = 7


def truncate_alert(message: str | None) -> str | None:
    if message and len(message) > ALERT_MAX_LENGTH:
        return message[:ALERT_MAX_LENGTH] + ALERT_TRUNCATION_MARKER
    return message


def status_for(error_response_status_code: int | None) -> str:
    """Human readable version of a gateway status code."""
    if error_response_status_code is None:
        return "ok"
    return ERROR_RESPONSE_STATUS_CODES.get(error_response_status_code, "other")


class ApnNotification(BaseModel):
    id: int
    device_id: int | None = None
    device_token: str | bytes
    alert: str | None = None
    badge: int | None = Field(default=None, ge=0)
    sound: str | bool | None = None
    custom_properties: dict[str, Any] | None = None
    expiry_seconds: int = DEFAULT_EXPIRY_SECONDS
    sent_at: datetime | None = None
    error_response_status_code: int | None = None

    @field_validator("alert")
    @classmethod
    def _truncate_alert(cls, value: str | None) -> str | None:
        return truncate_alert(value)

    @property
    def status(self) -> str:
        return status_for(self.error_response_status_code)


class ApnGroupNotification(BaseModel):
    id: int
    group_id: int
    alert: str | None = None
    badge: int | None = Field(default=None, ge=0)
    sound: str | bool | None = None
    custom_properties: dict[str, Any] | None = None
    expiry_seconds: int = DEFAULT_EXPIRY_SECONDS
    sent_at: datetime | None = None

    @field_validator("alert")
    @classmethod
    def _truncate_alert(cls, value: str | None) -> str | None:
        return truncate_alert(value)


class ApnDevice(BaseModel):
    id: int
    token: str | bytes
    last_registered_at: datetime
    feedback_at: datetime | None = None


class ErrorResponse(BaseModel):
    command: int
    status_code: int
    notification_id: int

    @property
    def status(self) -> str:
        return status_for(self.status_code)


class FeedbackRecord(BaseModel):
    token: bytes
    feedback_at: datetime


class DeliveryFailure(BaseModel):
    notification_id: int
    status_code: int
    status: str
    matched: bool = True


class DeliveryReport(BaseModel):
    app_id: int
    attempts: int = 0
    sent_ids: list[int] = []
    rolled_back_ids: list[int] = []
    failures: list[DeliveryFailure] = []
    unmatched_failures: list[int] = []
    skipped_ids: list[int] = []
    unconfirmed_ids: list[int] = []
