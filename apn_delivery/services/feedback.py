from __future__ import annotations

import logging
from collections.abc import Callable

from apn_delivery.models.notification import ApnDevice
from apn_delivery.protocol.feedback import FeedbackConnection
from apn_delivery.storage.repository import DeviceDirectory
from apn_delivery.utils.time import as_utc

logger = logging.getLogger(__name__)

FeedbackFactory = Callable[[bytes, str, int, str], FeedbackConnection]


def open_feedback(certificate: bytes, host: str, port: int, passphrase: str = "") -> FeedbackConnection:
    return FeedbackConnection(host=host, port=port, certificate=certificate, passphrase=passphrase)


class FeedbackReconciler:
    """Retires devices the feedback service reports as no longer accepting notifications.

    A device is only destroyed when it last registered before the reported
    feedback time. A later registration means the app was reinstalled and the
    feedback is stale.
    """

    def __init__(self, devices: DeviceDirectory, feedback_factory: FeedbackFactory | None = None) -> None:
        self.devices = devices
        self.feedback_factory = feedback_factory or open_feedback

    def reconcile(self, certificate: bytes, host: str, port: int, passphrase: str = "") -> list[ApnDevice]:
        destroyed: list[ApnDevice] = []
        with self.feedback_factory(certificate, host, port, passphrase) as conn:
            for record in conn.read_all():
                device = self.devices.find_by_token(record.token)
                if device is None:
                    logger.debug("Feedback for unknown device", extra={"token": record.token.hex()})
                    continue
                self.devices.record_feedback(device, record.feedback_at)
                if as_utc(device.last_registered_at) < as_utc(record.feedback_at):
                    logger.debug(
                        "Destroying device reported by feedback",
                        extra={
                            "device_id": device.id,
                            "last_registered_at": device.last_registered_at.isoformat(),
                            "feedback_at": record.feedback_at.isoformat(),
                        },
                    )
                    self.devices.destroy(device)
                    destroyed.append(device)
                else:
                    logger.debug(
                        "Keeping device registered after feedback",
                        extra={
                            "device_id": device.id,
                            "last_registered_at": device.last_registered_at.isoformat(),
                            "feedback_at": record.feedback_at.isoformat(),
                        },
                    )
        logger.info("Feedback reconciliation complete", extra={"host": host, "destroyed": len(destroyed)})
        return destroyed
