from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from apn_delivery.config import ApnCredentials, Settings, get_settings
from apn_delivery.errors import PayloadTooLargeError, RetryBudgetExceededError, WriteError
from apn_delivery.models.notification import (
    INVALID_PAYLOAD_SIZE,
    ApnGroupNotification,
    ApnNotification,
    DeliveryFailure,
    DeliveryReport,
    ErrorResponse,
    status_for,
)
from apn_delivery.protocol.codec import group_message_for_sending, message_for_sending
from apn_delivery.protocol.gateway import GatewayConnection
from apn_delivery.storage.repository import NotificationBacklog
from apn_delivery.utils.time import utc_now

logger = logging.getLogger(__name__)

OVERSIZED_POLICIES = {"abort", "skip"}

GatewayFactory = Callable[[ApnCredentials], GatewayConnection]


def open_gateway(credentials: ApnCredentials, timeout: float | None = 10.0) -> GatewayConnection:
    return GatewayConnection(
        host=credentials.gateway_host,
        port=credentials.gateway_port,
        certificate=credentials.certificate,
        passphrase=credentials.passphrase,
        timeout=timeout,
    )


@dataclass
class AttemptLedger:
    """Send order of the notifications written during one attempt."""

    entries: list[tuple[int, int]] = field(default_factory=list)

    def append(self, notification_id: int) -> None:
        self.entries.append((len(self.entries), notification_id))

    def ids(self) -> list[int]:
        return [notification_id for _, notification_id in self.entries]

    def sent_after(self, notification_id: int) -> list[int] | None:
        """Ids written strictly after ``notification_id``, or None when it was never written."""
        for index, entry_id in self.entries:
            if entry_id == notification_id:
                return [later_id for _, later_id in self.entries[index + 1 :]]
        return None


@dataclass
class AttemptOutcome:
    failure: ErrorResponse | None = None
    write_failed: bool = False


class DeliveryEngine:
    """Batch delivery over a single gateway connection with rollback on reported errors.

    The gateway reports at most one failure per connection, asynchronously, after
    an unknown number of later frames were already written. Every notification
    is marked sent before it is written; when a failure is reported, everything
    written after the failing id is reset to pending and a new attempt starts on
    a fresh connection.
    """

    def __init__(
        self,
        backlog: NotificationBacklog,
        gateway_factory: GatewayFactory | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backlog = backlog
        self.settings = settings or get_settings()
        self.gateway_factory = gateway_factory or (
            lambda credentials: open_gateway(credentials, timeout=self.settings.connect_timeout_seconds)
        )
        self.clock = clock
        if self.settings.oversized_policy not in OVERSIZED_POLICIES:
            raise ValueError(
                f"Invalid oversized policy: {self.settings.oversized_policy}. Supported values: {sorted(OVERSIZED_POLICIES)}"
            )

    def deliver_batch(
        self,
        app_id: int,
        credentials: ApnCredentials,
        max_attempts: int | None = None,
    ) -> DeliveryReport:
        if max_attempts is None:
            max_attempts = self.settings.max_delivery_attempts
        if max_attempts is None:
            max_attempts = len(self.backlog.pending_notifications(app_id))

        report = DeliveryReport(app_id=app_id)
        attempt = 0
        while True:
            if attempt > max_attempts:
                logger.error(
                    "Delivery retry budget exceeded",
                    extra={"app_id": app_id, "attempt": attempt, "max_attempts": max_attempts},
                )
                raise RetryBudgetExceededError(attempt, max_attempts)

            report.attempts = attempt + 1
            ledger = AttemptLedger()
            with self.gateway_factory(credentials) as conn:
                outcome = self._run_attempt(app_id, conn, ledger, report)

            failure = outcome.failure
            if failure is None:
                written = ledger.ids()
                if outcome.write_failed:
                    logger.warning(
                        "Gateway write failed without an error frame",
                        extra={"app_id": app_id, "attempt": attempt, "written": len(written)},
                    )
                    # Marked sent but never confirmed on the wire.
                    report.unconfirmed_ids.extend(written[-1:])
                    written = written[:-1]
                report.sent_ids.extend(written)
                logger.info(
                    "Delivery batch complete",
                    extra={"app_id": app_id, "attempts": report.attempts, "sent": len(report.sent_ids)},
                )
                return report

            self._compensate(app_id, attempt, failure, ledger, report)
            attempt += 1

    def _compensate(
        self,
        app_id: int,
        attempt: int,
        failure: ErrorResponse,
        ledger: AttemptLedger,
        report: DeliveryReport,
    ) -> None:
        self.backlog.set_error_status(failure.notification_id, failure.status_code)
        rollback = ledger.sent_after(failure.notification_id)
        matched = rollback is not None
        report.failures.append(
            DeliveryFailure(
                notification_id=failure.notification_id,
                status_code=failure.status_code,
                status=status_for(failure.status_code),
                matched=matched,
            )
        )

        if not matched:
            report.unmatched_failures.append(failure.notification_id)
            logger.warning(
                "Gateway failure id not written in this attempt",
                extra={
                    "app_id": app_id,
                    "attempt": attempt,
                    "notification_id": failure.notification_id,
                    "status_code": failure.status_code,
                },
            )
            rollback = []
        written = ledger.ids()
        kept = written[: len(written) - len(rollback)]

        self.backlog.unmark_sent(rollback)
        report.sent_ids.extend(kept)
        report.rolled_back_ids.extend(rollback)
        logger.info(
            "Rolled back notifications sent after failure",
            extra={
                "app_id": app_id,
                "attempt": attempt,
                "notification_id": failure.notification_id,
                "rolled_back": len(rollback),
            },
        )

    def _run_attempt(
        self,
        app_id: int,
        conn: GatewayConnection,
        ledger: AttemptLedger,
        report: DeliveryReport,
    ) -> AttemptOutcome:
        pending = self.backlog.pending_notifications(app_id)
        for device_id, notifications in _by_device(pending):
            for notification in notifications:
                now = self.clock()
                try:
                    frame = message_for_sending(notification, now=now)
                except PayloadTooLargeError:
                    if self.settings.oversized_policy == "abort":
                        raise
                    self._skip_oversized(app_id, notification, now, report)
                    continue

                self.backlog.mark_sent(notification.id, now)
                ledger.append(notification.id)
                try:
                    conn.write(frame)
                except WriteError:
                    return AttemptOutcome(failure=conn.poll_error(self.settings.poll_timeout_seconds), write_failed=True)

            failure = conn.poll_error(self.settings.poll_timeout_seconds)
            if failure is not None:
                return AttemptOutcome(failure=failure)
            logger.debug("Device batch written", extra={"app_id": app_id, "device_id": device_id})
        return AttemptOutcome()

    def _skip_oversized(
        self,
        app_id: int,
        notification: ApnNotification,
        now: datetime,
        report: DeliveryReport,
    ) -> None:
        logger.warning(
            "Skipping oversized notification",
            extra={"app_id": app_id, "notification_id": notification.id},
        )
        self.backlog.set_error_status(notification.id, INVALID_PAYLOAD_SIZE)
        self.backlog.mark_sent(notification.id, now)
        report.skipped_ids.append(notification.id)

    def deliver_group_notifications(self, app_id: int, credentials: ApnCredentials) -> list[int]:
        pending = self.backlog.pending_group_notifications(app_id)
        if not pending:
            return []
        sent: list[int] = []
        with self.gateway_factory(credentials) as conn:
            for group_notification in pending:
                self._fan_out(conn, group_notification)
                sent.append(group_notification.id)
        logger.info("Group notifications sent", extra={"app_id": app_id, "sent": len(sent)})
        return sent

    def deliver_group_notification(
        self,
        group_notification: ApnGroupNotification,
        credentials: ApnCredentials,
    ) -> None:
        with self.gateway_factory(credentials) as conn:
            self._fan_out(conn, group_notification)

    def _fan_out(self, conn: GatewayConnection, group_notification: ApnGroupNotification) -> None:
        # No error correlation for groups; write failures propagate.
        devices = self.backlog.group_devices(group_notification)
        for device in devices:
            conn.write(group_message_for_sending(group_notification, device.token, now=self.clock()))
        self.backlog.mark_group_sent(group_notification.id, self.clock())
        logger.debug(
            "Group notification fanned out",
            extra={"group_notification_id": group_notification.id, "devices": len(devices)},
        )


def _by_device(pending: Sequence[ApnNotification]) -> Iterator[tuple[int | None, list[ApnNotification]]]:
    # One run per device, devices in first-seen order, notifications in id order.
    runs: dict[int | None, list[ApnNotification]] = {}
    for notification in pending:
        runs.setdefault(notification.device_id, []).append(notification)
    yield from runs.items()
