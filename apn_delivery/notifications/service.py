from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from apn_delivery.config import ApnCredentials, Settings, get_settings
from apn_delivery.errors import ApnError, MissingCertificateError
from apn_delivery.models.db import SessionLocal
from apn_delivery.models.notification import ApnDevice, DeliveryReport
from apn_delivery.services.delivery import DeliveryEngine, GatewayFactory
from apn_delivery.services.feedback import FeedbackFactory, FeedbackReconciler
from apn_delivery.storage.repository import SqlBacklog

logger = logging.getLogger(__name__)


class ApnService:
    """Per-app entry points over the SQL backlog."""

    def __init__(
        self,
        db: Session | None = None,
        settings: Settings | None = None,
        gateway_factory: GatewayFactory | None = None,
        feedback_factory: FeedbackFactory | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.backlog = SqlBacklog(db or SessionLocal(), expiry_seconds=self.settings.expiry_seconds)
        self.engine = DeliveryEngine(self.backlog, gateway_factory=gateway_factory, settings=self.settings)
        self.reconciler = FeedbackReconciler(self.backlog, feedback_factory=feedback_factory)

    def credentials_for(self, app_id: int, environment: str | None = None) -> ApnCredentials:
        app = self.backlog.get_app(app_id)
        if app is None:
            raise ValueError(f"Unknown app: {app_id}")
        env = self.settings.resolve_environment(environment)
        certificate = app.cert_for(env)
        if not certificate:
            raise MissingCertificateError(f"App {app_id} has no {env.lower()} certificate")
        return self.settings.credentials_for(certificate, environment)

    def send_notifications(
        self,
        app_id: int,
        environment: str | None = None,
        max_attempts: int | None = None,
    ) -> DeliveryReport:
        credentials = self.credentials_for(app_id, environment)
        return self.engine.deliver_batch(app_id, credentials, max_attempts=max_attempts)

    def send_group_notifications(self, app_id: int, environment: str | None = None) -> list[int]:
        credentials = self.credentials_for(app_id, environment)
        return self.engine.deliver_group_notifications(app_id, credentials)

    def send_group_notification(self, app_id: int, group_notification_id: int, environment: str | None = None) -> None:
        credentials = self.credentials_for(app_id, environment)
        group_notification = self.backlog.get_group_notification(group_notification_id)
        if group_notification is None or group_notification.sent_at is not None:
            return
        self.engine.deliver_group_notification(group_notification, credentials)

    def process_devices(self, app_id: int, environment: str | None = None) -> list[ApnDevice]:
        credentials = self.credentials_for(app_id, environment)
        return self.reconciler.reconcile(
            credentials.certificate,
            credentials.feedback_host,
            credentials.feedback_port,
            passphrase=credentials.feedback_passphrase,
        )

    def send_all_notifications(self, environment: str | None = None) -> dict:
        results = []
        for app_id in self.backlog.app_ids():
            try:
                report = self.send_notifications(app_id, environment)
                results.append(report.model_dump())
            except ApnError as exc:
                logger.exception("Notification delivery failed for app", extra={"app_id": app_id})
                results.append({"app_id": app_id, "error": str(exc)})
        return {"results": results}

    def send_all_group_notifications(self, environment: str | None = None) -> dict:
        results = []
        for app_id in self.backlog.app_ids():
            try:
                sent = self.send_group_notifications(app_id, environment)
                results.append({"app_id": app_id, "sent": sent})
            except ApnError as exc:
                logger.exception("Group notification delivery failed for app", extra={"app_id": app_id})
                results.append({"app_id": app_id, "error": str(exc)})
        return {"results": results}

    def process_all_devices(self, environment: str | None = None) -> dict:
        results = []
        for app_id in self.backlog.app_ids():
            try:
                destroyed = self.process_devices(app_id, environment)
                results.append({"app_id": app_id, "destroyed": [device.id for device in destroyed]})
            except ApnError as exc:
                logger.exception("Feedback processing failed for app", extra={"app_id": app_id})
                results.append({"app_id": app_id, "error": str(exc)})
        return {"results": results}
