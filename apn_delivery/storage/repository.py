from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from apn_delivery.models.notification import (
    ApnDevice,
    ApnGroupNotification,
    ApnNotification,
    truncate_alert,
)
from apn_delivery.models.tables import App, Device, Group, GroupNotification, Notification
from apn_delivery.protocol.codec import normalize_token

logger = logging.getLogger(__name__)


class NotificationBacklog(Protocol):
    def pending_notifications(self, app_id: int) -> Sequence[ApnNotification]: ...

    def mark_sent(self, notification_id: int, sent_at: datetime) -> None: ...

    def unmark_sent(self, notification_ids: Iterable[int]) -> None: ...

    def set_error_status(self, notification_id: int, status_code: int) -> None: ...

    def pending_group_notifications(self, app_id: int) -> Sequence[ApnGroupNotification]: ...

    def group_devices(self, group_notification: ApnGroupNotification) -> Sequence[ApnDevice]: ...

    def mark_group_sent(self, group_notification_id: int, sent_at: datetime) -> None: ...


class DeviceDirectory(Protocol):
    def find_by_token(self, token: bytes) -> ApnDevice | None: ...

    def record_feedback(self, device: ApnDevice, feedback_at: datetime) -> None: ...

    def destroy(self, device: ApnDevice) -> None: ...


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo else value


class InMemoryBacklog:
    """Backlog and device directory kept in dictionaries, ordered by insertion."""

    def __init__(self) -> None:
        self._notifications: dict[int, ApnNotification] = {}
        self._app_devices: dict[int, list[int]] = defaultdict(list)
        self._devices: dict[int, ApnDevice] = {}
        self._group_notifications: dict[int, tuple[int, ApnGroupNotification]] = {}
        self._groups: dict[int, list[int]] = defaultdict(list)
        self._next_id = 1

    def _allocate_id(self) -> int:
        allocated = self._next_id
        self._next_id += 1
        return allocated

    def add_device(self, app_id: int, token: str | bytes, last_registered_at: datetime) -> ApnDevice:
        device = ApnDevice(id=self._allocate_id(), token=token, last_registered_at=last_registered_at)
        self._devices[device.id] = device
        self._app_devices[app_id].append(device.id)
        return device

    def add_notification(self, device: ApnDevice, **fields: Any) -> ApnNotification:
        notification = ApnNotification(
            id=self._allocate_id(),
            device_id=device.id,
            device_token=device.token,
            **fields,
        )
        self._notifications[notification.id] = notification
        return notification

    def add_group_notification(self, app_id: int, group_id: int, devices: Sequence[ApnDevice], **fields: Any) -> ApnGroupNotification:
        notification = ApnGroupNotification(id=self._allocate_id(), group_id=group_id, **fields)
        self._groups[group_id] = [device.id for device in devices]
        self._group_notifications[notification.id] = (app_id, notification)
        return notification

    def get(self, notification_id: int) -> ApnNotification:
        return self._notifications[notification_id]

    def get_group(self, group_notification_id: int) -> ApnGroupNotification:
        return self._group_notifications[group_notification_id][1]

    def devices(self) -> list[ApnDevice]:
        return list(self._devices.values())

    def pending_notifications(self, app_id: int) -> list[ApnNotification]:
        device_ids = set(self._app_devices.get(app_id, []))
        return [
            n.model_copy()
            for n in self._notifications.values()
            if n.sent_at is None and n.device_id in device_ids
        ]

    def mark_sent(self, notification_id: int, sent_at: datetime) -> None:
        self._notifications[notification_id].sent_at = sent_at

    def unmark_sent(self, notification_ids: Iterable[int]) -> None:
        for notification_id in notification_ids:
            if notification_id in self._notifications:
                self._notifications[notification_id].sent_at = None

    def set_error_status(self, notification_id: int, status_code: int) -> None:
        notification = self._notifications.get(notification_id)
        if notification is None:
            logger.warning("Error status for unknown notification", extra={"notification_id": notification_id})
            return
        notification.error_response_status_code = status_code

    def pending_group_notifications(self, app_id: int) -> list[ApnGroupNotification]:
        return [n for owner, n in self._group_notifications.values() if owner == app_id and n.sent_at is None]

    def group_devices(self, group_notification: ApnGroupNotification) -> list[ApnDevice]:
        return [self._devices[d] for d in self._groups.get(group_notification.group_id, []) if d in self._devices]

    def mark_group_sent(self, group_notification_id: int, sent_at: datetime) -> None:
        self._group_notifications[group_notification_id][1].sent_at = sent_at

    def find_by_token(self, token: bytes) -> ApnDevice | None:
        for device in self._devices.values():
            if normalize_token(device.token) == token:
                return device
        return None

    def record_feedback(self, device: ApnDevice, feedback_at: datetime) -> None:
        device.feedback_at = feedback_at

    def destroy(self, device: ApnDevice) -> None:
        self._devices.pop(device.id, None)
        for device_ids in self._app_devices.values():
            if device.id in device_ids:
                device_ids.remove(device.id)
        self._notifications = {k: n for k, n in self._notifications.items() if n.device_id != device.id}


def _sound_from_column(raw: str | None) -> str | bool | None:
    if raw is None:
        return None
    lowered = raw.strip().lower()
    if lowered == "true":
        return True
    if lowered in ("", "false"):
        return None
    return raw


def _sound_to_column(sound: str | bool | None) -> str | None:
    if sound is True:
        return "true"
    if not sound:
        return None
    return str(sound)


class SqlBacklog:
    """Backlog and device directory on top of the apn_* tables."""

    def __init__(self, db: Session, expiry_seconds: int | None = None) -> None:
        self.db = db
        self.expiry_seconds = expiry_seconds

    def _to_notification(self, row: Notification, token: str) -> ApnNotification:
        fields: dict[str, Any] = {}
        if self.expiry_seconds is not None:
            fields["expiry_seconds"] = self.expiry_seconds
        return ApnNotification(
            id=row.id,
            device_id=row.device_id,
            device_token=token,
            alert=row.alert,
            badge=row.badge,
            sound=_sound_from_column(row.sound),
            custom_properties=row.custom_properties,
            sent_at=row.sent_at,
            error_response_status_code=row.error_response_status_code,
            **fields,
        )

    @staticmethod
    def _to_device(row: Device) -> ApnDevice:
        return ApnDevice(
            id=row.id,
            token=row.token,
            last_registered_at=row.last_registered_at,
            feedback_at=row.feedback_at,
        )

    def app_ids(self) -> list[int]:
        return list(self.db.execute(select(App.id).order_by(App.id)).scalars().all())

    def get_app(self, app_id: int) -> App | None:
        return self.db.get(App, app_id)

    def create_notification(
        self,
        device_id: int,
        alert: str | None = None,
        badge: int | None = None,
        sound: str | bool | None = None,
        custom_properties: dict[str, Any] | None = None,
    ) -> Notification:
        row = Notification(
            device_id=device_id,
            alert=truncate_alert(alert),
            badge=badge,
            sound=_sound_to_column(sound),
            custom_properties=custom_properties,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        return row

    def pending_notifications(self, app_id: int) -> list[ApnNotification]:
        rows = self.db.execute(
            select(Notification, Device.token)
            .join(Device, Notification.device_id == Device.id)
            .where(Device.app_id == app_id, Notification.sent_at.is_(None))
            .order_by(Notification.id)
        ).all()
        return [self._to_notification(row, token) for row, token in rows]

    def mark_sent(self, notification_id: int, sent_at: datetime) -> None:
        self.db.execute(update(Notification).where(Notification.id == notification_id).values(sent_at=_naive(sent_at)))
        self.db.commit()

    def unmark_sent(self, notification_ids: Iterable[int]) -> None:
        ids = list(notification_ids)
        if not ids:
            return
        self.db.execute(update(Notification).where(Notification.id.in_(ids)).values(sent_at=None))
        self.db.commit()

    def set_error_status(self, notification_id: int, status_code: int) -> None:
        result = self.db.execute(
            update(Notification)
            .where(Notification.id == notification_id)
            .values(error_response_status_code=status_code)
        )
        self.db.commit()
        if not result.rowcount:
            logger.warning("Error status for unknown notification", extra={"notification_id": notification_id})

    def pending_group_notifications(self, app_id: int) -> list[ApnGroupNotification]:
        rows = self.db.execute(
            select(GroupNotification)
            .join(Group, GroupNotification.group_id == Group.id)
            .where(Group.app_id == app_id, GroupNotification.sent_at.is_(None))
            .order_by(GroupNotification.id)
        ).scalars().all()
        return [self._to_group_notification(row) for row in rows]

    def get_group_notification(self, group_notification_id: int) -> ApnGroupNotification | None:
        row = self.db.get(GroupNotification, group_notification_id)
        return self._to_group_notification(row) if row else None

    def _to_group_notification(self, row: GroupNotification) -> ApnGroupNotification:
        fields: dict[str, Any] = {}
        if self.expiry_seconds is not None:
            fields["expiry_seconds"] = self.expiry_seconds
        return ApnGroupNotification(
            id=row.id,
            group_id=row.group_id,
            alert=row.alert,
            badge=row.badge,
            sound=_sound_from_column(row.sound),
            custom_properties=row.custom_properties,
            sent_at=row.sent_at,
            **fields,
        )

    def group_devices(self, group_notification: ApnGroupNotification) -> list[ApnDevice]:
        group = self.db.get(Group, group_notification.group_id)
        if group is None:
            return []
        return [self._to_device(row) for row in sorted(group.devices, key=lambda d: d.id)]

    def mark_group_sent(self, group_notification_id: int, sent_at: datetime) -> None:
        self.db.execute(
            update(GroupNotification)
            .where(GroupNotification.id == group_notification_id)
            .values(sent_at=_naive(sent_at))
        )
        self.db.commit()

    def find_by_token(self, token: bytes) -> ApnDevice | None:
        # Tokens are stored as hex, possibly spaced, bracketed or upper case.
        stored = func.lower(func.replace(func.replace(func.replace(Device.token, " ", ""), "<", ""), ">", ""))
        row = self.db.execute(select(Device).where(stored == token.hex()).order_by(Device.id).limit(1)).scalars().first()
        return self._to_device(row) if row else None

    def record_feedback(self, device: ApnDevice, feedback_at: datetime) -> None:
        self.db.execute(update(Device).where(Device.id == device.id).values(feedback_at=_naive(feedback_at)))
        self.db.commit()
        device.feedback_at = feedback_at

    def destroy(self, device: ApnDevice) -> None:
        row = self.db.get(Device, device.id)
        if row is None:
            return
        self.db.delete(row)
        self.db.commit()
