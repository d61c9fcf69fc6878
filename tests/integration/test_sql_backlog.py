from __future__ import annotations

from datetime import datetime, timedelta

from apn_delivery.models.tables import App, Device, Group, GroupNotification, Notification
from apn_delivery.storage.repository import SqlBacklog


def _seed(db, make_token):
    app = App(apn_dev_cert="DEV PEM", apn_prod_cert=None)
    other = App(apn_dev_cert="OTHER PEM")
    db.add_all([app, other])
    db.flush()
    spaced = " ".join(make_token(1)[i : i + 8] for i in range(0, 64, 8))
    device = Device(app_id=app.id, token=spaced, last_registered_at=datetime(2024, 1, 1))
    foreign = Device(app_id=other.id, token=make_token(2), last_registered_at=datetime(2024, 1, 1))
    db.add_all([device, foreign])
    db.commit()
    return app, other, device, foreign


def test_pending_notifications_are_scoped_to_app_and_ordered(db_session, make_token) -> None:
    app, _other, device, foreign = _seed(db_session, make_token)
    backlog = SqlBacklog(db_session, expiry_seconds=3600)
    first = backlog.create_notification(device.id, alert="first", badge=0, sound=True, custom_properties={"typ": 1})
    second = backlog.create_notification(device.id, alert="b" * 200)
    backlog.create_notification(foreign.id, alert="elsewhere")

    pending = backlog.pending_notifications(app.id)

    assert [n.id for n in pending] == [first.id, second.id]
    assert pending[0].sound is True
    assert pending[0].badge == 0
    assert pending[0].custom_properties == {"typ": 1}
    assert pending[0].expiry_seconds == 3600
    assert pending[0].device_token == device.token
    assert pending[1].alert == "b" * 150 + "..."


def test_mark_unmark_and_error_status(db_session, make_token) -> None:
    app, _other, device, _foreign = _seed(db_session, make_token)
    backlog = SqlBacklog(db_session)
    rows = [backlog.create_notification(device.id, alert=f"n{i}") for i in range(3)]
    ids = [row.id for row in rows]
    now = datetime(2024, 2, 1, 8, 30)

    for notification_id in ids:
        backlog.mark_sent(notification_id, now)
    backlog.set_error_status(ids[0], 8)
    backlog.unmark_sent(ids[1:])
    backlog.set_error_status(12345, 1)

    assert [n.id for n in backlog.pending_notifications(app.id)] == ids[1:]
    stored = db_session.get(Notification, ids[0])
    db_session.refresh(stored)
    assert stored.sent_at == now
    assert stored.error_response_status_code == 8


def test_find_by_token_matches_spaced_hex_and_destroy(db_session, make_token) -> None:
    _app, _other, device, _foreign = _seed(db_session, make_token)
    backlog = SqlBacklog(db_session)
    backlog.create_notification(device.id, alert="gone")

    found = backlog.find_by_token(bytes.fromhex(make_token(1)))
    assert found is not None
    assert found.id == device.id

    feedback_at = datetime(2024, 3, 1)
    backlog.record_feedback(found, feedback_at)
    db_session.refresh(device)
    assert device.feedback_at == feedback_at

    backlog.destroy(found)
    assert backlog.find_by_token(bytes.fromhex(make_token(1))) is None
    assert db_session.query(Notification).count() == 0


def test_find_by_token_ignores_case_and_brackets(db_session, make_token) -> None:
    app, _other, device, _foreign = _seed(db_session, make_token)
    bracketed = Device(app_id=app.id, token=f"<{make_token(7).upper()}>", last_registered_at=datetime(2024, 1, 1))
    db_session.add(bracketed)
    db_session.commit()
    backlog = SqlBacklog(db_session)

    found = backlog.find_by_token(bytes.fromhex(make_token(7)))

    assert found is not None
    assert found.id == bracketed.id
    assert backlog.find_by_token(bytes.fromhex(make_token(99))) is None


def test_group_notifications(db_session, make_token) -> None:
    app, _other, device, _foreign = _seed(db_session, make_token)
    second = Device(app_id=app.id, token=make_token(3), last_registered_at=datetime(2024, 1, 2))
    group = Group(app_id=app.id, name="beta", devices=[device, second])
    db_session.add_all([second, group])
    db_session.commit()
    row = GroupNotification(group_id=group.id, alert="hello group")
    db_session.add(row)
    db_session.commit()
    backlog = SqlBacklog(db_session)

    pending = backlog.pending_group_notifications(app.id)
    assert [n.id for n in pending] == [row.id]
    assert [d.id for d in backlog.group_devices(pending[0])] == [device.id, second.id]

    backlog.mark_group_sent(row.id, datetime(2024, 1, 3) + timedelta(hours=1))
    assert backlog.pending_group_notifications(app.id) == []


def test_app_ids(db_session, make_token) -> None:
    app, other, _device, _foreign = _seed(db_session, make_token)
    assert SqlBacklog(db_session).app_ids() == [app.id, other.id]
