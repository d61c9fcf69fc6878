from __future__ import annotations

from datetime import timedelta

import pytest

from apn_delivery.errors import ApnConnectionError
from apn_delivery.services.feedback import FeedbackReconciler


def test_stale_device_is_destroyed_and_reregistered_device_kept(backlog, fake_feedback, make_token, fixed_now, test_cert) -> None:
    t0 = fixed_now - timedelta(days=10)
    t1 = fixed_now - timedelta(days=5)
    t2 = fixed_now - timedelta(days=1)
    stale = backlog.add_device(app_id=1, token=make_token(1), last_registered_at=t0)
    fresh = backlog.add_device(app_id=1, token=make_token(2), last_registered_at=t2)
    feedback = fake_feedback([(t1, make_token(1)), (t1, make_token(2))])

    destroyed = FeedbackReconciler(backlog, feedback_factory=feedback).reconcile(test_cert, "feedback.test", 2196)

    assert [device.id for device in destroyed] == [stale.id]
    assert [device.id for device in backlog.devices()] == [fresh.id]
    assert fresh.feedback_at == t1
    assert feedback.calls == [(test_cert, "feedback.test", 2196, "")]
    assert feedback.connections[0].closed


def test_unknown_tokens_are_ignored(backlog, fake_feedback, make_token, fixed_now, test_cert) -> None:
    backlog.add_device(app_id=1, token=make_token(1), last_registered_at=fixed_now)
    feedback = fake_feedback([(fixed_now, make_token(99))])

    assert FeedbackReconciler(backlog, feedback_factory=feedback).reconcile(test_cert, "feedback.test", 2196) == []
    assert len(backlog.devices()) == 1


def test_destroying_device_removes_its_notifications(backlog, fake_feedback, make_token, fixed_now, test_cert) -> None:
    device = backlog.add_device(app_id=1, token=make_token(1), last_registered_at=fixed_now - timedelta(days=2))
    backlog.add_notification(device, alert="bye")
    feedback = fake_feedback([(fixed_now, make_token(1))])

    FeedbackReconciler(backlog, feedback_factory=feedback).reconcile(test_cert, "feedback.test", 2196)

    assert backlog.pending_notifications(1) == []


def test_connection_errors_propagate(backlog, test_cert) -> None:
    class _BrokenFeedback:
        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return None

        def read_all(self):
            raise ApnConnectionError("feedback reset")

    reconciler = FeedbackReconciler(backlog, feedback_factory=lambda *args: _BrokenFeedback())
    with pytest.raises(ApnConnectionError):
        reconciler.reconcile(test_cert, "feedback.test", 2196)
