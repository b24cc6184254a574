"""
Tests for the activity log sink.
"""

from unittest.mock import MagicMock, patch

from flashliq.liquidation.activity import ActivityLog
from flashliq.liquidation.models import ActivityEvent


def test_recent_newest_first_and_filtered():
    activity = ActivityLog()
    activity.record(ActivityEvent(chain_id=1, kind="connected", message="up"))
    activity.record(ActivityEvent(chain_id=10, kind="connected", message="up"))
    activity.record(ActivityEvent(chain_id=1, kind="disconnected", message="down", level="warning"))

    assert [e.kind for e in activity.recent()] == ["disconnected", "connected", "connected"]
    assert [e.chain_id for e in activity.recent(chain_id=1)] == [1, 1]
    assert len(activity.recent(kind="connected")) == 2
    assert len(activity.recent(limit=1)) == 1


def test_history_is_bounded():
    activity = ActivityLog(history=2)
    for i in range(5):
        activity.record(ActivityEvent(chain_id=1, kind="tick", message=str(i)))
    assert [e.message for e in activity.recent()] == ["4", "3"]


def test_notifications_only_when_enabled():
    config = MagicMock(NOTIFICATION_URL="json://localhost")
    with patch("flashliq.liquidation.activity.post_error_notification") as post_error:
        ActivityLog(notify=False, configs={1: config}).record(
            ActivityEvent(chain_id=1, kind="failure", message="boom", level="error")
        )
        post_error.assert_not_called()

        ActivityLog(notify=True, configs={1: config}).record(
            ActivityEvent(chain_id=1, kind="failure", message="boom", level="error")
        )
        post_error.assert_called_once_with("boom", config)


def test_events_routed_to_matching_notification():
    config = MagicMock(NOTIFICATION_URL="json://localhost")
    activity = ActivityLog(notify=True, configs={1: config})
    settlement = ActivityEvent(chain_id=1, kind="settlement", message="done")
    exhausted = ActivityEvent(chain_id=1, kind="reconnect_exhausted", message="gone", level="error")

    with patch("flashliq.liquidation.activity.post_settlement_notification") as post_settlement, patch(
        "flashliq.liquidation.activity.post_reconnect_exhausted_notification"
    ) as post_exhausted:
        activity.record(settlement)
        activity.record(exhausted)
        activity.record(ActivityEvent(chain_id=1, kind="connected", message="up"))

    post_settlement.assert_called_once_with(settlement, config)
    post_exhausted.assert_called_once_with(exhausted, config)


def test_notification_failure_is_logged_not_raised():
    config = MagicMock(NOTIFICATION_URL="json://localhost")
    activity = ActivityLog(notify=True, configs={1: config})
    with patch("flashliq.liquidation.activity.post_error_notification", side_effect=RuntimeError("offline")):
        activity.record(ActivityEvent(chain_id=1, kind="failure", message="boom", level="error"))
    assert len(activity.recent()) == 1
