"""Tests for the notification engine, dedup window and expiry sweep."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from panel.events import ChangeAction, ChangeEvent
from panel.services.notifications import (
    DedupWindow,
    ExpirySweeper,
    NotificationEngine,
    NotificationKind,
    NotificationStore,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def notifier(emitted):
    return NotificationEngine(sinks=[emitted.append], clock=lambda: NOW)


def _user_update(before, after, at):
    base = {"id": "u1", "username": "alice", "connections": 0, "max_connections": 2,
            "expiry_date": (NOW + timedelta(days=5)).isoformat(), "status": "offline"}
    return ChangeEvent(
        "streaming_users",
        ChangeAction.UPDATE,
        before={**base, **before},
        after={**base, **after},
        occurred_at=at,
    )


def _kinds(notifications):
    return [n.kind for n in notifications]


# --- Dedup window ---

def test_dedup_window_reports_repeats():
    window = DedupWindow(capacity=100)

    assert window.check_and_add("a") is False
    assert window.check_and_add("a") is True
    assert len(window) == 1


def test_dedup_window_evicts_oldest_half_past_capacity():
    window = DedupWindow(capacity=100)

    for i in range(101):
        window.check_and_add(f"k{i}")

    assert len(window) == 51
    assert "k0" not in window
    assert "k49" not in window
    assert "k50" in window
    assert "k100" in window
    # an evicted key is treated as new again
    assert window.check_and_add("k0") is False


# --- Edge rules ---

def test_connection_limit_fires_once_per_crossing(notifier):
    first = notifier.handle(_user_update({"connections": 1}, {"connections": 2}, NOW))
    second = notifier.handle(_user_update({"connections": 2}, {"connections": 2, "status": "online"},
                                        NOW + timedelta(seconds=1)))

    assert _kinds(first) == [NotificationKind.CONNECTION_LIMIT_REACHED]
    assert first[0].payload["max_connections"] == 2
    assert NotificationKind.CONNECTION_LIMIT_REACHED not in _kinds(second)


def test_connection_limit_uses_defaults_for_missing_counts(notifier):
    event = ChangeEvent(
        "streaming_users",
        ChangeAction.UPDATE,
        before={"id": "u2", "username": "dave"},
        after={"id": "u2", "username": "dave", "connections": 1},
        occurred_at=NOW,
    )

    assert _kinds(notifier.handle(event)) == [NotificationKind.CONNECTION_LIMIT_REACHED]


def test_duplicate_delivery_is_dropped(notifier, emitted):
    event = _user_update({"connections": 1}, {"connections": 2}, NOW)

    notifier.handle(event)
    repeat = notifier.handle(event)

    assert repeat == []
    assert len(emitted) == 1


def test_subscription_expired_fires_when_write_crosses_now(notifier):
    event = _user_update(
        {"expiry_date": (NOW + timedelta(hours=1)).isoformat()},
        {"expiry_date": (NOW - timedelta(minutes=1)).isoformat()},
        NOW,
    )

    assert _kinds(notifier.handle(event)) == [NotificationKind.SUBSCRIPTION_EXPIRED]


def test_expiry_already_in_the_past_does_not_fire(notifier):
    event = _user_update(
        {"expiry_date": (NOW - timedelta(days=2)).isoformat()},
        {"expiry_date": (NOW - timedelta(days=1)).isoformat()},
        NOW,
    )

    assert notifier.handle(event) == []


def test_stream_status_edges(notifier):
    went_live = ChangeEvent("streams", ChangeAction.UPDATE,
                            before={"id": "s1", "name": "News", "status": "offline"},
                            after={"id": "s1", "name": "News", "status": "live"}, occurred_at=NOW)
    went_down = ChangeEvent("streams", ChangeAction.UPDATE,
                            before={"id": "s1", "name": "News", "status": "live"},
                            after={"id": "s1", "name": "News", "status": "error"},
                            occurred_at=NOW + timedelta(seconds=1))

    assert _kinds(notifier.handle(went_live)) == [NotificationKind.ENTITY_WENT_ONLINE]
    offline = notifier.handle(went_down)
    assert _kinds(offline) == [NotificationKind.ENTITY_WENT_OFFLINE]
    assert offline[0].payload["status"] == "error"


def test_subscriber_going_offline_is_not_reported(notifier):
    went_online = _user_update({"status": "offline"}, {"status": "online"}, NOW)
    went_offline = _user_update({"status": "online"}, {"status": "offline"}, NOW + timedelta(seconds=1))

    assert _kinds(notifier.handle(went_online)) == [NotificationKind.ENTITY_WENT_ONLINE]
    assert notifier.handle(went_offline) == []


def test_server_status_edges(notifier):
    event = ChangeEvent("servers", ChangeAction.UPDATE,
                        before={"id": "srv", "name": "edge-1", "status": "online"},
                        after={"id": "srv", "name": "edge-1", "status": "maintenance"}, occurred_at=NOW)

    assert _kinds(notifier.handle(event)) == [NotificationKind.ENTITY_WENT_OFFLINE]


def test_insert_emits_entity_created(notifier):
    event = ChangeEvent("streams", ChangeAction.INSERT, after={"id": "s9", "name": "Sports"}, occurred_at=NOW)

    notifications = notifier.handle(event)

    assert _kinds(notifications) == [NotificationKind.ENTITY_CREATED]
    assert "Sports" in notifications[0].message


def test_tables_without_rules_are_ignored(notifier, emitted):
    event = ChangeEvent("vod_content", ChangeAction.INSERT, after={"id": "v1", "name": "Film"}, occurred_at=NOW)

    assert notifier.handle(event) == []
    assert emitted == []


def test_malformed_event_does_not_stop_the_engine(notifier, emitted):
    bad = _user_update({"connections": 1}, {"connections": "lots"}, NOW)
    good = _user_update({"connections": 1}, {"connections": 2}, NOW + timedelta(seconds=1))

    assert notifier.handle(bad) == []
    assert _kinds(notifier.handle(good)) == [NotificationKind.CONNECTION_LIMIT_REACHED]
    assert len(emitted) == 1


def test_failing_sink_does_not_block_other_sinks(emitted):
    broken = MagicMock(side_effect=RuntimeError("sink down"))
    notifier = NotificationEngine(sinks=[broken, emitted.append], clock=lambda: NOW)

    notifier.handle(ChangeEvent("streams", ChangeAction.INSERT, after={"id": "s1", "name": "News"}, occurred_at=NOW))

    broken.assert_called_once()
    assert len(emitted) == 1


# --- Expiry sweep ---

def test_sweep_reports_subscriptions_expiring_within_window(db, notifier, emitted, make_user):
    make_user("soon", expiry_date=NOW + timedelta(hours=2))
    make_user("later", expiry_date=NOW + timedelta(days=3))
    make_user("gone", expiry_date=NOW - timedelta(hours=2))

    notification = notifier.sweep_expiring(db)

    assert notification.kind == NotificationKind.EXPIRING_SOON
    assert notification.payload["count"] == 1
    assert notification.payload["usernames"] == ["soon"]
    assert notification.payload["window_hours"] == 24
    assert emitted == [notification]
    assert notifier.last_swept_at == NOW


def test_sweep_with_nothing_expiring_emits_nothing(db, notifier, emitted, make_user):
    make_user("later", expiry_date=NOW + timedelta(days=3))

    assert notifier.sweep_expiring(db) is None
    assert emitted == []
    assert notifier.swept_recently(timedelta(minutes=5)) is True


def test_sweep_store_error_is_logged_not_raised(notifier, emitted):
    broken = MagicMock()
    broken.execute.side_effect = OperationalError("SELECT", {}, Exception("locked"))

    assert notifier.sweep_expiring(broken) is None
    assert emitted == []
    assert notifier.last_swept_at == NOW


def test_swept_recently_before_any_sweep(notifier):
    assert notifier.swept_recently(timedelta(minutes=5)) is False


def test_sweeper_run_once_uses_fresh_session(session_factory, notifier, emitted, make_user):
    make_user("soon", expiry_date=NOW + timedelta(hours=1))
    sweeper = ExpirySweeper(notifier, session_factory, interval_seconds=3600)

    notification = sweeper.run_once()

    assert notification.payload["usernames"] == ["soon"]


# --- Persistence ---

def test_store_sink_persists_and_marks_read(db, session_factory):
    store = NotificationStore(session_factory)
    notifier = NotificationEngine(sinks=[store], clock=lambda: NOW)
    notifier.handle(ChangeEvent("streams", ChangeAction.INSERT, after={"id": "s1", "name": "News"}, occurred_at=NOW))

    listed = NotificationStore.list_recent(db)
    assert len(listed) == 1
    assert listed[0]["kind"] == "entity_created"
    assert listed[0]["severity"] == "info"
    assert listed[0]["read"] is False

    assert NotificationStore.mark_read(db, listed[0]["id"]) is True
    assert NotificationStore.list_recent(db, unread_only=True) == []
    assert NotificationStore.mark_read(db, 9999) is False


def test_expiry_passing_without_a_write_is_only_seen_by_the_sweep(db, emitted, make_user):
    clock = {"now": NOW}
    notifier = NotificationEngine(sinks=[emitted.append], clock=lambda: clock["now"])
    make_user("quiet", expiry_date=NOW + timedelta(hours=1))

    clock["now"] = NOW + timedelta(hours=2)

    # nothing was written, so the change feed path has nothing to evaluate
    assert emitted == []
    assert notifier.sweep_expiring(db) is None

    clock["now"] = NOW
    assert notifier.sweep_expiring(db).payload["usernames"] == ["quiet"]
