"""Tests for commit-time change capture and fan-out."""
from datetime import datetime, timedelta

import pytest

from panel.change_feed import ChangeFeed
from panel.events import ChangeAction, ChangeEvent, parse_timestamp
from panel.models import StreamingUser, VodContent


@pytest.fixture
def received():
    return []


@pytest.fixture
def feed(session_factory, received):
    feed = ChangeFeed(["streaming_users", "streams"], threaded=False)
    feed.subscribe("recorder", received.append)
    feed.attach(session_factory)
    feed.start()
    yield feed
    feed.stop()
    feed.detach(session_factory)


def _user(username="alice"):
    return StreamingUser(username=username, password="pw", expiry_date=datetime.utcnow() + timedelta(days=30))


def test_insert_is_published_on_commit(db, feed, received):
    user = _user()
    db.add(user)
    db.flush()
    assert received == []

    db.commit()

    assert len(received) == 1
    assert received[0].action == ChangeAction.INSERT
    assert received[0].before is None
    assert received[0].after["username"] == "alice"
    assert received[0].record_id == user.id


def test_update_carries_previous_values(db, feed, received):
    user = _user()
    db.add(user)
    db.commit()
    received.clear()

    user.connections = 1
    db.commit()

    assert len(received) == 1
    event = received[0]
    assert event.action == ChangeAction.UPDATE
    assert event.before["connections"] == 0
    assert event.after["connections"] == 1
    assert event.before["username"] == event.after["username"] == "alice"


def test_delete_carries_last_row(db, feed, received):
    user = _user()
    db.add(user)
    db.commit()
    user_id = user.id
    received.clear()

    db.delete(user)
    db.commit()

    assert len(received) == 1
    assert received[0].action == ChangeAction.DELETE
    assert received[0].after is None
    assert received[0].before["id"] == user_id


def test_rollback_drops_pending_changes(db, feed, received):
    db.add(_user())
    db.flush()

    db.rollback()
    db.commit()

    assert received == []


def test_untracked_tables_are_not_captured(db, feed, received):
    db.add(VodContent(name="Film"))
    db.commit()

    assert received == []


def test_events_are_published_in_flush_order(db, feed, received):
    db.add(_user("first"))
    db.flush()
    db.add(_user("second"))
    db.commit()

    assert [e.after["username"] for e in received] == ["first", "second"]


def test_each_subscriber_gets_its_own_copy(feed, received):
    other = []
    feed.subscribe("other", other.append)

    feed.publish(ChangeEvent("streams", ChangeAction.INSERT, after={"id": "s1", "name": "News"}))
    received[0].after["name"] = "changed"

    assert other[0].after["name"] == "News"


def test_threaded_failing_subscriber_does_not_block_others():
    feed = ChangeFeed(["streams"], threaded=True)
    delivered = []

    def broken(event):
        raise RuntimeError("subscriber crashed")

    feed.subscribe("broken", broken)
    feed.subscribe("ok", delivered.append)
    feed.start()
    try:
        for i in range(3):
            feed.publish(ChangeEvent("streams", ChangeAction.INSERT, after={"id": f"s{i}"}))
        feed.join()
    finally:
        feed.stop()

    assert [e.record_id for e in delivered] == ["s0", "s1", "s2"]


@pytest.mark.parametrize("raw, expected", [
    ("2026-01-15T12:00:00Z", datetime(2026, 1, 15, 12, 0, 0)),
    ("2026-01-15 12:00:00.1234+00:00", datetime(2026, 1, 15, 12, 0, 0, 123400)),
    ("2026-01-15 14:00:00.5+02", datetime(2026, 1, 15, 12, 0, 0, 500000)),
    ("2026-01-15T12:00:00.123456789Z", datetime(2026, 1, 15, 12, 0, 0, 123456)),
    ("2026-01-15", datetime(2026, 1, 15)),
])
def test_parse_timestamp_accepts_database_formats(raw, expected):
    assert parse_timestamp(raw) == expected


def test_parse_timestamp_rejects_garbage():
    assert parse_timestamp("soon") is None
    assert parse_timestamp("") is None
