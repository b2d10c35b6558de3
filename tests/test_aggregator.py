"""Tests for live-first reads with store fallback."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from panel.errors import StoreFailure
from panel.models import Server, Stream
from panel.services.aggregator import FallbackAggregator, effective_status, serialize_user

NOW = datetime(2026, 1, 15, 12, 0, 0)
BASE_URL = "https://live.example.com"


@pytest.fixture
def aggregator(live_client):
    return FallbackAggregator(live_client, clock=lambda: NOW)


@pytest.fixture
def subscribers(make_user):
    return {
        "online": make_user("alice", status="online", connections=2, max_connections=2,
                            expiry_date=NOW + timedelta(days=10)),
        "lapsed": make_user("bob", status="online", connections=1, max_connections=1,
                            expiry_date=NOW - timedelta(hours=1)),
        "idle": make_user("carol", status="offline", connections=0, max_connections=3,
                          expiry_date=NOW + timedelta(days=1)),
    }


def test_effective_status_expires_at_the_boundary():
    assert effective_status("online", NOW, NOW) == "expired"
    assert effective_status("online", NOW + timedelta(seconds=1), NOW) == "online"
    assert effective_status(None, None, NOW) == "offline"


def test_serialized_user_hides_password_and_reports_expired(subscribers):
    record = serialize_user(subscribers["lapsed"], NOW)

    assert "password" not in record
    assert record["status"] == "expired"


def test_no_live_backend_reads_store_without_network(db, aggregator, live_client, subscribers):
    state = aggregator.get_aggregate_state(db, None)

    live_client.get_json.assert_not_called()
    assert state.source == "store"
    assert state.total_users == 3
    # bob is stored as online but the subscription has lapsed
    assert state.online_users == 1
    assert state.active_connections == 3


def test_live_totals_are_preferred(db, aggregator, live_client, subscribers):
    live_client.get_json.return_value = {"users": {"total": 10, "online": 4, "activeConnections": 7}}

    state = aggregator.get_aggregate_state(db, BASE_URL)

    live_client.get_json.assert_called_once_with(BASE_URL, "/api/stats")
    assert state.to_dict() == {"totalUsers": 10, "onlineUsers": 4, "activeConnections": 7, "source": "live"}


@pytest.mark.parametrize("payload", [
    None,
    {"users": {"total": "ten", "online": 4, "activeConnections": 7}},
    {"users": {"total": 10, "online": 4}},
    {"streams": []},
    ["not", "an", "object"],
])
def test_unusable_live_answer_falls_back_to_store_entirely(db, aggregator, live_client, subscribers, payload):
    live_client.get_json.return_value = payload

    state = aggregator.get_aggregate_state(db, BASE_URL)

    assert state.source == "store"
    assert (state.total_users, state.online_users, state.active_connections) == (3, 1, 3)


def test_store_failure_propagates(aggregator):
    broken = MagicMock()
    broken.scalar.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))

    with pytest.raises(StoreFailure):
        aggregator.get_aggregate_state(broken, None)


def test_connections_from_store(db, aggregator, subscribers):
    snapshot = aggregator.get_connections(db, None)

    assert snapshot.source == "store"
    views = {v.username: v for v in snapshot.connections}
    assert views["alice"].is_at_limit is True
    assert views["bob"].status == "expired"
    assert views["bob"].is_expired is True
    assert views["carol"].connections == 0
    assert views["carol"].is_at_limit is False


def test_connections_from_live_sessions(db, aggregator, live_client, subscribers):
    alice = subscribers["online"]
    start_ms = int((NOW - timedelta(minutes=5) - datetime(1970, 1, 1)).total_seconds() * 1000)
    live_client.get_json.return_value = {
        "connections": [
            {
                "userId": alice.id,
                "sessionCount": 1,
                "sessions": [{"ip": "10.0.0.5", "streamName": "News HD", "startTime": start_ms}],
            },
        ]
    }

    snapshot = aggregator.get_connections(db, BASE_URL)

    live_client.get_json.assert_called_once_with(BASE_URL, "/api/connections/active")
    assert snapshot.source == "live"
    views = {v.username: v for v in snapshot.connections}
    assert views["alice"].connections == 1
    assert views["alice"].status == "online"
    assert views["alice"].ip == "10.0.0.5"
    assert views["alice"].current_stream == "News HD"
    assert views["alice"].duration_ms == 5 * 60 * 1000
    # not in the live answer: no sessions, whatever the store says
    assert views["carol"].connections == 0
    assert views["carol"].status == "offline"
    assert views["bob"].status == "expired"


def test_dashboard_combines_user_and_content_aggregates(db, aggregator, subscribers):
    db.add_all([
        Stream(name="News HD", status="live", viewers=12),
        Stream(name="Sports", status="offline", viewers=0),
        Server(name="edge-1", status="online", cpu_usage=40, memory_usage=50, disk_usage=20, network_usage=10),
        Server(name="edge-2", status="online", cpu_usage=60, memory_usage=70, disk_usage=40, network_usage=30),
        Server(name="edge-3", status="maintenance", cpu_usage=99),
    ])
    db.commit()

    stats = aggregator.get_dashboard_stats(db, None)

    assert stats["users"]["source"] == "store"
    content = stats["content"]
    assert content["totalStreams"] == 2
    assert content["activeStreams"] == 1
    assert content["totalViewers"] == 12
    assert content["totalServers"] == 3
    assert content["onlineServers"] == 2
    assert content["avgCpu"] == 50
    assert content["avgMemory"] == 60
    assert len(stats["recentStreams"]) == 2


def test_dashboard_averages_round_halves_up(db, aggregator):
    db.add_all([
        Server(name="edge-1", status="online", cpu_usage=50, memory_usage=20),
        Server(name="edge-2", status="online", cpu_usage=51, memory_usage=21),
    ])
    db.commit()

    content = aggregator.get_dashboard_stats(db, None)["content"]

    assert content["avgCpu"] == 51
    assert content["avgMemory"] == 21
