"""
Fallback Aggregator

Current-state reads (subscriber totals, connections, online status) ask the
live backend first, because it sees actual sessions rather than the store's
mirror of them, and recompute the same shape from the store when the live
backend is not configured, times out or answers non-2xx.

One aggregate always comes from one source. Fields are never stitched
together from both.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel.errors import StoreFailure
from panel.models import Server, ServerStatus, Stream, StreamStatus, StreamingUser, UserStatus
from panel.services.live_client import LiveBackendClient

logger = logging.getLogger(__name__)

SOURCE_LIVE = "live"
SOURCE_STORE = "store"

_EPOCH = datetime(1970, 1, 1)


def effective_status(status: Optional[str], expiry_date: Optional[datetime], now: Optional[datetime] = None) -> str:
    """
    Status as every read path must report it: expired whenever the expiry
    date has passed, whatever the stored value says.
    """
    now = now or datetime.utcnow()
    if expiry_date is not None and expiry_date <= now:
        return UserStatus.EXPIRED.value
    return status or UserStatus.OFFLINE.value


def serialize_user(user: StreamingUser, now: Optional[datetime] = None) -> Dict[str, Any]:
    record = user.as_record()
    record.pop("password", None)
    record["status"] = effective_status(user.status, user.expiry_date, now)
    record["connections"] = user.connections or 0
    record["max_connections"] = user.max_connections or 1
    return record


@dataclass
class AggregateState:
    total_users: int
    online_users: int
    active_connections: int
    source: str = SOURCE_STORE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalUsers": self.total_users,
            "onlineUsers": self.online_users,
            "activeConnections": self.active_connections,
            "source": self.source,
        }


@dataclass
class ConnectionView:
    user_id: str
    username: str
    connections: int
    max_connections: int
    status: str
    expiry_date: Optional[str]
    is_expired: bool
    is_at_limit: bool
    last_active: Optional[str] = None
    current_stream: Optional[str] = None
    ip: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "connections": self.connections,
            "maxConnections": self.max_connections,
            "status": self.status,
            "expiryDate": self.expiry_date,
            "isExpired": self.is_expired,
            "isAtLimit": self.is_at_limit,
            "lastActive": self.last_active,
            "currentStream": self.current_stream,
            "ip": self.ip,
            "duration": self.duration_ms,
        }


@dataclass
class ConnectionsSnapshot:
    connections: List[ConnectionView] = field(default_factory=list)
    source: str = SOURCE_STORE

    def to_dict(self) -> Dict[str, Any]:
        return {"connections": [c.to_dict() for c in self.connections], "source": self.source}


def _as_count(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class FallbackAggregator:
    def __init__(self, client: LiveBackendClient, clock: Callable[[], datetime] = datetime.utcnow):
        self.client = client
        self.clock = clock

    # ------------------------------------------------------------------
    # Subscriber totals
    # ------------------------------------------------------------------

    def get_aggregate_state(self, db: Session, base_url: Optional[str]) -> AggregateState:
        if base_url:
            live = self._live_aggregate(base_url)
            if live is not None:
                return live
        return self._store_aggregate(db)

    def _live_aggregate(self, base_url: str) -> Optional[AggregateState]:
        payload = self.client.get_json(base_url, "/api/stats")
        users = payload.get("users") if isinstance(payload, dict) else None
        if not isinstance(users, dict):
            if payload is not None:
                logger.warning("Live backend stats payload malformed, using store")
            return None

        total = _as_count(users.get("total"))
        online = _as_count(users.get("online"))
        active = _as_count(users.get("activeConnections"))
        if total is None or online is None or active is None:
            logger.warning(f"Live backend stats incomplete ({users}), using store")
            return None
        return AggregateState(total_users=total, online_users=online, active_connections=active, source=SOURCE_LIVE)

    def _store_aggregate(self, db: Session) -> AggregateState:
        now = self.clock()
        try:
            total = db.scalar(select(func.count()).select_from(StreamingUser)) or 0
            online = db.scalar(
                select(func.count()).select_from(StreamingUser).where(
                    and_(StreamingUser.status == UserStatus.ONLINE.value, StreamingUser.expiry_date > now)
                )
            ) or 0
            active = db.scalar(select(func.coalesce(func.sum(StreamingUser.connections), 0))) or 0
        except SQLAlchemyError as exc:
            logger.error(f"Store aggregate query failed: {exc}", exc_info=True)
            raise StoreFailure(f"Could not compute subscriber totals: {exc}") from exc
        return AggregateState(total_users=int(total), online_users=int(online), active_connections=int(active))

    # ------------------------------------------------------------------
    # Per-subscriber connections
    # ------------------------------------------------------------------

    def get_connections(self, db: Session, base_url: Optional[str]) -> ConnectionsSnapshot:
        try:
            users = db.scalars(
                select(StreamingUser).order_by(StreamingUser.last_active.desc().nulls_last())
            ).all()
        except SQLAlchemyError as exc:
            logger.error(f"Connection listing failed: {exc}", exc_info=True)
            raise StoreFailure(f"Could not list subscribers: {exc}") from exc

        live_sessions = self._live_sessions(base_url) if base_url else None
        now = self.clock()

        views = []
        for user in users:
            if live_sessions is not None:
                views.append(self._live_view(user, live_sessions.get(str(user.id)), now))
            else:
                views.append(self._store_view(user, now))

        return ConnectionsSnapshot(
            connections=views,
            source=SOURCE_LIVE if live_sessions is not None else SOURCE_STORE,
        )

    def _live_sessions(self, base_url: str) -> Optional[Dict[str, Dict[str, Any]]]:
        payload = self.client.get_json(base_url, "/api/connections/active")
        if not isinstance(payload, dict) or not isinstance(payload.get("connections"), list):
            return None
        return {
            str(entry.get("userId")): entry
            for entry in payload["connections"]
            if isinstance(entry, dict) and entry.get("userId") is not None
        }

    def _live_view(self, user: StreamingUser, live: Optional[Dict[str, Any]], now: datetime) -> ConnectionView:
        sessions = (live or {}).get("sessions") or []
        session = sessions[0] if sessions and isinstance(sessions[0], dict) else {}
        connections = _as_count((live or {}).get("sessionCount")) or 0
        max_connections = user.max_connections or 1

        status = UserStatus.ONLINE.value if connections > 0 else UserStatus.OFFLINE.value
        status = effective_status(status, user.expiry_date, now)

        start_ms = _as_count(session.get("startTime"))
        now_ms = int((now - _EPOCH).total_seconds() * 1000)
        duration = now_ms - start_ms if start_ms else 0

        return ConnectionView(
            user_id=str(user.id),
            username=user.username,
            connections=connections,
            max_connections=max_connections,
            status=status,
            expiry_date=user.expiry_date.isoformat() if user.expiry_date else None,
            is_expired=status == UserStatus.EXPIRED.value,
            is_at_limit=connections > 0 and connections >= max_connections,
            last_active=session.get("lastSeen") or (user.last_active.isoformat() if user.last_active else None),
            current_stream=session.get("streamName"),
            ip=session.get("ip"),
            duration_ms=max(duration, 0),
        )

    def _store_view(self, user: StreamingUser, now: datetime) -> ConnectionView:
        connections = user.connections or 0
        max_connections = user.max_connections or 1
        status = effective_status(user.status, user.expiry_date, now)
        return ConnectionView(
            user_id=str(user.id),
            username=user.username,
            connections=connections,
            max_connections=max_connections,
            status=status,
            expiry_date=user.expiry_date.isoformat() if user.expiry_date else None,
            is_expired=status == UserStatus.EXPIRED.value,
            is_at_limit=connections > 0 and connections >= max_connections,
            last_active=user.last_active.isoformat() if user.last_active else None,
        )

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def get_dashboard_stats(self, db: Session, base_url: Optional[str]) -> Dict[str, Any]:
        """
        Dashboard totals: the subscriber aggregate (live-then-store) plus the
        content aggregate, which only the store knows about.
        """
        users = self.get_aggregate_state(db, base_url)

        try:
            streams = db.scalars(select(Stream).order_by(Stream.created_at.desc())).all()
            servers = db.scalars(select(Server).order_by(Server.created_at.desc())).all()
        except SQLAlchemyError as exc:
            logger.error(f"Dashboard query failed: {exc}", exc_info=True)
            raise StoreFailure(f"Could not load dashboard data: {exc}") from exc

        online_servers = [s for s in servers if s.status == ServerStatus.ONLINE.value]

        def _avg(attr: str) -> int:
            if not online_servers:
                return 0
            # halves round up
            return int(sum(getattr(s, attr) or 0 for s in online_servers) / len(online_servers) + 0.5)

        return {
            "users": users.to_dict(),
            "content": {
                "totalStreams": len(streams),
                "activeStreams": sum(1 for s in streams if s.status == StreamStatus.LIVE.value),
                "totalViewers": sum(s.viewers or 0 for s in streams),
                "totalServers": len(servers),
                "onlineServers": len(online_servers),
                "avgCpu": _avg("cpu_usage"),
                "avgMemory": _avg("memory_usage"),
                "avgDisk": _avg("disk_usage"),
                "avgNetwork": _avg("network_usage"),
            },
            "recentStreams": [s.as_record() for s in streams[:5]],
        }
