"""
Notification Engine

Consumes change events and turns them into operator notifications:
- deduplicates repeat deliveries of the same observation (bounded window)
- fires edge-triggered rules (connection limit reached, subscription expired,
  entity created / went online / went offline)
- runs a level-checked sweep for subscriptions expiring in the next window

Edge rules depend on per-entity ordered delivery. Out-of-order events for the
same entity can miss or duplicate an edge; that is accepted, not corrected.
An expiry that passes without any write is only seen by the sweep.
"""

import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel.events import ChangeAction, ChangeEvent, parse_timestamp
from panel.models import Notification, NotificationSeverity, ServerStatus, StreamStatus, StreamingUser, UserStatus

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    CONNECTION_LIMIT_REACHED = "connection_limit_reached"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    EXPIRING_SOON = "expiring_soon"
    ENTITY_CREATED = "entity_created"
    ENTITY_WENT_ONLINE = "entity_went_online"
    ENTITY_WENT_OFFLINE = "entity_went_offline"


@dataclass
class NotificationEvent:
    kind: NotificationKind
    severity: NotificationSeverity
    title: str
    message: str
    entity_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class DedupWindow:
    """
    Approximate sliding window of seen keys.

    Once more than `capacity` keys are held, the oldest half is evicted in one
    go. Evicted keys are no longer treated as duplicates.
    """

    def __init__(self, capacity: int = 100):
        self.capacity = capacity
        self._keys: Dict[str, None] = {}
        self._lock = threading.Lock()

    def check_and_add(self, key: str) -> bool:
        """Return True if key was already present, otherwise record it."""
        with self._lock:
            if key in self._keys:
                return True
            self._keys[key] = None
            if len(self._keys) > self.capacity:
                for old in list(self._keys)[: self.capacity // 2]:
                    del self._keys[old]
            return False

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


# Which status value counts as "online" per entity table
_ONLINE_STATUS = {
    "streaming_users": UserStatus.ONLINE.value,
    "streams": StreamStatus.LIVE.value,
    "servers": ServerStatus.ONLINE.value,
}

_ENTITY_LABELS = {
    "streaming_users": ("User", "username"),
    "streams": ("Stream", "name"),
    "servers": ("Server", "name"),
}


def _count(record: Dict[str, Any], key: str, default: int) -> int:
    value = record.get(key)
    return int(value) if value else default


class NotificationEngine:
    def __init__(
        self,
        sinks: Optional[List[Callable[[NotificationEvent], None]]] = None,
        dedup_capacity: int = 100,
        expiry_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            sinks: callables receiving every emitted notification
            dedup_capacity: size of the dedup window
            expiry_window: look-ahead of the expiring-soon sweep
            clock: source of "now" (naive UTC)
        """
        self.sinks = list(sinks or [])
        self.dedup = DedupWindow(dedup_capacity)
        self.expiry_window = expiry_window
        self.clock = clock
        self.last_swept_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Change feed path
    # ------------------------------------------------------------------

    def handle(self, event: ChangeEvent) -> List[NotificationEvent]:
        """
        Apply dedup and rules to one change event.
        Never raises: a malformed event is logged and dropped.
        """
        try:
            notifications = self._evaluate(event)
        except Exception as e:
            logger.error(f"Notification rules failed for {event.table}/{event.action}: {e}", exc_info=True)
            return []

        for notification in notifications:
            self._emit(notification)
        return notifications

    def _evaluate(self, event: ChangeEvent) -> List[NotificationEvent]:
        if event.table not in _ENTITY_LABELS:
            return []

        dedup_key = f"{event.table}:{event.record_id}@{event.occurred_at.isoformat()}"
        if self.dedup.check_and_add(dedup_key):
            logger.debug(f"Duplicate change event dropped: {dedup_key}")
            return []

        if event.action == ChangeAction.INSERT:
            return [self._created(event)]
        if event.action != ChangeAction.UPDATE or not event.before or not event.after:
            return []

        notifications = []
        if event.table == "streaming_users":
            notifications.extend(self._subscriber_rules(event.before, event.after))
        notifications.extend(self._status_rules(event))
        return notifications

    def _subscriber_rules(self, before: Dict[str, Any], after: Dict[str, Any]) -> List[NotificationEvent]:
        notifications = []
        user_id = str(after.get("id"))
        username = after.get("username") or user_id

        old_connections = _count(before, "connections", 0)
        old_max = _count(before, "max_connections", 1)
        new_connections = _count(after, "connections", 0)
        new_max = _count(after, "max_connections", 1)

        if new_connections >= new_max and old_connections < old_max:
            notifications.append(NotificationEvent(
                kind=NotificationKind.CONNECTION_LIMIT_REACHED,
                severity=NotificationSeverity.WARNING,
                title="Connection limit reached",
                message=f"User {username} reached the maximum of {new_max} connections",
                entity_id=user_id,
                payload={"username": username, "connections": new_connections, "max_connections": new_max},
            ))

        now = self.clock()
        new_expiry = parse_timestamp(after.get("expiry_date"))
        old_expiry = parse_timestamp(before.get("expiry_date"))
        if new_expiry is not None and old_expiry is not None and new_expiry <= now < old_expiry:
            notifications.append(NotificationEvent(
                kind=NotificationKind.SUBSCRIPTION_EXPIRED,
                severity=NotificationSeverity.ERROR,
                title="Subscription expired",
                message=f"Subscription for user {username} has just expired",
                entity_id=user_id,
                payload={"username": username, "expiry_date": new_expiry.isoformat()},
            ))

        return notifications

    def _status_rules(self, event: ChangeEvent) -> List[NotificationEvent]:
        online_value = _ONLINE_STATUS[event.table]
        label, name_field = _ENTITY_LABELS[event.table]
        was_online = event.before.get("status") == online_value
        is_online = event.after.get("status") == online_value
        name = event.after.get(name_field) or event.record_id

        if is_online and not was_online:
            return [NotificationEvent(
                kind=NotificationKind.ENTITY_WENT_ONLINE,
                severity=NotificationSeverity.INFO,
                title=f"{label} online",
                message=f"{label} {name} is now {online_value}",
                entity_id=event.record_id,
                payload={"table": event.table, "name": name, "status": event.after.get("status")},
            )]
        # Subscribers going offline is routine; only streams/servers report it
        if was_online and not is_online and event.table != "streaming_users":
            return [NotificationEvent(
                kind=NotificationKind.ENTITY_WENT_OFFLINE,
                severity=NotificationSeverity.ERROR,
                title=f"{label} offline",
                message=f"{label} {name} stopped ({event.after.get('status')})",
                entity_id=event.record_id,
                payload={"table": event.table, "name": name, "status": event.after.get("status")},
            )]
        return []

    def _created(self, event: ChangeEvent) -> NotificationEvent:
        label, name_field = _ENTITY_LABELS[event.table]
        name = event.after.get(name_field) or event.record_id
        return NotificationEvent(
            kind=NotificationKind.ENTITY_CREATED,
            severity=NotificationSeverity.INFO,
            title=f"New {label.lower()}",
            message=f"{label} {name} was added",
            entity_id=event.record_id,
            payload={"table": event.table, "name": name},
        )

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def sweep_expiring(self, db: Session) -> Optional[NotificationEvent]:
        """
        Level check for subscriptions expiring within the window.

        Emits one aggregate notification when any exist. A read error is
        logged and yields nothing; the next scheduled sweep tries again.
        """
        now = self.clock()
        horizon = now + self.expiry_window
        try:
            rows = db.execute(
                select(StreamingUser.id, StreamingUser.username, StreamingUser.expiry_date)
                .where(StreamingUser.expiry_date >= now, StreamingUser.expiry_date <= horizon)
                .order_by(StreamingUser.expiry_date)
            ).all()
        except SQLAlchemyError as e:
            logger.error(f"Expiry sweep query failed: {e}", exc_info=True)
            return None
        finally:
            self.last_swept_at = now

        if not rows:
            logger.info("Expiry sweep: no subscriptions expiring soon")
            return None

        hours = int(self.expiry_window.total_seconds() // 3600)
        notification = NotificationEvent(
            kind=NotificationKind.EXPIRING_SOON,
            severity=NotificationSeverity.WARNING,
            title="Subscriptions expiring",
            message=f"{len(rows)} user(s) have a subscription expiring in the next {hours} hours",
            payload={
                "count": len(rows),
                "usernames": [r.username for r in rows],
                "window_hours": hours,
            },
        )
        self._emit(notification)
        return notification

    def swept_recently(self, min_interval: timedelta) -> bool:
        return self.last_swept_at is not None and self.clock() - self.last_swept_at < min_interval

    def _emit(self, notification: NotificationEvent):
        for sink in self.sinks:
            try:
                sink(notification)
            except Exception as e:
                logger.error(f"Notification sink {sink!r} failed: {e}", exc_info=True)


def log_sink(notification: NotificationEvent):
    level = logging.WARNING if notification.severity != NotificationSeverity.INFO else logging.INFO
    logger.log(level, f"NOTIFY [{notification.kind.value}] {notification.title}: {notification.message}")


class NotificationStore:
    """Persists notifications to the notifications table and serves them back."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def __call__(self, notification: NotificationEvent):
        db = self.session_factory()
        try:
            db.add(Notification(
                kind=notification.kind.value,
                severity=notification.severity,
                title=notification.title,
                message=notification.message,
                entity_id=notification.entity_id,
                payload=notification.payload,
                created_at=notification.created_at,
            ))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def list_recent(db: Session, limit: int = 50, unread_only: bool = False) -> List[Dict[str, Any]]:
        query = select(Notification)
        if unread_only:
            query = query.where(Notification.read.is_(False))
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit)
        return [
            {
                "id": n.id,
                "kind": n.kind,
                "severity": n.severity.value if n.severity else None,
                "title": n.title,
                "message": n.message,
                "entity_id": n.entity_id,
                "payload": n.payload,
                "created_at": n.created_at.isoformat() if n.created_at else None,
                "read": bool(n.read),
            }
            for n in db.scalars(query).all()
        ]

    @staticmethod
    def mark_read(db: Session, notification_id: int) -> bool:
        result = db.execute(update(Notification).where(Notification.id == notification_id).values(read=True))
        db.commit()
        return result.rowcount > 0


class ExpirySweeper:
    """
    Runs the expiry sweep once at start and then on a fixed interval in a
    background thread. Stopping is safe at any point: the sweep only reads.
    """

    def __init__(self, engine: NotificationEngine, session_factory, interval_seconds: int = 86400):
        self.engine = engine
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds

        self._stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

        logger.info(f"Expiry sweeper initialized: interval={interval_seconds}s")

    def start(self):
        if self.thread and self.thread.is_alive():
            logger.warning("Expiry sweeper already running")
            return
        self._stop_event.clear()
        self.thread = threading.Thread(target=self._run, name="expiry-sweeper", daemon=True)
        self.thread.start()
        logger.info("Expiry sweeper started")

    def stop(self):
        self._stop_event.set()
        if self.thread and self.thread.is_alive():
            self.thread.join(timeout=5)
        logger.info("Expiry sweeper stopped")

    def run_once(self) -> Optional[NotificationEvent]:
        db = self.session_factory()
        try:
            return self.engine.sweep_expiring(db)
        finally:
            db.close()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Expiry sweep error: {e}", exc_info=True)
            self._stop_event.wait(self.interval_seconds)
