"""
Change Feed

Ordered stream of row-level changes from the system of record.

Two producers feed it:
- SQLAlchemy sessions attached with `attach()`: changes are captured at flush
  time and published only once the transaction commits (a rollback drops
  them), in flush order
- external producers through `publish()` (the POST /changes endpoint)

Every subscriber gets its own deep copy of each event. In threaded mode each
subscriber is drained by one worker thread, so a slow or failing subscriber
never delays the others and each one sees events in publish order.
"""

import copy
import enum
import logging
import queue
import threading
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from panel.events import ChangeAction, ChangeEvent
from panel.models import RecordMixin

logger = logging.getLogger(__name__)

_PENDING_KEY = "panel_pending_changes"
_STOP = object()


class Subscription:
    def __init__(self, name: str, handler: Callable[[ChangeEvent], object], threaded: bool):
        self.name = name
        self.handler = handler
        self.threaded = threaded
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        if not self.threaded or (self._thread and self._thread.is_alive()):
            return
        self._thread = threading.Thread(target=self._run, name=f"feed-{self.name}", daemon=True)
        self._thread.start()

    def deliver(self, event: ChangeEvent):
        if self.threaded:
            self._queue.put(event)
        else:
            self._invoke(event)

    def stop(self, timeout: float = 5.0):
        if self._thread and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join(timeout=timeout)

    def join(self):
        """Wait until every delivered event has been handled (threaded mode)."""
        if self.threaded:
            self._queue.join()

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._invoke(item)
            finally:
                self._queue.task_done()

    def _invoke(self, event: ChangeEvent):
        try:
            self.handler(event)
        except Exception as e:
            logger.error(f"Change feed subscriber {self.name} failed on {event.entity_key}: {e}", exc_info=True)


class ChangeFeed:
    def __init__(self, tracked_tables: Iterable[str], threaded: bool = True):
        """
        Args:
            tracked_tables: table names captured from attached sessions
            threaded: deliver through one worker thread per subscriber
        """
        self.tracked_tables = set(tracked_tables)
        self.threaded = threaded
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._running = False

    def subscribe(self, name: str, handler: Callable[[ChangeEvent], object]) -> Subscription:
        subscription = Subscription(name, handler, self.threaded)
        with self._lock:
            self._subscriptions.append(subscription)
            if self._running:
                subscription.start()
        logger.info(f"Change feed subscriber registered: {name}")
        return subscription

    def start(self):
        with self._lock:
            self._running = True
            for subscription in self._subscriptions:
                subscription.start()
        logger.info("Change feed started")

    def stop(self):
        with self._lock:
            self._running = False
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.stop()
        logger.info("Change feed stopped")

    def join(self):
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.join()

    def publish(self, event: ChangeEvent):
        with self._lock:
            subscriptions = list(self._subscriptions)
        logger.debug(f"Change feed publish: {event.action.value} {event.entity_key}")
        for subscription in subscriptions:
            subscription.deliver(copy.deepcopy(event))

    # ------------------------------------------------------------------
    # SQLAlchemy capture
    # ------------------------------------------------------------------

    def attach(self, session_target):
        """
        Capture committed ORM writes from a Session class or sessionmaker.
        """
        event.listen(session_target, "before_flush", self._before_flush)
        event.listen(session_target, "after_flush", self._after_flush)
        event.listen(session_target, "after_commit", self._after_commit)
        event.listen(session_target, "after_rollback", self._after_rollback)

    def detach(self, session_target):
        event.remove(session_target, "before_flush", self._before_flush)
        event.remove(session_target, "after_flush", self._after_flush)
        event.remove(session_target, "after_commit", self._after_commit)
        event.remove(session_target, "after_rollback", self._after_rollback)

    def _tracked(self, obj) -> bool:
        return isinstance(obj, RecordMixin) and obj.__table__.name in self.tracked_tables

    def _before_flush(self, session: Session, flush_context, instances):
        # Deleted rows must be read while they still exist
        pending = session.info.setdefault(_PENDING_KEY, [])
        now = datetime.utcnow()
        for obj in session.deleted:
            if self._tracked(obj):
                pending.append(ChangeEvent(obj.__table__.name, ChangeAction.DELETE, obj.as_record(), None, now))

    def _after_flush(self, session: Session, flush_context):
        pending = session.info.setdefault(_PENDING_KEY, [])
        now = datetime.utcnow()

        for obj in session.new:
            if self._tracked(obj):
                pending.append(ChangeEvent(obj.__table__.name, ChangeAction.INSERT, None, obj.as_record(), now))

        for obj in session.dirty:
            if self._tracked(obj) and session.is_modified(obj, include_collections=False):
                before = _previous_record(obj)
                after = obj.as_record()
                if before != after:
                    pending.append(ChangeEvent(obj.__table__.name, ChangeAction.UPDATE, before, after, now))

    def _after_commit(self, session: Session):
        pending = session.info.pop(_PENDING_KEY, [])
        for change in pending:
            self.publish(change)

    def _after_rollback(self, session: Session):
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.debug(f"Dropped {len(dropped)} uncommitted change(s) after rollback")


def _previous_record(obj) -> dict:
    """Row values as they were before the pending flush."""
    state = inspect(obj)
    record = obj.as_record()
    for column in obj.__table__.columns:
        history = state.attrs[column.key].history
        if history.deleted:
            value = history.deleted[0]
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, enum.Enum):
                value = value.value
            record[column.key] = value
    return record
