"""
Background sync worker.

Runs dispatches off the write path. Different entities sync concurrently on a
thread pool; events for the same entity are queued and dispatched strictly in
arrival order so a stale update never overwrites a newer one on the live
backend.
"""

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, Dict, List, Optional

from panel.events import ChangeEvent
from panel.services.sync_dispatcher import SyncDispatcher, SyncResult, SyncTable

logger = logging.getLogger(__name__)


class SyncWorker:
    def __init__(
        self,
        dispatcher: SyncDispatcher,
        url_resolver: Callable[[], Optional[str]],
        max_workers: int = 4,
        history_size: int = 50,
    ):
        """
        Args:
            dispatcher: SyncDispatcher doing the actual HTTP call
            url_resolver: returns the live backend base URL, or None when not configured
            max_workers: thread pool size
            history_size: number of recent results kept for the sync status view
        """
        self.dispatcher = dispatcher
        self.url_resolver = url_resolver

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="panel-sync")
        self._lock = threading.Lock()
        self._queues: Dict[str, Deque[ChangeEvent]] = {}
        self._idle = threading.Condition(self._lock)
        self._history: Deque[SyncResult] = deque(maxlen=history_size)
        self._stopped = False

    def submit(self, event: ChangeEvent) -> None:
        """Queue an event for dispatch. Never blocks on the network."""
        if SyncTable.lookup(event.table) is None:
            return

        with self._lock:
            if self._stopped:
                logger.warning(f"Sync worker stopped, dropping {event.action.value} on {event.entity_key}")
                return
            queue = self._queues.get(event.entity_key)
            if queue is not None:
                # A drain task for this entity is already running; it will pick this up
                queue.append(event)
                return
            self._queues[event.entity_key] = deque([event])
            try:
                self._executor.submit(self._drain, event.entity_key)
            except RuntimeError as e:
                del self._queues[event.entity_key]
                self._idle.notify_all()
                logger.warning(f"Sync pool refused {event.entity_key}, dropping event: {e}")

    def _drain(self, key: str) -> None:
        while True:
            with self._lock:
                queue = self._queues[key]
                if not queue:
                    del self._queues[key]
                    self._idle.notify_all()
                    return
                event = queue.popleft()
            self._dispatch_one(event)

    def _dispatch_one(self, event: ChangeEvent) -> None:
        try:
            base_url = self.url_resolver()
        except Exception as e:
            logger.error(f"Could not resolve live backend URL: {e}", exc_info=True)
            return

        if not base_url:
            logger.debug(f"No live backend configured, skipping sync of {event.entity_key}")
            return

        try:
            result = self.dispatcher.dispatch(event, base_url)
        except Exception as e:
            logger.error(f"Unexpected sync error for {event.entity_key}: {e}", exc_info=True)
            return

        with self._lock:
            self._history.append(result)

    def recent_results(self) -> List[SyncResult]:
        with self._lock:
            return list(self._history)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued event has been dispatched."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._queues, timeout=timeout)

    def stop(self, wait: bool = True):
        with self._lock:
            self._stopped = True
        self._executor.shutdown(wait=wait)
        logger.info("Sync worker stopped")
