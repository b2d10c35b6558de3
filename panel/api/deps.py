"""
Shared API dependencies.

The service builds one PanelContext at startup and injects it here; routers
read it through get_context().
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException

from panel.change_feed import ChangeFeed
from panel.database import get_db  # noqa: F401  (re-exported for routers)
from panel.services.aggregator import FallbackAggregator
from panel.services.notifications import ExpirySweeper, NotificationEngine
from panel.services.sync_dispatcher import SyncDispatcher
from panel.services.sync_worker import SyncWorker
from panel.services.update_manager import UpdateManager


@dataclass
class PanelContext:
    dispatcher: SyncDispatcher
    aggregator: FallbackAggregator
    notifications: NotificationEngine
    updates: UpdateManager
    feed: Optional[ChangeFeed] = None
    sync_worker: Optional[SyncWorker] = None
    sweeper: Optional[ExpirySweeper] = None
    sweep_min_interval_seconds: int = 300


# Will be injected by service.py
_context: Optional[PanelContext] = None


def set_context(context: Optional[PanelContext]):
    """Set panel context reference (called by service.py)"""
    global _context
    _context = context


def get_context() -> PanelContext:
    if _context is None:
        raise HTTPException(status_code=503, detail="Panel services not initialized")
    return _context
