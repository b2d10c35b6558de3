"""
Notifications API

Lists persisted notifications and runs the expiring-soon sweep on demand
(page load). The on-demand sweep is skipped when one ran recently.
"""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from panel.api.deps import PanelContext, get_context, get_db
from panel.services.notifications import NotificationStore

router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = logging.getLogger(__name__)


@router.get("")
def list_notifications(limit: int = 50, unread_only: bool = False, db: Session = Depends(get_db)):
    return NotificationStore.list_recent(db, limit=limit, unread_only=unread_only)


@router.post("/sweep")
def sweep_expiring(db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    engine = ctx.notifications
    if engine.swept_recently(timedelta(seconds=ctx.sweep_min_interval_seconds)):
        return {
            "swept": False,
            "reason": "swept recently",
            "last_swept_at": engine.last_swept_at.isoformat(),
        }

    notification = engine.sweep_expiring(db)
    return {
        "swept": True,
        "notification": notification.to_dict() if notification else None,
    }


@router.post("/{notification_id}/read")
def mark_read(notification_id: int, db: Session = Depends(get_db)):
    if not NotificationStore.mark_read(db, notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"id": notification_id, "read": True}
