"""
External change-event intake.

Producers outside this process (database triggers, replication hooks) post
row-level changes here; they reach the same subscribers as ORM writes.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from panel.api.deps import PanelContext, get_context
from panel.events import ChangeEvent

router = APIRouter(tags=["changes"])
logger = logging.getLogger(__name__)


@router.post("/changes", status_code=202)
def publish_change(payload: Optional[Dict[str, Any]] = Body(default=None), ctx: PanelContext = Depends(get_context)):
    event = ChangeEvent.from_payload(payload)
    if ctx.feed is None:
        logger.warning(f"No change feed running, dropping {event.entity_key}")
        return {"accepted": False, "key": event.entity_key}
    ctx.feed.publish(event)
    return {"accepted": True, "key": event.entity_key}
