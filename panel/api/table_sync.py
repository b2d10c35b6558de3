"""
Table sync endpoint

Mirrors one row change to the live backend synchronously, for callers that
want the sync outcome right away. A failed sync is reported with
success=false; the store write it follows has already committed.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from panel.api.deps import PanelContext, get_context
from panel.errors import ValidationFailure
from panel.events import ChangeAction, ChangeEvent
from panel.services.sync_dispatcher import SyncTable

router = APIRouter(prefix="/functions", tags=["sync"])
logger = logging.getLogger(__name__)


class TableSyncRequest(BaseModel):
    table: Optional[str] = None
    action: Optional[str] = None
    data: Any = None
    dockerUrl: Optional[str] = None


@router.post("/sync-to-docker")
def sync_to_docker(body: TableSyncRequest, ctx: PanelContext = Depends(get_context)):
    if not body.dockerUrl:
        return JSONResponse({"error": "Docker URL is required"}, status_code=400)

    logger.info(f"[Sync] {body.action} on {body.table}")

    if SyncTable.lookup(body.table) is None:
        logger.info(f"[Sync] No endpoint mapping for table: {body.table}")
        return {"message": "Table not synced", "table": body.table}

    try:
        action = ChangeAction.parse(body.action)
    except ValidationFailure:
        return JSONResponse({"error": "Unknown action", "action": body.action}, status_code=400)

    data = body.data if isinstance(body.data, dict) else {}
    event = ChangeEvent(
        table=body.table,
        action=action,
        before=data if action != ChangeAction.INSERT else None,
        after=data if action != ChangeAction.DELETE else None,
    )
    result = ctx.dispatcher.dispatch(event, body.dockerUrl)

    return {
        "success": result.success,
        "status": result.status_code,
        "message": "Synced to Docker" if result.success else "Sync failed",
        "details": result.detail,
    }
