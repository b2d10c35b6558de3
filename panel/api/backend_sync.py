"""
Sync proxy endpoint

Forwards bulk sync actions to a live backend chosen by the caller and returns
the live backend's body and status code verbatim.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from panel.api.deps import PanelContext, get_context
from panel.errors import LiveBackendUnreachable, ValidationFailure

router = APIRouter(prefix="/functions", tags=["sync"])
logger = logging.getLogger(__name__)


class BackendSyncRequest(BaseModel):
    action: Optional[str] = None
    backendUrl: Optional[str] = None
    data: Any = None


@router.post("/backend-sync")
def backend_sync(body: BackendSyncRequest, ctx: PanelContext = Depends(get_context)):
    logger.info(f"[Backend Sync] Action: {body.action}, URL: {body.backendUrl}")

    if not body.backendUrl:
        return JSONResponse({"error": "Backend URL required"}, status_code=400)

    try:
        resp = ctx.dispatcher.proxy(body.action or "", body.backendUrl, body.data)
    except ValidationFailure as exc:
        return JSONResponse({"error": exc.message}, status_code=400)
    except LiveBackendUnreachable as exc:
        logger.error(f"[Backend Sync] Error: {exc}")
        return JSONResponse({"error": exc.message}, status_code=500)

    payload = resp.payload if resp.payload is not None else {}
    return JSONResponse(payload, status_code=resp.status_code)
