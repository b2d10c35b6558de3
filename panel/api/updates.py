"""
Update webhook

- POST  /functions/update-webhook: release pipeline registers a new version
- GET   /functions/update-webhook: panel/agent polls for an available update
- PATCH /functions/update-webhook: agent marks an update applied
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from panel.api.deps import PanelContext, get_context, get_db
from panel.services.update_manager import serialize_update

router = APIRouter(tags=["updates"])
logger = logging.getLogger(__name__)


class RegisterUpdateRequest(BaseModel):
    version: str
    changelog: Optional[str] = None
    secret: Optional[str] = None


class ApplyUpdateRequest(BaseModel):
    updateId: str


@router.post("/functions/update-webhook")
def register_update(body: RegisterUpdateRequest, db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    record = ctx.updates.register_update(db, body.version, body.changelog, body.secret)
    return {"success": True, "update": serialize_update(record)}


@router.get("/functions/update-webhook")
def check_for_update(db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    record = ctx.updates.check_for_update(db)
    logger.info(f"Update available: {record is not None}")
    return {"hasUpdate": record is not None, "update": serialize_update(record)}


@router.patch("/functions/update-webhook")
def mark_applied(body: ApplyUpdateRequest, db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    ctx.updates.mark_applied(db, body.updateId)
    return {"success": True}


@router.get("/updates/history")
def update_history(limit: int = 20, db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    return [serialize_update(r) for r in ctx.updates.list_updates(db, limit=limit)]
