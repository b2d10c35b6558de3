"""
Manual sync ("sync all") and recent sync outcomes.

POST /sync/{table} pushes the full table snapshot to the live backend and then
asks it to drop entities no longer present in the store.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel.api.deps import PanelContext, get_context, get_db
from panel.errors import ConfigurationMissing, StoreFailure
from panel.models import LiveCategory, Series, Stream, StreamingUser, VodContent
from panel.services.sync_dispatcher import SyncTable
from panel.settings import resolve_live_backend_url

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger(__name__)

SYNC_MODELS = {
    SyncTable.STREAMING_USERS: StreamingUser,
    SyncTable.STREAMS: Stream,
    SyncTable.LIVE_CATEGORIES: LiveCategory,
    SyncTable.VOD_CONTENT: VodContent,
    SyncTable.SERIES: Series,
}


def require_live_backend_url(db: Session) -> str:
    base_url = resolve_live_backend_url(db)
    if not base_url:
        raise ConfigurationMissing("No live backend configured")
    return base_url


@router.get("/recent")
def recent_results(ctx: PanelContext = Depends(get_context)):
    if ctx.sync_worker is None:
        return []
    return [r.to_dict() for r in reversed(ctx.sync_worker.recent_results())]


@router.post("/{table}")
def sync_table(table: str, db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    target = SyncTable.lookup(table)
    if target is None:
        return JSONResponse({"error": "Table not synced", "table": table}, status_code=400)

    try:
        base_url = require_live_backend_url(db)
    except ConfigurationMissing as exc:
        logger.info(f"Manual sync of {table} skipped: {exc}")
        return {"table": table, "skipped": True, "reason": exc.message, "results": []}

    try:
        records = [row.as_record() for row in db.scalars(select(SYNC_MODELS[target])).all()]
    except SQLAlchemyError as exc:
        raise StoreFailure(f"Could not read {table}: {exc}") from exc

    results = ctx.dispatcher.reconcile(target, records, base_url)
    return {
        "table": table,
        "skipped": False,
        "count": len(records),
        "success": all(r.success for r in results),
        "results": [r.to_dict() for r in results],
    }
