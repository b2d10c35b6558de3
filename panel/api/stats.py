"""
Current-state reads for the dashboard and connections pages.

Each answer carries a `source` field ("live" or "store") so the UI can show
when it is looking at the store fallback.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from panel.api.deps import PanelContext, get_context, get_db
from panel.settings import resolve_live_backend_url

router = APIRouter(tags=["stats"])


@router.get("/stats/users")
def user_stats(db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    return ctx.aggregator.get_aggregate_state(db, resolve_live_backend_url(db)).to_dict()


@router.get("/stats/dashboard")
def dashboard_stats(db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    return ctx.aggregator.get_dashboard_stats(db, resolve_live_backend_url(db))


@router.get("/connections")
def active_connections(db: Session = Depends(get_db), ctx: PanelContext = Depends(get_context)):
    return ctx.aggregator.get_connections(db, resolve_live_backend_url(db)).to_dict()
