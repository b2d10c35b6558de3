from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel.api.deps import get_db
from panel.errors import StoreFailure, ValidationFailure
from panel.settings import get_panel_settings, set_setting

router = APIRouter(prefix="/settings", tags=["settings"])


class SettingsUpdate(BaseModel):
    server_domain: Optional[str] = None
    enable_ssl: Optional[bool] = None


@router.get("")
def read_settings(db: Session = Depends(get_db)):
    try:
        return get_panel_settings(db)
    except SQLAlchemyError as exc:
        raise StoreFailure(f"Could not read panel settings: {exc}") from exc


@router.put("")
def update_settings(updates: SettingsUpdate, db: Session = Depends(get_db)):
    """Update the live backend location; an empty domain disables live sync."""
    if updates.server_domain is not None:
        domain = updates.server_domain.strip()
        if "/" in domain or " " in domain:
            raise ValidationFailure("server_domain must be a bare host name")
        set_setting(db, "server_domain", domain)
    if updates.enable_ssl is not None:
        set_setting(db, "enable_ssl", "true" if updates.enable_ssl else "false")
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreFailure(f"Could not save panel settings: {exc}") from exc
    return get_panel_settings(db)
