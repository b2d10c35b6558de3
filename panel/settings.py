"""
Panel settings stored in the panel_settings table.

The live backend base URL is derived from server_domain and enable_ssl on
every call so an operator change takes effect without a restart.
"""

import logging
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel import config
from panel.errors import StoreFailure
from panel.models import PanelSetting

logger = logging.getLogger(__name__)


def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    """Fetch panel setting value by key"""
    setting = db.scalars(select(PanelSetting).where(PanelSetting.key == key)).first()
    return setting.value if setting else default


def set_setting(db: Session, key: str, value: str) -> None:
    setting = db.scalars(select(PanelSetting).where(PanelSetting.key == key)).first()
    if setting is None:
        db.add(PanelSetting(key=key, value=value))
    else:
        setting.value = value


def get_panel_settings(db: Session) -> Dict[str, object]:
    domain = get_setting(db, "server_domain", config.SERVER_DOMAIN) or ""
    enable_ssl_raw = get_setting(db, "enable_ssl", "true" if config.ENABLE_SSL else "false")
    enable_ssl = str(enable_ssl_raw).strip().lower() in {"1", "true", "yes", "on"}
    return {
        "server_domain": domain,
        "enable_ssl": enable_ssl,
        "live_backend_url": config.build_live_backend_url(domain, enable_ssl),
    }


def resolve_live_backend_url(db: Session) -> Optional[str]:
    try:
        return get_panel_settings(db)["live_backend_url"]
    except SQLAlchemyError as exc:
        raise StoreFailure(f"Could not read panel settings: {exc}") from exc


def live_backend_url_resolver(session_factory) -> Callable[[], Optional[str]]:
    """
    Build a zero-argument resolver for background workers that do not hold a
    request-scoped session.
    """
    def _resolve() -> Optional[str]:
        db = session_factory()
        try:
            return resolve_live_backend_url(db)
        finally:
            db.close()

    return _resolve
