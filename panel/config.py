import os
from pathlib import Path
from typing import Optional


def _int_env(name: str, default: int) -> int:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return int(raw)
    except Exception:
        return default


def _float_env(name: str, default: float) -> float:
    raw = str(os.getenv(name, str(default))).strip()
    try:
        return float(raw)
    except Exception:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


_DEFAULT_DB_PATH = Path(__file__).resolve().parent / "data" / "panel.db"

DATABASE_URL = str(os.getenv("STREAMPANEL_DB_URL", f"sqlite:///{_DEFAULT_DB_PATH.as_posix()}"))
PANEL_API_PORT = _int_env("STREAMPANEL_API_PORT", 8080)
PANEL_BIND_HOST = str(os.getenv("STREAMPANEL_BIND_HOST", "0.0.0.0")).strip()
LOG_LEVEL = str(os.getenv("STREAMPANEL_LOG_LEVEL", "INFO")).strip().upper()
LOG_FILE = str(os.getenv("STREAMPANEL_LOG_FILE", "")).strip() or None

# Live backend addressing (seed values for the panel_settings table)
SERVER_DOMAIN = str(os.getenv("STREAMPANEL_SERVER_DOMAIN", "")).strip()
ENABLE_SSL = _bool_env("STREAMPANEL_ENABLE_SSL", True)
LIVE_TIMEOUT_SECONDS = _float_env("STREAMPANEL_LIVE_TIMEOUT_SECONDS", 5.0)

# Update webhook
AGENT_SECRET = str(os.getenv("STREAMPANEL_AGENT_SECRET", "")).strip()

# Notifications
SWEEP_INTERVAL_SECONDS = _int_env("STREAMPANEL_SWEEP_INTERVAL_SECONDS", 24 * 60 * 60)
SWEEP_MIN_INTERVAL_SECONDS = _int_env("STREAMPANEL_SWEEP_MIN_INTERVAL_SECONDS", 300)
EXPIRY_WINDOW_HOURS = _int_env("STREAMPANEL_EXPIRY_WINDOW_HOURS", 24)
DEDUP_CAPACITY = _int_env("STREAMPANEL_DEDUP_CAPACITY", 100)

# Sync
SYNC_WORKERS = _int_env("STREAMPANEL_SYNC_WORKERS", 4)


def build_live_backend_url(domain: Optional[str], enable_ssl: bool) -> Optional[str]:
    """
    Build the live backend base URL from the panel settings.

    Returns None when no domain is configured, which puts every read on the
    store fallback path and turns sync into a no-op.
    """
    domain = (domain or "").strip().rstrip("/")
    if not domain:
        return None
    protocol = "https" if enable_ssl else "http"
    return f"{protocol}://{domain}"
