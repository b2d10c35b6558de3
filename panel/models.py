"""
StreamPanel Database Models

The panel database is the system of record. The live backend only mirrors the
synced subset (users, streams, categories, VOD, series) and is never written
back from here.

Columns read by the notification edge rules are declared with
active_history=True so an update always carries its previous value, even when
the row was expired from the session before being modified.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import Boolean, Column, DateTime, Enum, Float, Integer, JSON, String, Text
from sqlalchemy.orm import column_property, declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUM DEFINITIONS
# ============================================================================

class UserStatus(str, enum.Enum):
    """Subscriber status. EXPIRED is derived on read from expiry_date."""
    ONLINE = "online"
    OFFLINE = "offline"
    EXPIRED = "expired"


class StreamStatus(str, enum.Enum):
    LIVE = "live"
    OFFLINE = "offline"
    ERROR = "error"


class ServerStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class NotificationSeverity(str, enum.Enum):
    """Notification severity level"""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ============================================================================
# CORE MODEL DEFINITIONS
# ============================================================================

class RecordMixin:
    """Plain-dict view of a row, as sent to the live backend and the change feed."""

    def as_record(self) -> Dict[str, Any]:
        record = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, enum.Enum):
                value = value.value
            record[column.key] = value
        return record


class StreamingUser(RecordMixin, Base):
    """IPTV subscriber account"""
    __tablename__ = "streaming_users"

    id = Column(String(36), primary_key=True, default=_uuid)
    username = Column(String, unique=True, nullable=False, index=True)
    password = Column(String, nullable=False)

    # Stored status; 'expired' is recomputed from expiry_date on every read
    status = column_property(Column(String, default=UserStatus.OFFLINE.value, nullable=False), active_history=True)
    connections = column_property(Column(Integer, default=0, nullable=False), active_history=True)
    max_connections = column_property(Column(Integer, default=1, nullable=False), active_history=True)
    expiry_date = column_property(Column(DateTime, nullable=False, index=True), active_history=True)

    last_active = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


class Stream(RecordMixin, Base):
    """Live channel"""
    __tablename__ = "streams"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    input_type = Column(String, default="hls")
    source_url = Column(String)
    category_id = Column(String(36))
    status = column_property(Column(String, default=StreamStatus.OFFLINE.value, nullable=False), active_history=True)
    viewers = Column(Integer, default=0)
    bitrate = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class Server(RecordMixin, Base):
    """Streaming/edge server. Not mirrored to the live backend."""
    __tablename__ = "servers"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    ip_address = Column(String)
    status = column_property(Column(String, default=ServerStatus.OFFLINE.value, nullable=False), active_history=True)
    cpu_usage = Column(Float, default=0.0)
    memory_usage = Column(Float, default=0.0)
    disk_usage = Column(Float, default=0.0)
    network_usage = Column(Float, default=0.0)
    created_at = Column(DateTime, default=datetime.utcnow)


class LiveCategory(RecordMixin, Base):
    __tablename__ = "live_categories"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    sort_order = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class VodContent(RecordMixin, Base):
    __tablename__ = "vod_content"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    stream_url = Column(String)
    category_id = Column(String(36))
    created_at = Column(DateTime, default=datetime.utcnow)


class Series(RecordMixin, Base):
    __tablename__ = "series"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    cover_url = Column(String)
    category_id = Column(String(36))
    created_at = Column(DateTime, default=datetime.utcnow)


class SystemUpdate(RecordMixin, Base):
    """Released panel version. At most one row is available at a time."""
    __tablename__ = "system_updates"

    id = Column(String(36), primary_key=True, default=_uuid)
    version = Column(String, nullable=False)
    changelog = Column(Text)
    is_available = Column(Boolean, default=False, nullable=False, index=True)
    released_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    applied_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)


class Notification(Base):
    """Operator notification emitted by the notification engine"""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    severity = Column(Enum(NotificationSeverity), default=NotificationSeverity.INFO)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    entity_id = Column(String)
    payload = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    read = Column(Boolean, default=False)


class PanelSetting(Base):
    """Panel configuration (live backend domain, TLS flag)"""
    __tablename__ = "panel_settings"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(Text, nullable=False)
    description = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
