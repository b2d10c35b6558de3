"""Tests for schema creation and settings seeding."""
from sqlalchemy import inspect, select

from panel.database import init_db
from panel.models import PanelSetting


def test_schema_has_activity_and_read_columns(engine, session_factory):
    inspector = inspect(engine)

    assert "last_active" in {c["name"] for c in inspector.get_columns("streaming_users")}
    assert "read" in {c["name"] for c in inspector.get_columns("notifications")}


def test_init_db_twice_keeps_existing_settings(engine, session_factory, db):
    setting = db.scalars(select(PanelSetting).where(PanelSetting.key == "server_domain")).one()
    setting.value = "live.example.com"
    db.commit()

    init_db(bind=engine, session_factory=session_factory)

    db.expire_all()
    keys = sorted(s.key for s in db.scalars(select(PanelSetting)).all())
    assert keys == ["enable_ssl", "server_domain"]
    assert db.scalars(select(PanelSetting).where(PanelSetting.key == "server_domain")).one().value == "live.example.com"
