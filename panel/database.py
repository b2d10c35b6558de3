"""
Panel Database Initialization

Owns the panel database (panel.db by default, any SQLAlchemy URL through
STREAMPANEL_DB_URL). This is the system of record; the live backend is only
ever written through the sync dispatcher.
"""

import logging
import os

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from panel import config
from panel.models import Base, PanelSetting

logger = logging.getLogger(__name__)

DATABASE_URL = config.DATABASE_URL

if DATABASE_URL.startswith("sqlite:///"):
    os.makedirs(os.path.dirname(os.path.abspath(DATABASE_URL[len("sqlite:///"):])), exist_ok=True)
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None, session_factory=None):
    """
    Initialize the panel database with schema and seed data.
    Creates all tables and seeds default settings.
    """
    bind = bind or engine
    session_factory = session_factory or SessionLocal

    logger.info("Initializing panel database...")
    Base.metadata.create_all(bind=bind)
    _seed_default_data(session_factory)
    logger.info("Panel database initialization complete")


def _seed_default_data(session_factory):
    """Seed live backend settings from the environment if not present"""
    db = session_factory()

    defaults = [
        ("server_domain", config.SERVER_DOMAIN, "Live backend domain (empty = no live backend)"),
        ("enable_ssl", "true" if config.ENABLE_SSL else "false", "Use https for the live backend"),
    ]

    try:
        for key, value, description in defaults:
            existing = db.scalars(select(PanelSetting).where(PanelSetting.key == key)).first()
            if existing is None:
                db.add(PanelSetting(key=key, value=value, description=description))
                logger.info(f"Seeded panel setting: {key}={value!r}")
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to seed default data: {e}")
        raise
    finally:
        db.close()


def get_db():
    """FastAPI dependency for database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


