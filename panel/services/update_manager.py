"""
Update Lifecycle Manager

Tracks which panel release is available to the update agent:

    NoUpdateAvailable -> UpdateAvailable -> Applied

At most one system_updates row is available at any time. Registering a new
release clears the previous flag and inserts the new row in one transaction.
Nothing here performs the update itself.
"""

import hmac
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from panel.errors import StoreFailure, Unauthorized, UpdateNotFound
from panel.models import SystemUpdate

logger = logging.getLogger(__name__)


def serialize_update(record: Optional[SystemUpdate]) -> Optional[Dict[str, Any]]:
    if record is None:
        return None
    return {
        "id": record.id,
        "version": record.version,
        "changelog": record.changelog,
        "isAvailable": bool(record.is_available),
        "releasedAt": record.released_at.isoformat() if record.released_at else None,
        "appliedAt": record.applied_at.isoformat() if record.applied_at else None,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }


class UpdateManager:
    def __init__(self, agent_secret: str, clock: Callable[[], datetime] = datetime.utcnow):
        self.agent_secret = agent_secret or ""
        self.clock = clock

    def _verify_secret(self, secret: Optional[str]):
        # An unset agent secret rejects every registration
        if not self.agent_secret or not secret:
            raise Unauthorized("Unauthorized")
        if not hmac.compare_digest(str(secret).encode(), self.agent_secret.encode()):
            raise Unauthorized("Unauthorized")

    def register_update(self, db: Session, version: str, changelog: Optional[str], secret: Optional[str]) -> SystemUpdate:
        """
        Register a new available release.

        Raises:
            Unauthorized: secret mismatch, no state change
            StoreFailure: the transaction failed and was rolled back
        """
        try:
            self._verify_secret(secret)
        except Unauthorized:
            logger.warning("Invalid webhook secret")
            raise

        logger.info(f"Registering new update: {version}")
        now = self.clock()
        try:
            db.execute(
                update(SystemUpdate)
                .where(SystemUpdate.is_available.is_(True))
                .values(is_available=False)
            )
            record = SystemUpdate(
                version=version,
                changelog=changelog,
                is_available=True,
                released_at=now,
                applied_at=None,
                created_at=now,
            )
            db.add(record)
            db.commit()
            db.refresh(record)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Error inserting update: {exc}", exc_info=True)
            raise StoreFailure(f"Could not register update {version}: {exc}") from exc

        logger.info(f"Update registered successfully: {record.id} ({record.version})")
        return record

    def check_for_update(self, db: Session) -> Optional[SystemUpdate]:
        try:
            return db.scalars(
                select(SystemUpdate)
                .where(SystemUpdate.is_available.is_(True), SystemUpdate.applied_at.is_(None))
                .order_by(SystemUpdate.released_at.desc())
                .limit(1)
            ).first()
        except SQLAlchemyError as exc:
            logger.error(f"Error fetching updates: {exc}", exc_info=True)
            raise StoreFailure(f"Could not check for updates: {exc}") from exc

    def mark_applied(self, db: Session, update_id: str) -> SystemUpdate:
        """
        Mark a release applied. Applying an already applied release is a
        no-op success.

        Raises:
            UpdateNotFound: unknown update id
        """
        try:
            record = db.get(SystemUpdate, update_id)
            if record is None:
                raise UpdateNotFound(f"Update {update_id} not found")
            if record.applied_at is not None:
                logger.info(f"Update {update_id} already applied at {record.applied_at.isoformat()}")
                return record

            logger.info(f"Marking update {update_id} as applied")
            record.applied_at = self.clock()
            record.is_available = False
            db.commit()
            db.refresh(record)
            return record
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Error marking update: {exc}", exc_info=True)
            raise StoreFailure(f"Could not mark update {update_id} applied: {exc}") from exc

    def list_updates(self, db: Session, limit: int = 20) -> List[SystemUpdate]:
        try:
            return list(db.scalars(
                select(SystemUpdate).order_by(SystemUpdate.released_at.desc()).limit(limit)
            ).all())
        except SQLAlchemyError as exc:
            raise StoreFailure(f"Could not list updates: {exc}") from exc
