from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from panel.api.deps import get_db
from panel.errors import StoreFailure
from panel.events import parse_timestamp
from panel.models import StreamingUser, UserStatus
from panel.services.aggregator import serialize_user

router = APIRouter(prefix="/users", tags=["users"])


class UserCreate(BaseModel):
    username: str
    password: str
    max_connections: int = 1
    expiry_date: datetime


class UserUpdate(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None
    max_connections: Optional[int] = None
    connections: Optional[int] = None
    expiry_date: Optional[datetime] = None
    status: Optional[UserStatus] = None


def _commit(db: Session, conflict_message: str):
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail=conflict_message)
    except SQLAlchemyError as exc:
        db.rollback()
        raise StoreFailure(f"Write failed: {exc}") from exc


@router.get("")
def list_users(db: Session = Depends(get_db)):
    now = datetime.utcnow()
    users = db.scalars(select(StreamingUser).order_by(StreamingUser.created_at.desc())).all()
    return [serialize_user(u, now) for u in users]


@router.post("")
def create_user(user: UserCreate, db: Session = Depends(get_db)):
    user_obj = StreamingUser(
        username=user.username,
        password=user.password,
        max_connections=max(user.max_connections, 1),
        expiry_date=parse_timestamp(user.expiry_date),
        status=UserStatus.OFFLINE.value,
        connections=0,
    )
    db.add(user_obj)
    _commit(db, f"User '{user.username}' already exists")
    db.refresh(user_obj)
    return serialize_user(user_obj)


@router.get("/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db)):
    user = db.get(StreamingUser, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize_user(user)


@router.put("/{user_id}")
def update_user(user_id: str, updates: UserUpdate, db: Session = Depends(get_db)):
    user = db.get(StreamingUser, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    changes = updates.model_dump(exclude_unset=True)
    if "expiry_date" in changes and changes["expiry_date"] is not None:
        changes["expiry_date"] = parse_timestamp(changes["expiry_date"])
    if changes.get("status") is not None:
        changes["status"] = changes["status"].value
    for key, value in changes.items():
        if value is not None:
            setattr(user, key, value)

    _commit(db, f"User '{user.username}' already exists")
    db.refresh(user)
    return serialize_user(user)


@router.delete("/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db)):
    user = db.get(StreamingUser, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    db.delete(user)
    _commit(db, "User could not be deleted")
    return {"id": user_id, "deleted": True}
