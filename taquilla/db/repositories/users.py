"""
User, organization and role lookups.
"""
from __future__ import annotations

import uuid
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from taquilla.db import models
from taquilla.utils.role_permissions import validate_role


def get_user(db: Session, user_id: uuid.UUID) -> Optional[models.User]:
    return db.get(models.User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email).first()


def list_roles(db: Session, user_id: uuid.UUID) -> List[Dict[str, Optional[uuid.UUID]]]:
    rows = (
        db.query(models.UserRole)
        .filter(models.UserRole.user_id == user_id)
        .order_by(models.UserRole.created_at.asc())
        .all()
    )
    return [{"role": r.role, "event_id": r.event_id} for r in rows]


def grant_role(db: Session, *, user_id: uuid.UUID, role: str, event_id: Optional[uuid.UUID] = None) -> models.UserRole:
    role = validate_role(role)
    existing = (
        db.query(models.UserRole)
        .filter(models.UserRole.user_id == user_id, models.UserRole.role == role)
        .filter(models.UserRole.event_id.is_(None) if event_id is None else models.UserRole.event_id == event_id)
        .first()
    )
    if existing:
        return existing
    row = models.UserRole(user_id=user_id, role=role, event_id=event_id)
    db.add(row)
    db.flush()
    return row
