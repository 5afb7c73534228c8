"""
Authentication helpers and identity resolution.

Identity comes from the oauth2-proxy headers in front of the service. Users
are upserted on first sight; ADMIN_EMAILS elevates matching users to
superadmin.
"""
import os
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.orm import Session

from taquilla.db import models
from taquilla.db.repositories import users as user_repo


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return email.strip().lower()


def _normalize_list_env(var_name: str) -> set:
    raw = os.getenv(var_name, "")
    values = set()
    for entry in raw.split(","):
        cleaned = entry.strip().strip('"').strip("'")
        if cleaned:
            values.add(cleaned.lower())
    return values


def _admin_emails() -> set:
    return _normalize_list_env("ADMIN_EMAILS")


def resolve_identity_from_headers(
    x_auth_request_user: Optional[str],
    x_auth_request_email: Optional[str],
    x_forwarded_user: Optional[str],
    x_forwarded_email: Optional[str],
) -> Tuple[Optional[str], Optional[str]]:
    user = x_auth_request_user or x_forwarded_user
    email = _normalize_email(x_auth_request_email or x_forwarded_email)
    return user, email


def get_or_create_user(db: Session, email: str, display_name: Optional[str] = None) -> models.User:
    user = user_repo.get_user_by_email(db, email)
    promote = email in _admin_emails()
    if user is None:
        user = models.User(
            email=email,
            display_name=display_name or email.split("@")[0],
            is_superadmin=promote,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    if promote and not user.is_superadmin:
        user.is_superadmin = True
        db.commit()
        db.refresh(user)
    return user


def build_user_context(db: Session, user: models.User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "is_superadmin": bool(user.is_superadmin),
        "organization_id": user.organization_id,
        "roles": user_repo.list_roles(db, user.id),
    }
