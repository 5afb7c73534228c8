"""
API dependency helpers.

Provides the dependency-resolved user context for routes.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from taquilla.api.auth import build_user_context, get_or_create_user, resolve_identity_from_headers
from taquilla.db.database import get_db
from taquilla.utils.runtime import dev_mode_active

logger = logging.getLogger("taquilla.auth")

DEV_USER_EMAIL = "dev@localhost"

# Contract:
# Returns (sqlalchemy User model, current_user_context_dict)
# Raises 401 if identity cannot be resolved.

def get_current_user_context(
    db: Session = Depends(get_db),
    x_auth_request_user: Optional[str] = Header(default=None),
    x_auth_request_email: Optional[str] = Header(default=None),
    x_forwarded_user: Optional[str] = Header(default=None),
    x_forwarded_email: Optional[str] = Header(default=None),
) -> Tuple[Any, Dict[str, Any]]:
    if dev_mode_active():
        email, name = DEV_USER_EMAIL, "Development User"
    else:
        name, email = resolve_identity_from_headers(
            x_auth_request_user=x_auth_request_user,
            x_auth_request_email=x_auth_request_email,
            x_forwarded_user=x_forwarded_user,
            x_forwarded_email=x_forwarded_email,
        )
        if not email:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    user = get_or_create_user(db, email=email, display_name=name)
    return user, build_user_context(db, user)
