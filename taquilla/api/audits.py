"""
Audit log API endpoints.

Query audit logs with permission checks tailored for organization
administrators.
"""
from typing import Optional, List
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from taquilla.db.database import get_db
from taquilla.db import schemas
from taquilla.db.repositories import audits as audit_repo
from taquilla.api.deps import get_current_user_context
from taquilla.api.permissions import can_view_org_audits

router = APIRouter(prefix="/audits", tags=["audits"])


@router.get("", response_model=List[schemas.AuditLog])
def list_audit_logs(
    organization_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    action_type: Optional[str] = None,
    target_id: Optional[uuid.UUID] = None,
    audit_status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    user_context=Depends(get_current_user_context),
):
    user, current_user = user_context

    if organization_id:
        if not can_view_org_audits(organization_id, current_user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    elif not current_user.get('is_superadmin'):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden, organization_id is required for non-superadmins")

    audit_logs = audit_repo.get_audit_logs(
        db,
        organization_id=organization_id,
        user_id=user_id,
        action_type=action_type,
        target_id=target_id,
        status=audit_status,
        skip=skip,
        limit=min(max(limit, 1), 500),
    )
    # Schema expects .metadata but the model maps that column to metadata_json
    return [
        schemas.AuditLog(
            id=log.id,
            organization_id=log.organization_id,
            actor_user_id=log.actor_user_id,
            action_type=log.action_type,
            status=log.status,
            target_type=log.target_type,
            target_id=log.target_id,
            reason=log.reason,
            metadata=log.get_metadata(),
            created_at=log.created_at,
        )
        for log in audit_logs
    ]
