import uuid
from typing import List, Optional
from pydantic import BaseModel


class RoleAssignment(BaseModel):
    role: str
    event_id: Optional[uuid.UUID] = None


class CurrentUser(BaseModel):
    id: uuid.UUID
    email: str
    display_name: Optional[str] = None
    is_superadmin: bool = False
    organization_id: Optional[uuid.UUID] = None
    roles: List[RoleAssignment] = []
