import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional

from taquilla.db.models.tickets import TicketStatus


class TicketIssueRequest(BaseModel):
    event_id: uuid.UUID
    ticket_type_id: uuid.UUID
    purchaser_email: str
    purchaser_name: Optional[str] = None
    purchaser_id: Optional[uuid.UUID] = None
    payment_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)

    @field_validator("purchaser_email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        cleaned = (v or "").strip().lower()
        if "@" not in cleaned:
            raise ValueError("A valid purchaser email is required")
        return cleaned


class TicketResponse(BaseModel):
    id: uuid.UUID
    ticket_number: str
    event_id: uuid.UUID
    ticket_type_id: uuid.UUID
    organization_id: Optional[uuid.UUID] = None
    purchaser_email: str
    purchaser_name: Optional[str] = None
    status: str
    scan_count: int
    first_scan_at: Optional[datetime] = None
    last_scan_at: Optional[datetime] = None
    payment_id: Optional[str] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IssuedTicketResponse(TicketResponse):
    qr_signature: str


class TicketTransitionRequest(BaseModel):
    status: TicketStatus
    reason: Optional[str] = None


class TicketRevokeRequest(BaseModel):
    reason: Optional[str] = None


class BulkRevokeResponse(BaseModel):
    revoked: int


class TicketScanEntry(BaseModel):
    id: uuid.UUID
    ticket_id: uuid.UUID
    scanned_by: Optional[uuid.UUID] = None
    scan_location: Optional[str] = None
    scan_method: str
    is_valid: bool
    rejection_reason: Optional[str] = None
    scanned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScanRequest(BaseModel):
    qr_signature: str
    location: Optional[str] = None
    scanned_at: Optional[datetime] = None

    @field_validator("qr_signature")
    @classmethod
    def _strip_signature(cls, v: str) -> str:
        cleaned = (v or "").strip()
        if not cleaned:
            raise ValueError("QR signature is required")
        return cleaned


class ScanResponse(BaseModel):
    success: bool
    ticket_id: Optional[uuid.UUID] = None
    scan_id: Optional[uuid.UUID] = None
    ticket_number: Optional[str] = None
    status: Optional[str] = None
    scan_count: Optional[int] = None
    error: Optional[str] = None
    rule_id: Optional[uuid.UUID] = None
    rule_type: Optional[str] = None


class ValidationResponse(BaseModel):
    valid: bool
    ticket_id: Optional[uuid.UUID] = None
    error: Optional[str] = None
    rule_id: Optional[uuid.UUID] = None
    rule_type: Optional[str] = None


class BatchScanItem(BaseModel):
    qr_signature: str
    scanned_at: datetime
    location: Optional[str] = None
    client_scan_id: Optional[str] = None


class BatchScanRequest(BaseModel):
    scans: List[BatchScanItem] = Field(min_length=1, max_length=500)


class BatchScanResult(BaseModel):
    client_scan_id: Optional[str] = None
    success: bool
    ticket_id: Optional[uuid.UUID] = None
    error: Optional[str] = None


class BatchScanResponse(BaseModel):
    total: int
    successful: int
    failed: int
    duplicates: int
    results: List[BatchScanResult]

