import uuid
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional


class LocationIn(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class BindingPrepareResponse(BaseModel):
    token: str
    expires_at: datetime
    expires_in: int


class BindingTokenRequest(BaseModel):
    token: str


class BindingPayloadResponse(BaseModel):
    version: int
    flags: int
    token: str
    expires_at: int
    signature: str


class BindingCompleteRequest(BaseModel):
    token: str
    band_uid: Optional[str] = None
    payload_signature: Optional[str] = None
    event_id: Optional[uuid.UUID] = None

    @field_validator("band_uid")
    @classmethod
    def _strip_uid(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        cleaned = v.strip()
        return cleaned or None


class NfcBand(BaseModel):
    id: uuid.UUID
    band_uid: str
    user_id: Optional[uuid.UUID] = None
    event_id: Optional[uuid.UUID] = None
    status: str
    binding_verified_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    registered_at: datetime
    last_used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BindingCompleteResponse(BaseModel):
    band: NfcBand
    security_token: str


class SecurityTokenResponse(BaseModel):
    security_token: str
    expires_at: datetime


class BandStatusRequest(BaseModel):
    status: str

    @field_validator("status")
    @classmethod
    def _validate_status(cls, v: str) -> str:
        cleaned = (v or "").strip().lower()
        if cleaned not in {"active", "lost", "deactivated"}:
            raise ValueError("status must be one of active, lost, deactivated")
        return cleaned


class NfcValidateRequest(BaseModel):
    token: str
    nonce: str = Field(min_length=8, max_length=128)
    event_id: Optional[uuid.UUID] = None
    location: Optional[LocationIn] = None


class NfcValidateResponse(BaseModel):
    valid: bool
    band_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    session_token: Optional[str] = None
    error: Optional[str] = None


class NfcPaymentRequest(BaseModel):
    band_uid: str
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    event_id: uuid.UUID
    token: Optional[str] = None
    nonce: Optional[str] = None
    location: Optional[LocationIn] = None
    description: Optional[str] = None


class NfcPaymentResponse(BaseModel):
    transaction_id: uuid.UUID
    wallet_transaction_id: uuid.UUID
    new_balance: Decimal


class BindingChallengeResponse(BaseModel):
    challenge: str


class BandVerifyRequest(BaseModel):
    challenge: str
    response: str


class BandVerifyResponse(BaseModel):
    verified: bool


class UsageSessionEndResponse(BaseModel):
    session_token: str
    ended_at: datetime
    transaction_count: int


class BandRegisterRequest(BaseModel):
    band_uid: str = Field(min_length=1, max_length=128)
    user_id: uuid.UUID
    event_id: Optional[uuid.UUID] = None
