import uuid
from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional

from taquilla.db.models.wallets import CREDIT_REFERENCE_TYPES


class WalletBalance(BaseModel):
    wallet_id: uuid.UUID
    user_id: uuid.UUID
    event_id: Optional[uuid.UUID] = None
    balance: Decimal


class WalletTransaction(BaseModel):
    id: uuid.UUID
    wallet_id: uuid.UUID
    transaction_type: str
    amount: Decimal
    balance_after: Decimal
    reference_type: str
    reference_id: str
    description: Optional[str] = None
    event_id: Optional[uuid.UUID] = None
    sequence_number: int
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class WalletTransactionList(BaseModel):
    items: List[WalletTransaction]
    limit: int
    offset: int


class WalletCreditRequest(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    reference_type: str
    reference_id: str
    description: Optional[str] = None
    event_id: Optional[uuid.UUID] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)

    @field_validator("reference_type")
    @classmethod
    def _validate_reference_type(cls, v: str) -> str:
        cleaned = (v or "").strip().lower()
        if cleaned not in CREDIT_REFERENCE_TYPES:
            raise ValueError(f"reference_type must be one of {', '.join(CREDIT_REFERENCE_TYPES)}")
        return cleaned


class LedgerIntegrityReport(BaseModel):
    wallet_id: uuid.UUID
    is_valid: bool
    calculated_balance: Decimal
    ledger_balance: Decimal
    stored_balance: Decimal
    discrepancy: Decimal
    transaction_count: int
    sequence_gaps: List[int]
