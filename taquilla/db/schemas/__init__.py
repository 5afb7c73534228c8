"""
Pydantic request/response schemas, re-exported per domain.
"""

from .users import RoleAssignment, CurrentUser
from .audits import AuditLogBase, AuditLogCreate, AuditLog
from .tickets import (
    TicketIssueRequest,
    TicketResponse,
    IssuedTicketResponse,
    TicketTransitionRequest,
    TicketRevokeRequest,
    BulkRevokeResponse,
    TicketScanEntry,
    ScanRequest,
    ScanResponse,
    ValidationResponse,
    BatchScanItem,
    BatchScanRequest,
    BatchScanResult,
    BatchScanResponse,
)
from .nfc import (
    LocationIn,
    BindingPrepareResponse,
    BindingTokenRequest,
    BindingPayloadResponse,
    BindingCompleteRequest,
    NfcBand,
    BindingCompleteResponse,
    SecurityTokenResponse,
    BandStatusRequest,
    NfcValidateRequest,
    NfcValidateResponse,
    NfcPaymentRequest,
    NfcPaymentResponse,
    BindingChallengeResponse,
    BandVerifyRequest,
    BandVerifyResponse,
    UsageSessionEndResponse,
    BandRegisterRequest,
)
from .wallets import (
    WalletBalance,
    WalletTransaction,
    WalletTransactionList,
    WalletCreditRequest,
    LedgerIntegrityReport,
)
