"""
Models package aggregator.

Re-exports the declarative Base and every model so callers can use
``from taquilla.db import models`` and ``models.Ticket``.
"""
from .base import Base, now_utc, as_utc
from .users import Organization, User, UserRole
from .events import Event, TicketType, TicketUsageRule
from .tickets import Ticket, TicketNonce, TicketScan, TicketStatus, TICKET_STATUSES
from .nfc import NfcBand, BindingToken, NfcNonce, NfcUsageSession, NfcRateLimit, NfcTransaction
from .wallets import (
    Wallet,
    WalletTransaction,
    LedgerImmutableError,
    CREDIT_REFERENCE_TYPES,
    DEBIT_REFERENCE_TYPES,
)
from .audit import AuditLog

__all__ = [
    "Base",
    "now_utc",
    "as_utc",
    "Organization",
    "User",
    "UserRole",
    "Event",
    "TicketType",
    "TicketUsageRule",
    "Ticket",
    "TicketNonce",
    "TicketScan",
    "TicketStatus",
    "TICKET_STATUSES",
    "NfcBand",
    "BindingToken",
    "NfcNonce",
    "NfcUsageSession",
    "NfcRateLimit",
    "NfcTransaction",
    "Wallet",
    "WalletTransaction",
    "LedgerImmutableError",
    "CREDIT_REFERENCE_TYPES",
    "DEBIT_REFERENCE_TYPES",
    "AuditLog",
]
