import uuid
from enum import Enum
from sqlalchemy import Column, String, Text, Boolean, Integer, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from .base import Base, now_utc


class TicketStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    ISSUED = "issued"
    PAID = "paid"
    USED = "used"
    REVOKED = "revoked"
    REFUNDED = "refunded"


TICKET_STATUSES = tuple(s.value for s in TicketStatus)


class Ticket(Base):
    __tablename__ = 'tickets'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_number = Column(String(32), nullable=False, unique=True)
    ticket_type_id = Column(UUID(as_uuid=True), ForeignKey('ticket_types.id'), nullable=False)
    event_id = Column(UUID(as_uuid=True), ForeignKey('events.id'), nullable=False)
    organization_id = Column(UUID(as_uuid=True), ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True)

    purchaser_id = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    purchaser_email = Column(Text, nullable=False)
    purchaser_name = Column(Text, nullable=True)
    assigned_to_email = Column(Text, nullable=True)
    assigned_to_name = Column(Text, nullable=True)

    # Signed admission credential (JWT) and its decoded claims
    qr_signature = Column(Text, nullable=False, default='')
    qr_payload = Column(JSONB, nullable=True)

    status = Column(String(20), nullable=False, default='issued')
    scan_count = Column(Integer, nullable=False, default=0)
    first_scan_at = Column(DateTime(timezone=True), nullable=True)
    last_scan_at = Column(DateTime(timezone=True), nullable=True)

    payment_id = Column(Text, nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), nullable=True)

    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=now_utc, onupdate=now_utc, nullable=False)

    ticket_type = relationship("TicketType")
    event = relationship("Event")
    nonces = relationship("TicketNonce", back_populates="ticket", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending_payment', 'issued', 'paid', 'used', 'revoked', 'refunded')",
            name='ck_tickets_status',
        ),
        CheckConstraint('scan_count >= 0', name='ck_tickets_scan_count_non_negative'),
        Index('ix_tickets_event_id_status', 'event_id', 'status'),
        Index('ix_tickets_payment_id', 'payment_id'),
        Index('ix_tickets_purchaser_id', 'purchaser_id'),
    )


class TicketNonce(Base):
    __tablename__ = 'ticket_nonces'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_id = Column(UUID(as_uuid=True), ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False)
    nonce = Column(String(64), nullable=False)
    # Set exactly once, when the nonce is consumed by an admitting scan
    scan_id = Column(UUID(as_uuid=True), ForeignKey('ticket_scans.id', ondelete='SET NULL'), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    ticket = relationship("Ticket", back_populates="nonces")

    __table_args__ = (
        UniqueConstraint('ticket_id', 'nonce', name='uq_ticket_nonces_ticket_nonce'),
    )


class TicketScan(Base):
    __tablename__ = 'ticket_scans'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_id = Column(UUID(as_uuid=True), ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False)
    scanned_by = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    scan_location = Column(Text, nullable=True)
    scan_method = Column(String(16), nullable=False, default='qr')
    is_valid = Column(Boolean, nullable=False)
    rejection_reason = Column(Text, nullable=True)
    scanned_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (
        Index('ix_ticket_scans_ticket_id_scanned_at', 'ticket_id', 'scanned_at'),
    )
