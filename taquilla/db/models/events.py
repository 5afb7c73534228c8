import uuid
from sqlalchemy import Column, String, Text, Boolean, Integer, BigInteger, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from .base import Base, now_utc


class Event(Base):
    __tablename__ = 'events'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True)
    name = Column(Text, nullable=False)
    slug = Column(String(200), nullable=False, unique=True)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    is_multi_day = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default='published')  # draft|published|live|ended|archived
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    organization = relationship("Organization", back_populates="events")
    ticket_types = relationship("TicketType", back_populates="event", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("status IN ('draft', 'published', 'live', 'ended', 'archived')", name='ck_events_status'),
        CheckConstraint('end_date >= start_date', name='ck_events_date_order'),
        Index('ix_events_organization_id', 'organization_id'),
    )


class TicketType(Base):
    __tablename__ = 'ticket_types'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(UUID(as_uuid=True), ForeignKey('events.id', ondelete='CASCADE'), nullable=False)
    name = Column(Text, nullable=False)
    price_cents = Column(BigInteger, nullable=False, default=0)
    is_multi_scan = Column(Boolean, nullable=False, default=False)
    max_scans = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    event = relationship("Event", back_populates="ticket_types")
    usage_rules = relationship("TicketUsageRule", back_populates="ticket_type", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('price_cents >= 0', name='ck_ticket_types_price_non_negative'),
        CheckConstraint('max_scans IS NULL OR max_scans > 0', name='ck_ticket_types_max_scans_positive'),
    )


class TicketUsageRule(Base):
    __tablename__ = 'ticket_usage_rules'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_type_id = Column(UUID(as_uuid=True), ForeignKey('ticket_types.id', ondelete='CASCADE'), nullable=False)
    rule_type = Column(String(32), nullable=False)
    rule_config = Column(JSONB, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    ticket_type = relationship("TicketType", back_populates="usage_rules")

    __table_args__ = (
        Index('ix_ticket_usage_rules_type_priority', 'ticket_type_id', 'priority'),
    )
