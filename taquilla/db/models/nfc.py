import uuid
from sqlalchemy import Column, String, Text, Integer, BigInteger, Float, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from .base import Base, now_utc


class NfcBand(Base):
    __tablename__ = 'nfc_bands'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    band_uid = Column(String(128), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    event_id = Column(UUID(as_uuid=True), ForeignKey('events.id', ondelete='SET NULL'), nullable=True)
    registered_by = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    status = Column(String(20), nullable=False, default='active')  # active|lost|deactivated

    security_token = Column(Text, nullable=True)
    token_issued_at = Column(DateTime(timezone=True), nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    binding_verified_at = Column(DateTime(timezone=True), nullable=True)

    last_location_lat = Column(Float, nullable=True)
    last_location_lng = Column(Float, nullable=True)
    concurrent_use_count = Column(Integer, nullable=False, default=0)
    max_concurrent_uses = Column(Integer, nullable=False, default=1)
    metadata_json = Column('metadata', JSONB, nullable=True)

    registered_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'lost', 'deactivated')", name='ck_nfc_bands_status'),
        Index('ix_nfc_bands_user_id', 'user_id'),
    )

    def get_metadata(self):
        return dict(self.metadata_json or {})

    def set_metadata(self, value):
        self.metadata_json = value


class BindingToken(Base):
    __tablename__ = 'binding_tokens'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    token = Column(String(64), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)


class NfcNonce(Base):
    __tablename__ = 'nfc_nonces'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    nfc_band_id = Column(UUID(as_uuid=True), ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False)
    nonce = Column(String(128), nullable=False)
    transaction_id = Column(UUID(as_uuid=True), ForeignKey('nfc_transactions.id', ondelete='SET NULL'), nullable=True)
    used_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (
        UniqueConstraint('nfc_band_id', 'nonce', name='uq_nfc_nonces_band_nonce'),
    )


class NfcUsageSession(Base):
    __tablename__ = 'nfc_usage_sessions'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    nfc_band_id = Column(UUID(as_uuid=True), ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False)
    session_token = Column(String(64), nullable=False, unique=True)
    location_lat = Column(Float, nullable=True)
    location_lng = Column(Float, nullable=True)
    started_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    transaction_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index('ix_nfc_usage_sessions_band_started', 'nfc_band_id', 'started_at'),
    )


class NfcRateLimit(Base):
    __tablename__ = 'nfc_rate_limits'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    nfc_band_id = Column(UUID(as_uuid=True), ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False, unique=True)
    window_start = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    request_count = Column(Integer, nullable=False, default=0)
    max_requests = Column(Integer, nullable=False, default=10)
    window_duration_seconds = Column(Integer, nullable=False, default=60)


class NfcTransaction(Base):
    __tablename__ = 'nfc_transactions'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    nfc_band_id = Column(UUID(as_uuid=True), ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id'), nullable=False)
    event_id = Column(UUID(as_uuid=True), ForeignKey('events.id'), nullable=False)
    transaction_type = Column(String(20), nullable=False, default='payment')
    amount_cents = Column(BigInteger, nullable=False)
    wallet_transaction_id = Column(UUID(as_uuid=True), ForeignKey('wallet_transactions.id'), nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
