import uuid
from sqlalchemy import Column, String, Text, Integer, BigInteger, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Index, event
from sqlalchemy.dialects.postgresql import UUID, JSONB
from .base import Base, now_utc


CREDIT_REFERENCE_TYPES = ('payment', 'reload', 'refund')
DEBIT_REFERENCE_TYPES = ('purchase', 'transfer')


class Wallet(Base):
    __tablename__ = 'wallets'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    # NULL for the user's global wallet
    event_id = Column(UUID(as_uuid=True), ForeignKey('events.id', ondelete='CASCADE'), nullable=True)
    # Only ever written through a compare-and-swap on the previous value
    balance_cents = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'event_id', name='uq_wallets_user_event'),
        CheckConstraint('balance_cents >= 0', name='ck_wallets_balance_non_negative'),
        Index(
            'uq_wallets_user_global',
            'user_id',
            unique=True,
            postgresql_where=event_id.is_(None),
            sqlite_where=event_id.is_(None),
        ),
    )


class WalletTransaction(Base):
    """Immutable ledger row; see ``_reject_ledger_mutation``."""

    __tablename__ = 'wallet_transactions'

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    wallet_id = Column(UUID(as_uuid=True), ForeignKey('wallets.id', ondelete='RESTRICT'), nullable=False)
    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id'), nullable=False)
    transaction_type = Column(String(10), nullable=False)  # credit|debit
    amount_cents = Column(BigInteger, nullable=False)
    balance_after_cents = Column(BigInteger, nullable=False)
    reference_type = Column(String(20), nullable=False)
    reference_id = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    event_id = Column(UUID(as_uuid=True), ForeignKey('events.id'), nullable=True)
    idempotency_key = Column(String(200), nullable=True, unique=True)
    sequence_number = Column(BigInteger, nullable=False)
    metadata_json = Column('metadata', JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc, nullable=False)

    __table_args__ = (
        UniqueConstraint('wallet_id', 'sequence_number', name='uq_wallet_transactions_wallet_sequence'),
        CheckConstraint("transaction_type IN ('credit', 'debit')", name='ck_wallet_transactions_type'),
        CheckConstraint('amount_cents > 0', name='ck_wallet_transactions_amount_positive'),
        CheckConstraint('balance_after_cents >= 0', name='ck_wallet_transactions_balance_after_non_negative'),
        Index('ix_wallet_transactions_user_created', 'user_id', 'created_at'),
    )

    def get_metadata(self):
        return self.metadata_json


class LedgerImmutableError(RuntimeError):
    pass


@event.listens_for(WalletTransaction, 'before_update')
@event.listens_for(WalletTransaction, 'before_delete')
def _reject_ledger_mutation(mapper, connection, target):
    raise LedgerImmutableError(f"wallet transaction {target.id} is append-only")
