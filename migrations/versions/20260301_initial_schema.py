"""Initial schema: organizations, events, tickets, NFC bands, wallets, audit logs

Revision ID: 6a1f0c2d9b10
Revises:
Create Date: 2026-03-01 10:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '6a1f0c2d9b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid():
    return postgresql.UUID(as_uuid=True)


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()'))


def upgrade() -> None:
    # 1) Tenancy and identity
    op.create_table(
        'organizations',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        _created_at(),
        sa.UniqueConstraint('name', name='uq_organizations_name'),
        sa.UniqueConstraint('slug', name='uq_organizations_slug'),
    )
    op.create_table(
        'users',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('display_name', sa.Text(), nullable=True),
        sa.Column('is_superadmin', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('organization_id', _uuid(), sa.ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )

    # 2) Events and ticket catalogue
    op.create_table(
        'events',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('organization_id', _uuid(), sa.ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('slug', sa.String(200), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_multi_day', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('status', sa.String(20), nullable=False, server_default='published'),
        _created_at(),
        sa.UniqueConstraint('slug', name='uq_events_slug'),
        sa.CheckConstraint("status IN ('draft', 'published', 'live', 'ended', 'archived')", name='ck_events_status'),
        sa.CheckConstraint('end_date >= start_date', name='ck_events_date_order'),
    )
    op.create_index('ix_events_organization_id', 'events', ['organization_id'], unique=False)

    op.create_table(
        'user_roles',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('user_id', _uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', sa.String(32), nullable=False),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=True),
        _created_at(),
        sa.UniqueConstraint('user_id', 'role', 'event_id', name='uq_user_roles_user_role_event'),
        sa.CheckConstraint("role IN ('event_admin', 'accounting', 'scanner', 'promoter')", name='ck_user_roles_role'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'], unique=False)

    op.create_table(
        'ticket_types',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('price_cents', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_multi_scan', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('max_scans', sa.Integer(), nullable=True),
        _created_at(),
        sa.CheckConstraint('price_cents >= 0', name='ck_ticket_types_price_non_negative'),
        sa.CheckConstraint('max_scans IS NULL OR max_scans > 0', name='ck_ticket_types_max_scans_positive'),
    )
    op.create_table(
        'ticket_usage_rules',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('ticket_type_id', _uuid(), sa.ForeignKey('ticket_types.id', ondelete='CASCADE'), nullable=False),
        sa.Column('rule_type', sa.String(32), nullable=False),
        sa.Column('rule_config', postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        _created_at(),
    )
    op.create_index('ix_ticket_usage_rules_type_priority', 'ticket_usage_rules', ['ticket_type_id', 'priority'], unique=False)

    # 3) Tickets, scans and QR nonces
    op.create_table(
        'tickets',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('ticket_number', sa.String(32), nullable=False),
        sa.Column('ticket_type_id', _uuid(), sa.ForeignKey('ticket_types.id'), nullable=False),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id'), nullable=False),
        sa.Column('organization_id', _uuid(), sa.ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('purchaser_id', _uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('purchaser_email', sa.Text(), nullable=False),
        sa.Column('purchaser_name', sa.Text(), nullable=True),
        sa.Column('assigned_to_email', sa.Text(), nullable=True),
        sa.Column('assigned_to_name', sa.Text(), nullable=True),
        sa.Column('qr_signature', sa.Text(), nullable=False, server_default=''),
        sa.Column('qr_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='issued'),
        sa.Column('scan_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_scan_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_scan_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_id', sa.Text(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('revoked_by', _uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('ticket_number', name='uq_tickets_ticket_number'),
        sa.CheckConstraint(
            "status IN ('pending_payment', 'issued', 'paid', 'used', 'revoked', 'refunded')",
            name='ck_tickets_status',
        ),
        sa.CheckConstraint('scan_count >= 0', name='ck_tickets_scan_count_non_negative'),
    )
    op.create_index('ix_tickets_event_id_status', 'tickets', ['event_id', 'status'], unique=False)
    op.create_index('ix_tickets_payment_id', 'tickets', ['payment_id'], unique=False)
    op.create_index('ix_tickets_purchaser_id', 'tickets', ['purchaser_id'], unique=False)

    op.create_table(
        'ticket_scans',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('ticket_id', _uuid(), sa.ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('scanned_by', _uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('scan_location', sa.Text(), nullable=True),
        sa.Column('scan_method', sa.String(16), nullable=False, server_default='qr'),
        sa.Column('is_valid', sa.Boolean(), nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('scanned_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_ticket_scans_ticket_id_scanned_at', 'ticket_scans', ['ticket_id', 'scanned_at'], unique=False)

    op.create_table(
        'ticket_nonces',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('ticket_id', _uuid(), sa.ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False),
        sa.Column('nonce', sa.String(64), nullable=False),
        sa.Column('scan_id', _uuid(), sa.ForeignKey('ticket_scans.id', ondelete='SET NULL'), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint('ticket_id', 'nonce', name='uq_ticket_nonces_ticket_nonce'),
    )

    # 4) Wallets and the append-only ledger
    op.create_table(
        'wallets',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('user_id', _uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id', ondelete='CASCADE'), nullable=True),
        sa.Column('balance_cents', sa.BigInteger(), nullable=False, server_default='0'),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('user_id', 'event_id', name='uq_wallets_user_event'),
        sa.CheckConstraint('balance_cents >= 0', name='ck_wallets_balance_non_negative'),
    )
    # At most one global (event_id IS NULL) wallet per user
    op.create_index(
        'uq_wallets_user_global',
        'wallets',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text('event_id IS NULL'),
    )

    op.create_table(
        'wallet_transactions',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('wallet_id', _uuid(), sa.ForeignKey('wallets.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('user_id', _uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('transaction_type', sa.String(10), nullable=False),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('balance_after_cents', sa.BigInteger(), nullable=False),
        sa.Column('reference_type', sa.String(20), nullable=False),
        sa.Column('reference_id', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id'), nullable=True),
        sa.Column('idempotency_key', sa.String(200), nullable=True),
        sa.Column('sequence_number', sa.BigInteger(), nullable=False),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _created_at(),
        sa.UniqueConstraint('idempotency_key', name='uq_wallet_transactions_idempotency_key'),
        sa.UniqueConstraint('wallet_id', 'sequence_number', name='uq_wallet_transactions_wallet_sequence'),
        sa.CheckConstraint("transaction_type IN ('credit', 'debit')", name='ck_wallet_transactions_type'),
        sa.CheckConstraint('amount_cents > 0', name='ck_wallet_transactions_amount_positive'),
        sa.CheckConstraint('balance_after_cents >= 0', name='ck_wallet_transactions_balance_after_non_negative'),
    )
    op.create_index('ix_wallet_transactions_user_created', 'wallet_transactions', ['user_id', 'created_at'], unique=False)

    # Ledger rows are immutable at the database level as well
    op.execute(
        """
        CREATE OR REPLACE FUNCTION wallet_transactions_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'wallet_transactions is append-only';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_wallet_transactions_immutable
        BEFORE UPDATE OR DELETE ON wallet_transactions
        FOR EACH ROW EXECUTE FUNCTION wallet_transactions_immutable();
        """
    )

    # 5) NFC bands
    op.create_table(
        'nfc_bands',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('band_uid', sa.String(128), nullable=False),
        sa.Column('user_id', _uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id', ondelete='SET NULL'), nullable=True),
        sa.Column('registered_by', _uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('security_token', sa.Text(), nullable=True),
        sa.Column('token_issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('binding_verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_location_lat', sa.Float(), nullable=True),
        sa.Column('last_location_lng', sa.Float(), nullable=True),
        sa.Column('concurrent_use_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_concurrent_uses', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('registered_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('band_uid', name='uq_nfc_bands_band_uid'),
        sa.CheckConstraint("status IN ('active', 'lost', 'deactivated')", name='ck_nfc_bands_status'),
    )
    op.create_index('ix_nfc_bands_user_id', 'nfc_bands', ['user_id'], unique=False)

    op.create_table(
        'binding_tokens',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('token', sa.String(64), nullable=False),
        sa.Column('user_id', _uuid(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint('token', name='uq_binding_tokens_token'),
    )

    op.create_table(
        'nfc_transactions',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('nfc_band_id', _uuid(), sa.ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', _uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('event_id', _uuid(), sa.ForeignKey('events.id'), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False, server_default='payment'),
        sa.Column('amount_cents', sa.BigInteger(), nullable=False),
        sa.Column('wallet_transaction_id', _uuid(), sa.ForeignKey('wallet_transactions.id'), nullable=True),
        _created_at(),
    )

    op.create_table(
        'nfc_nonces',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('nfc_band_id', _uuid(), sa.ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('nonce', sa.String(128), nullable=False),
        sa.Column('transaction_id', _uuid(), sa.ForeignKey('nfc_transactions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('nfc_band_id', 'nonce', name='uq_nfc_nonces_band_nonce'),
    )

    op.create_table(
        'nfc_usage_sessions',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('nfc_band_id', _uuid(), sa.ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_token', sa.String(64), nullable=False),
        sa.Column('location_lat', sa.Float(), nullable=True),
        sa.Column('location_lng', sa.Float(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('transaction_count', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('session_token', name='uq_nfc_usage_sessions_session_token'),
    )
    op.create_index('ix_nfc_usage_sessions_band_started', 'nfc_usage_sessions', ['nfc_band_id', 'started_at'], unique=False)

    op.create_table(
        'nfc_rate_limits',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('nfc_band_id', _uuid(), sa.ForeignKey('nfc_bands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_requests', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('window_duration_seconds', sa.Integer(), nullable=False, server_default='60'),
        sa.UniqueConstraint('nfc_band_id', name='uq_nfc_rate_limits_band'),
    )

    # 6) Audit trail
    op.create_table(
        'audit_logs',
        sa.Column('id', _uuid(), nullable=False, primary_key=True),
        sa.Column('organization_id', _uuid(), sa.ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('actor_user_id', _uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('action_type', sa.Text(), nullable=False),
        sa.Column('target_type', sa.Text(), nullable=True),
        sa.Column('target_id', _uuid(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _created_at(),
    )
    op.create_index('ix_audit_logs_organization_id_created_at', 'audit_logs', ['organization_id', 'created_at'], unique=False)
    op.create_index('ix_audit_logs_actor_user_id_created_at', 'audit_logs', ['actor_user_id', 'created_at'], unique=False)
    op.create_index('ix_audit_logs_action_type', 'audit_logs', ['action_type'], unique=False)


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('nfc_rate_limits')
    op.drop_table('nfc_usage_sessions')
    op.drop_table('nfc_nonces')
    op.drop_table('nfc_transactions')
    op.drop_table('binding_tokens')
    op.drop_table('nfc_bands')
    op.execute("DROP TRIGGER IF EXISTS trg_wallet_transactions_immutable ON wallet_transactions")
    op.execute("DROP FUNCTION IF EXISTS wallet_transactions_immutable()")
    op.drop_table('wallet_transactions')
    op.drop_table('wallets')
    op.drop_table('ticket_nonces')
    op.drop_table('ticket_scans')
    op.drop_table('tickets')
    op.drop_table('ticket_usage_rules')
    op.drop_table('ticket_types')
    op.drop_table('user_roles')
    op.drop_table('events')
    op.drop_table('users')
    op.drop_table('organizations')
