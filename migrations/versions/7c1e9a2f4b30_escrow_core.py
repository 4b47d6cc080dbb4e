"""escrow core: bookings, payments, release tokens, wallet ledger

Revision ID: 7c1e9a2f4b30
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c1e9a2f4b30'
down_revision = None
branch_labels = None
depends_on = None

LIVE_PAYMENT = "custody_state IN ('PENDING', 'HELD', 'CAPTURED')"
LIVE_TOKEN = "consumed_at IS NULL AND expired_at IS NULL"


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "bookings" not in existing_tables:
        op.create_table(
            'bookings',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('customer_id', sa.Integer(), nullable=False),
            sa.Column('owner_id', sa.Integer(), nullable=False),
            sa.Column('bookable_type', sa.String(length=16), nullable=False),
            sa.Column('bookable_id', sa.Integer(), nullable=False),
            sa.Column('start_date', sa.Date(), nullable=False),
            sa.Column('end_date', sa.Date(), nullable=False),
            sa.Column('guests', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('booking_reference', sa.String(length=32), nullable=False),
            sa.Column('idempotency_key', sa.String(length=128), nullable=True),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='EN_ATTENTE'),
            sa.Column('total_price', sa.Numeric(18, 2), nullable=False),
            sa.Column('currency', sa.String(length=8), nullable=False, server_default='XOF'),
            sa.Column('commission_amount', sa.Numeric(18, 2), nullable=True),
            sa.Column('owner_amount', sa.Numeric(18, 2), nullable=True),
            sa.Column('notes', sa.Text(), nullable=True),
            sa.Column('cancellation_reason', sa.String(length=240), nullable=True),
            sa.Column('confirmed_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('idempotency_key'),
        )
        op.create_index('ix_bookings_customer_id', 'bookings', ['customer_id'])
        op.create_index('ix_bookings_owner_id', 'bookings', ['owner_id'])
        op.create_index('ix_bookings_booking_reference', 'bookings', ['booking_reference'], unique=True)
        op.create_index('ix_bookings_status', 'bookings', ['status'])

    if "payments" not in existing_tables:
        op.create_table(
            'payments',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('booking_id', sa.Integer(), sa.ForeignKey('bookings.id'), nullable=False),
            sa.Column('amount', sa.Numeric(18, 2), nullable=False),
            sa.Column('currency', sa.String(length=8), nullable=False, server_default='XOF'),
            sa.Column('provider', sa.String(length=32), nullable=False, server_default='gateway'),
            sa.Column('payment_reference', sa.String(length=128), nullable=True),
            sa.Column('custody_state', sa.String(length=16), nullable=False, server_default='PENDING'),
            sa.Column('failure_reason', sa.String(length=240), nullable=True),
            sa.Column('held_at', sa.DateTime(), nullable=True),
            sa.Column('captured_at', sa.DateTime(), nullable=True),
            sa.Column('released_at', sa.DateTime(), nullable=True),
            sa.Column('refused_at', sa.DateTime(), nullable=True),
            sa.Column('refunded_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_payments_booking_id', 'payments', ['booking_id'])
        op.create_index('ix_payments_payment_reference', 'payments', ['payment_reference'], unique=True)
        op.create_index('ix_payments_custody_state', 'payments', ['custody_state'])
        op.create_index(
            'uq_payments_live_per_booking',
            'payments',
            ['booking_id'],
            unique=True,
            sqlite_where=sa.text(LIVE_PAYMENT),
            postgresql_where=sa.text(LIVE_PAYMENT),
        )

    if "qr_release_tokens" not in existing_tables:
        op.create_table(
            'qr_release_tokens',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=False),
            sa.Column('token', sa.String(length=128), nullable=False),
            sa.Column('issued_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
            sa.Column('expired_at', sa.DateTime(), nullable=True),
            sa.Column('consumed_at', sa.DateTime(), nullable=True),
            sa.Column('consumed_by', sa.String(length=64), nullable=True),
            sa.Column('archived_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('token', name='uq_qr_release_token'),
        )
        op.create_index('ix_qr_release_tokens_payment_id', 'qr_release_tokens', ['payment_id'])
        op.create_index(
            'uq_qr_release_tokens_live_per_payment',
            'qr_release_tokens',
            ['payment_id'],
            unique=True,
            sqlite_where=sa.text(LIVE_TOKEN),
            postgresql_where=sa.text(LIVE_TOKEN),
        )

    if "wallet_accounts" not in existing_tables:
        op.create_table(
            'wallet_accounts',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('kind', sa.String(length=24), nullable=False),
            sa.Column('owner_ref', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('currency', sa.String(length=8), nullable=False, server_default='XOF'),
            sa.Column('balance', sa.Numeric(18, 2), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('kind', 'owner_ref', 'currency', name='uq_wallet_account_owner'),
        )
        op.create_index('ix_wallet_accounts_kind', 'wallet_accounts', ['kind'])

    if "wallet_transactions" not in existing_tables:
        op.create_table(
            'wallet_transactions',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('account_id', sa.Integer(), sa.ForeignKey('wallet_accounts.id'), nullable=False),
            sa.Column('reference', sa.String(length=160), nullable=False),
            sa.Column('amount', sa.Numeric(18, 2), nullable=False),
            sa.Column('type', sa.String(length=8), nullable=False),
            sa.Column('status', sa.String(length=8), nullable=False, server_default='PENDING'),
            sa.Column('category', sa.String(length=16), nullable=False, server_default='ADJUSTMENT'),
            sa.Column('related_payment_id', sa.Integer(), sa.ForeignKey('payments.id'), nullable=True),
            sa.Column('description', sa.String(length=240), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('settled_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_wallet_transactions_account_id', 'wallet_transactions', ['account_id'])
        op.create_index('ix_wallet_transactions_reference', 'wallet_transactions', ['reference'], unique=True)
        op.create_index('ix_wallet_transactions_status', 'wallet_transactions', ['status'])
        op.create_index('ix_wallet_transactions_related_payment_id', 'wallet_transactions', ['related_payment_id'])

    if "commission_rules" not in existing_tables:
        op.create_table(
            'commission_rules',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('bookable_type', sa.String(length=16), nullable=True),
            sa.Column('owner_id', sa.Integer(), nullable=True),
            sa.Column('rate', sa.Numeric(6, 4), nullable=False, server_default='0'),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('updated_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_commission_rules_bookable_type', 'commission_rules', ['bookable_type'])
        op.create_index('ix_commission_rules_owner_id', 'commission_rules', ['owner_id'])

    if "audit_logs" not in existing_tables:
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('actor', sa.String(length=64), nullable=False, server_default='system'),
            sa.Column('action', sa.String(length=64), nullable=False),
            sa.Column('target_type', sa.String(length=32), nullable=True),
            sa.Column('target_id', sa.Integer(), nullable=True),
            sa.Column('meta', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])

    if "webhook_events" not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('provider', sa.String(length=32), nullable=False, server_default='gateway'),
            sa.Column('event_id', sa.String(length=128), nullable=False),
            sa.Column('event_type', sa.String(length=64), nullable=False),
            sa.Column('reference', sa.String(length=128), nullable=True),
            sa.Column('outcome', sa.String(length=32), nullable=False, server_default='received'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('event_id'),
        )
        op.create_index('ix_webhook_events_reference', 'webhook_events', ['reference'])


def downgrade():
    op.drop_table('webhook_events')
    op.drop_table('audit_logs')
    op.drop_table('commission_rules')
    op.drop_table('wallet_transactions')
    op.drop_table('wallet_accounts')
    op.drop_table('qr_release_tokens')
    op.drop_table('payments')
    op.drop_table('bookings')
