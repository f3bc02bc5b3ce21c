"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000

Creates the institutions table and the append-only KYB audit log.
It corresponds to the schema defined in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

KYB_STATUSES = ('not_found', 'pending', 'under_review', 'verified', 'rejected', 'suspended')


def upgrade() -> None:
    """Create initial database schema."""

    # ============================================
    # INSTITUTIONS
    # ============================================
    op.create_table(
        'institutions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_address', sa.String(42), nullable=False),
        sa.Column('legal_name', sa.String(500), nullable=True),
        sa.Column('jurisdiction', sa.String(100), nullable=True),
        sa.Column('contact_email', sa.String(320), nullable=True),
        sa.Column(
            'kyb_status',
            sa.Enum(*KYB_STATUSES, name='kyb_status', native_enum=False, length=20),
            nullable=False,
            server_default='pending'
        ),
        sa.Column('is_accredited', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('on_chain_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('on_chain_tx_hash', sa.String(66), nullable=True),
        sa.Column('revoke_pending', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sanction_hit', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('sanction_hit_details', postgresql.JSONB(), nullable=True),
        sa.Column('last_screened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider_applicant_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            "on_chain_verified = false OR kyb_status = 'verified'",
            name='ck_onchain_requires_verified'
        ),
    )
    op.create_index('ix_institutions_wallet_address', 'institutions', ['wallet_address'], unique=True)
    op.create_index('ix_institutions_kyb_status', 'institutions', ['kyb_status'])
    op.create_index('ix_institutions_on_chain_verified', 'institutions', ['on_chain_verified'])
    op.create_index('ix_institutions_revoke_pending', 'institutions', ['revoke_pending'])
    op.create_index('ix_institution_status_onchain', 'institutions', ['kyb_status', 'on_chain_verified'])

    # ============================================
    # KYB AUDIT LOG (append-only)
    # ============================================
    op.create_table(
        'kyb_audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_address', sa.String(42), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=True),
        sa.Column('meta', postgresql.JSONB(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_kyb_audit_logs_wallet_address', 'kyb_audit_logs', ['wallet_address'])
    op.create_index('ix_kyb_audit_logs_action', 'kyb_audit_logs', ['action'])
    op.create_index('ix_kyb_audit_logs_created_at', 'kyb_audit_logs', ['created_at'])
    op.create_index('ix_kyb_audit_wallet_created', 'kyb_audit_logs', ['wallet_address', 'created_at'])

    # Audit rows are immutable
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_kyb_audit_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'kyb_audit_logs is append-only';
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute("""
        CREATE TRIGGER kyb_audit_logs_immutable
        BEFORE UPDATE OR DELETE ON kyb_audit_logs
        FOR EACH ROW EXECUTE FUNCTION prevent_kyb_audit_change()
    """)


def downgrade() -> None:
    """Drop all tables."""
    op.execute('DROP TRIGGER IF EXISTS kyb_audit_logs_immutable ON kyb_audit_logs')
    op.execute('DROP FUNCTION IF EXISTS prevent_kyb_audit_change()')
    op.drop_table('kyb_audit_logs')
    op.drop_table('institutions')
