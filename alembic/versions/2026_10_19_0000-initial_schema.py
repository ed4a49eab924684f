"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create products table (catalogue mirror, read-only to the service)
    # ========================================================================
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=True),
        sa.Column('barcode', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('ix_products_barcode', 'products', ['barcode'])

    # ========================================================================
    # Create device_credits table
    # ========================================================================
    op.create_table(
        'device_credits',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('device_id', sa.String(255), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_banned', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ban_reason', sa.String(500), nullable=True),
        sa.Column('suspicious_activity', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('emails_seen', ARRAY(sa.String(255)), nullable=False, server_default='{}'),
        sa.Column('linked_account_id', sa.String(255), nullable=True),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credits_used >= 0', name='ck_device_credits_used_non_negative'),
        sa.UniqueConstraint('device_id', name='uq_device_credits_device_id'),
    )
    op.create_index(
        'idx_device_credits_linked_account', 'device_credits', ['linked_account_id'],
        postgresql_where=sa.text('linked_account_id IS NOT NULL'),
    )

    # ========================================================================
    # Create unlock_grants table
    # ========================================================================
    op.create_table(
        'unlock_grants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('subject_key', sa.String(300), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.String(255), nullable=True),
        sa.Column('account_id', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('grant_type', sa.String(20), nullable=False),
        sa.Column('granted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('session_id', sa.String(255), nullable=True),
        sa.Column('referral_source', sa.String(100), nullable=True),
        sa.Column('source_product_id', sa.Integer(), nullable=True),

        # Constraints
        sa.UniqueConstraint('subject_key', 'product_id', name='uq_unlock_grant_subject_product'),
        sa.CheckConstraint(
            "grant_type IN ('free_credit', 'subscription', 'admin_grant')",
            name='ck_unlock_grant_type',
        ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_unlock_grants_product', ondelete='CASCADE'),
    )
    op.create_index('idx_unlock_grants_product_device', 'unlock_grants', ['product_id', 'device_id'])
    op.create_index(
        'idx_unlock_grants_product_account', 'unlock_grants', ['product_id', 'account_id'],
        postgresql_where=sa.text('account_id IS NOT NULL'),
    )

    # ========================================================================
    # Create demand_records table
    # ========================================================================
    op.create_table(
        'demand_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('product_key', sa.String(64), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=True),
        sa.Column('brand', sa.String(255), nullable=True),
        sa.Column('weighted_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('search_signals', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('possession_signals', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verified_possession_signals', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_voters', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_contributors', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('funding_threshold', sa.Float(), nullable=False, server_default='1000'),
        sa.Column('funding_progress_pct', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='collecting_votes'),
        sa.Column('threshold_reached_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completion_notified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('scans_last_24h', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('scans_last_7d', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('velocity_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('urgency_flag', sa.String(10), nullable=False, server_default='normal'),
        sa.Column('urgency_rank', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.UniqueConstraint('product_key', name='uq_demand_records_product_key'),
        sa.CheckConstraint('weighted_score >= 0', name='ck_demand_weighted_score_non_negative'),
        sa.CheckConstraint('funding_threshold > 0', name='ck_demand_funding_threshold_positive'),
        sa.CheckConstraint('funding_progress_pct BETWEEN 0 AND 100', name='ck_demand_funding_progress_range'),
    )
    op.create_index('idx_demand_records_status', 'demand_records', ['status'])
    op.create_index('idx_demand_records_ranking', 'demand_records', ['urgency_rank', 'velocity_score'])
    op.create_index('idx_demand_records_weighted_score', 'demand_records', ['weighted_score'])

    # ========================================================================
    # Create demand_status_changes table (append-only history)
    # ========================================================================
    op.create_table(
        'demand_status_changes',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('product_key', sa.String(64), nullable=False),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=False),
        sa.Column('changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('notes', sa.Text(), nullable=True),

        sa.ForeignKeyConstraint(
            ['product_key'], ['demand_records.product_key'],
            name='fk_demand_status_changes_record', ondelete='CASCADE',
        ),
    )
    op.create_index('idx_demand_status_changes_key_time', 'demand_status_changes', ['product_key', 'changed_at'])

    # ========================================================================
    # Create demand supporting tables
    # ========================================================================
    op.create_table(
        'demand_voters',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('product_key', sa.String(64), nullable=False),
        sa.Column('fingerprint', sa.String(255), nullable=False),
        sa.Column('voter_number', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('first_voted_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('product_key', 'fingerprint', name='uq_demand_voter'),
    )
    op.create_index('idx_demand_voters_fingerprint', 'demand_voters', ['fingerprint'])

    op.create_table(
        'demand_signal_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('product_key', sa.String(64), nullable=False),
        sa.Column('signal_type', sa.String(20), nullable=False),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )
    op.create_index('idx_demand_signal_events_key_time', 'demand_signal_events', ['product_key', 'recorded_at'])

    op.create_table(
        'demand_contributors',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('product_key', sa.String(64), nullable=False),
        sa.Column('fingerprint', sa.String(255), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=True),
        sa.Column('submission_id', sa.Integer(), nullable=False),
        sa.Column('bonus_weight', sa.Float(), nullable=False, server_default='0'),
        sa.Column('contributed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('product_key', 'fingerprint', name='uq_demand_contributor'),
    )
    op.create_index('idx_demand_contributors_fingerprint', 'demand_contributors', ['fingerprint'])

    op.create_table(
        'demand_subscribers',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('product_key', sa.String(64), nullable=False),
        sa.Column('subscriber_id', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.UniqueConstraint('product_key', 'subscriber_id', name='uq_demand_subscriber'),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('demand_subscribers')
    op.drop_table('demand_contributors')
    op.drop_table('demand_signal_events')
    op.drop_table('demand_voters')
    op.drop_table('demand_status_changes')
    op.drop_table('demand_records')
    op.drop_table('unlock_grants')
    op.drop_table('device_credits')
    op.drop_table('products')
