"""Create conversion sync tables

Revision ID: 3f9c2a7d1b45
Revises:
Create Date: 2026-10-18 10:12:41.508213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9c2a7d1b45'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    # Owned by the dashboard; created here only if this service runs standalone
    op.create_table(
        'brands',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        if_not_exists=True
    )

    op.create_table(
        'sync_account_configs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('brand_id', sa.Uuid(), sa.ForeignKey('brands.id', ondelete='CASCADE'), nullable=False),
        sa.Column('customer_id', sa.String(50), nullable=False),
        sa.Column('conversion_action_id', sa.String(50), nullable=False),
        sa.Column('access_token', sa.Text()),
        sa.Column('refresh_token', sa.Text()),
        sa.Column('token_expires_at', sa.DateTime(timezone=True)),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('batch_size', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('sync_interval_minutes', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('last_sync_at', sa.DateTime(timezone=True)),
        sa.Column('last_sync_status', sa.String(20)),
        sa.Column('last_sync_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_sync_account_configs_brand_id', 'sync_account_configs', ['brand_id'])

    op.create_table(
        'conversion_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('event_name', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255)),
        sa.Column('user_email_hash', sa.String(64)),
        sa.Column('user_phone_hash', sa.String(64)),
        sa.Column('user_first_name_hash', sa.String(64)),
        sa.Column('user_last_name_hash', sa.String(64)),
        sa.Column('user_ip', sa.String(64)),
        sa.Column('user_agent', sa.Text()),
        sa.Column('event_value', sa.Numeric(18, 4)),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('transaction_id', sa.String(255)),
        sa.Column('custom_params', sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column('source', sa.String(100)),
        sa.Column('campaign_id', sa.Uuid()),
        sa.Column('brand_id', sa.Uuid(), sa.ForeignKey('brands.id', ondelete='CASCADE')),
        sa.Column('sync_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('sync_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('synced_at', sa.DateTime(timezone=True)),
        sa.Column('sync_error', sa.Text()),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True)),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('brand_id', 'event_id', name='uq_conversion_events_brand_event_id'),
    )
    op.create_index('ix_conversion_events_event_name', 'conversion_events', ['event_name'])
    op.create_index('ix_conversion_events_campaign_id', 'conversion_events', ['campaign_id'])
    # Claim query: brand + status, oldest first
    op.create_index(
        'idx_conversion_brand_status_time',
        'conversion_events',
        ['brand_id', 'sync_status', 'event_time']
    )


def downgrade():
    op.drop_index('idx_conversion_brand_status_time', 'conversion_events')
    op.drop_index('ix_conversion_events_campaign_id', 'conversion_events')
    op.drop_index('ix_conversion_events_event_name', 'conversion_events')
    op.drop_table('conversion_events')
    op.drop_index('ix_sync_account_configs_brand_id', 'sync_account_configs')
    op.drop_table('sync_account_configs')
