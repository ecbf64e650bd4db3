"""initial tracker schema

Revision ID: a7c1e2d3f4b5
Revises:
Create Date: 2026-10-19 09:12:41.508113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a7c1e2d3f4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- Global settings ---
    op.create_table('settings',
        sa.Column('setting_key', sa.String(length=50), nullable=False),
        sa.Column('setting_value', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('setting_key'),
    )

    # --- Partners ---
    op.create_table('partners',
        sa.Column('id', sa.String(length=100), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('target_domain', sa.String(length=255), nullable=False),
        sa.Column('clickid_keys', sa.Text(), nullable=True),
        sa.Column('sum_keys', sa.Text(), nullable=True),
        sa.Column('sum_mapping', sa.Text(), nullable=True),
        sa.Column('logging_enabled', sa.Boolean(), server_default=sa.text('true'), nullable=True),
        sa.Column('telegram_enabled', sa.Boolean(), server_default=sa.text('true'), nullable=True),
        sa.Column('telegram_whitelist_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=True),
        sa.Column('telegram_whitelist_keywords', sa.Text(), nullable=True),
        sa.Column('partner_telegram_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=True),
        sa.Column('partner_telegram_bot_token', sa.String(length=255), nullable=True),
        sa.Column('partner_telegram_channel_id', sa.String(length=255), nullable=True),
        sa.Column('ip_whitelist_enabled', sa.Boolean(), server_default=sa.text('false'), nullable=True),
        sa.Column('allowed_ips', sa.Text(), nullable=True),
        sa.Column('google_spreadsheet_id', sa.String(length=255), nullable=True),
        sa.Column('google_sheet_name', sa.String(length=255), nullable=True),
        sa.Column('google_service_account_json', sa.Text(), nullable=True),
        sa.Column('forward_timeout', sa.Float(), nullable=True),
        sa.Column('forward_connect_timeout', sa.Float(), nullable=True),
        sa.Column('forward_ssl_verify', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )

    # --- Summary stats ---
    op.create_table('summary_stats',
        sa.Column('partner_id', sa.String(length=100), nullable=False),
        sa.Column('total_requests', sa.Integer(), server_default='0', nullable=False),
        sa.Column('successful_redirects', sa.Integer(), server_default='0', nullable=False),
        sa.Column('errors', sa.Integer(), server_default='0', nullable=False),
        sa.ForeignKeyConstraint(['partner_id'], ['partners.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('partner_id'),
    )

    # --- Detailed stats ---
    op.create_table('detailed_stats',
        sa.Column('stat_id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('partner_id', sa.String(length=100), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('status', sa.SmallInteger(), nullable=True),
        sa.Column('click_id', sa.String(length=255), nullable=True),
        sa.Column('response', sa.Text(), nullable=True),
        sa.Column('sum', sa.String(length=50), nullable=True),
        sa.Column('sum_mapping', sa.String(length=50), nullable=True),
        sa.Column('extra_params', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(['partner_id'], ['partners.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('stat_id'),
    )
    op.create_index('ix_detailed_stats_partner_ts', 'detailed_stats', ['partner_id', 'timestamp'], unique=False)

    op.bulk_insert(
        sa.table('settings', sa.column('setting_key', sa.String), sa.column('setting_value', sa.Text)),
        [
            {'setting_key': 'telegram_globally_enabled', 'setting_value': 'true'},
            {'setting_key': 'forward_timeout', 'setting_value': '10'},
            {'setting_key': 'forward_connect_timeout', 'setting_value': '5'},
            {'setting_key': 'forward_ssl_verify', 'setting_value': 'true'},
        ],
    )


def downgrade() -> None:
    op.drop_index('ix_detailed_stats_partner_ts', table_name='detailed_stats')
    op.drop_table('detailed_stats')
    op.drop_table('summary_stats')
    op.drop_table('partners')
    op.drop_table('settings')
