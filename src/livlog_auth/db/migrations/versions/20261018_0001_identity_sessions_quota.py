"""identity, sessions and quota tables

Learn: the partial unique indexes are the point of this revision.
- uq_users_email_active: one live account per email, deleted ones don't count
- uq_verification_codes_active_email: one unconsumed code per email
Both carry postgresql_where and sqlite_where so the same revision runs
against production and the test database.

Revision ID: 0001
Revises:
Create Date: 2026-10-18 10:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True)
        for name in names
    ]


def upgrade() -> None:
    # ─── users ───────────────────────────────────────────
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('email_verified', sa.Boolean(), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=True),
        sa.Column('ai_usage_policy', sa.String(length=20), server_default='basic', nullable=False),
        *_timestamps('created_at', 'updated_at'),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'uq_users_email_active', 'users', ['email'],
        unique=True,
        postgresql_where=sa.text('email IS NOT NULL AND deleted_at IS NULL'),
        sqlite_where=sa.text('email IS NOT NULL AND deleted_at IS NULL'),
    )
    op.create_index('idx_users_ai_usage_policy', 'users', ['ai_usage_policy'])

    # ─── user_auth_providers ─────────────────────────────
    op.create_table(
        'user_auth_providers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('provider_user_id', sa.String(length=255), nullable=False),
        *_timestamps('created_at'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_user_id', name='uq_auth_provider'),
    )
    op.create_index('idx_auth_providers_user_id', 'user_auth_providers', ['user_id'])

    # ─── user_sessions ───────────────────────────────────
    op.create_table(
        'user_sessions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('family_id', sa.Uuid(), nullable=False),
        sa.Column('refresh_token_hash', sa.String(length=64), nullable=False),
        sa.Column('device_info', sa.Text(), nullable=True),
        sa.Column('replaced_by_id', sa.Uuid(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps('created_at'),
        sa.Column('revoked_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('refresh_token_hash'),
    )
    op.create_index('idx_user_sessions_user_id', 'user_sessions', ['user_id'])
    op.create_index('idx_user_sessions_family', 'user_sessions', ['family_id'])
    op.create_index('idx_user_sessions_expires', 'user_sessions', ['expires_at'])

    # ─── verification_codes ──────────────────────────────
    op.create_table(
        'verification_codes',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('code_hash', sa.String(length=60), nullable=False),
        *_timestamps('created_at'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'uq_verification_codes_active_email', 'verification_codes', ['email'],
        unique=True,
        postgresql_where=sa.text('consumed_at IS NULL'),
        sqlite_where=sa.text('consumed_at IS NULL'),
    )
    op.create_index(
        'idx_verification_codes_email_created', 'verification_codes', ['email', 'created_at']
    )

    # ─── ai_search_usage ─────────────────────────────────
    op.create_table(
        'ai_search_usage',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('search_count', sa.Integer(), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        *_timestamps('updated_at'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
    )
    op.create_index('idx_ai_search_usage_period_end', 'ai_search_usage', ['period_end'])


def downgrade() -> None:
    op.drop_table('ai_search_usage')
    op.drop_table('verification_codes')
    op.drop_table('user_sessions')
    op.drop_table('user_auth_providers')
    op.drop_table('users')
