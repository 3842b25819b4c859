"""Initial OR series schema

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2025-10-01

This migration adds:
1. users (attribution for issuance, voids, and offset changes)
2. number_series (series registry with validity windows and total counter)
3. series_user_counters (per-cashier offset bands)
4. issued_numbers (audit trail and generated/used/voided lifecycle)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. USERS TABLE
    # ==========================================================================
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('username', name='uq_users_username'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_users_username'), ['username'], unique=False)

    # ==========================================================================
    # 2. NUMBER SERIES TABLE
    # ==========================================================================
    op.create_table('number_series',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('series_name', sa.String(length=255), nullable=False),
        sa.Column('prefix', sa.String(length=16), nullable=True),
        sa.Column('start_number', sa.BigInteger(), nullable=False, server_default='1'),
        sa.Column('end_number', sa.BigInteger(), nullable=True),
        sa.Column('current_number', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('format', sa.String(length=255), nullable=False, server_default='{PREFIX}{NUMBER:10}'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('effective_from', sa.Date(), nullable=False),
        sa.Column('effective_to', sa.Date(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('number_series', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_number_series_is_active'), ['is_active'], unique=False)
        batch_op.create_index(batch_op.f('ix_number_series_effective_from'), ['effective_from'], unique=False)
        batch_op.create_index('ix_number_series_effective', ['effective_from', 'effective_to'], unique=False)

    # ==========================================================================
    # 3. SERIES USER COUNTERS TABLE
    # ==========================================================================
    op.create_table('series_user_counters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('series_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('start_offset', sa.BigInteger(), nullable=False),
        sa.Column('current_number', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_generated_number', sa.BigInteger(), nullable=True),
        sa.Column('is_auto_assigned', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('offset_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('generations_at_current_offset', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['series_id'], ['number_series.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('series_id', 'user_id', name='uq_series_user_counters_series_user'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('series_user_counters', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_series_user_counters_series_id'), ['series_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_series_user_counters_user_id'), ['user_id'], unique=False)
        batch_op.create_index('ix_series_user_counters_series_offset', ['series_id', 'start_offset'], unique=False)

    # ==========================================================================
    # 4. ISSUED NUMBERS TABLE
    # ==========================================================================
    op.create_table('issued_numbers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('series_id', sa.Integer(), nullable=False),
        sa.Column('or_number', sa.String(length=64), nullable=False),
        sa.Column('actual_number', sa.BigInteger(), nullable=False),
        sa.Column('generated_by_user_id', sa.Integer(), nullable=False),
        sa.Column('generated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('generation_method', sa.String(length=16), nullable=False, server_default='auto'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='generated'),
        sa.Column('transaction_id', sa.Integer(), nullable=True),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voided_by_user_id', sa.Integer(), nullable=True),
        sa.Column('void_reason', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['series_id'], ['number_series.id'], ),
        sa.ForeignKeyConstraint(['generated_by_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['voided_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('series_id', 'actual_number', name='uq_issued_numbers_series_actual'),
        sa.UniqueConstraint('or_number', name='uq_issued_numbers_or_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('issued_numbers', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_issued_numbers_series_id'), ['series_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_issued_numbers_generated_by_user_id'), ['generated_by_user_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_issued_numbers_generated_at'), ['generated_at'], unique=False)
        batch_op.create_index(batch_op.f('ix_issued_numbers_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_issued_numbers_transaction_id'), ['transaction_id'], unique=False)
        batch_op.create_index('ix_issued_numbers_series_status', ['series_id', 'status'], unique=False)


def downgrade():
    with op.batch_alter_table('issued_numbers', schema=None) as batch_op:
        batch_op.drop_index('ix_issued_numbers_series_status')
        batch_op.drop_index(batch_op.f('ix_issued_numbers_transaction_id'))
        batch_op.drop_index(batch_op.f('ix_issued_numbers_status'))
        batch_op.drop_index(batch_op.f('ix_issued_numbers_generated_at'))
        batch_op.drop_index(batch_op.f('ix_issued_numbers_generated_by_user_id'))
        batch_op.drop_index(batch_op.f('ix_issued_numbers_series_id'))
    op.drop_table('issued_numbers')

    with op.batch_alter_table('series_user_counters', schema=None) as batch_op:
        batch_op.drop_index('ix_series_user_counters_series_offset')
        batch_op.drop_index(batch_op.f('ix_series_user_counters_user_id'))
        batch_op.drop_index(batch_op.f('ix_series_user_counters_series_id'))
    op.drop_table('series_user_counters')

    with op.batch_alter_table('number_series', schema=None) as batch_op:
        batch_op.drop_index('ix_number_series_effective')
        batch_op.drop_index(batch_op.f('ix_number_series_effective_from'))
        batch_op.drop_index(batch_op.f('ix_number_series_is_active'))
    op.drop_table('number_series')

    with op.batch_alter_table('users', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_users_username'))
    op.drop_table('users')
