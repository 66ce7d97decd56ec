"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


origin_domain = sa.Enum('seller-console', 'public-site', 'unknown', name='origin_domain')
message_role = sa.Enum('user', 'assistant', name='message_role')
ledger_kind = sa.Enum('topup', 'usage', name='ledger_kind')


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('password_hash', sa.String(255), nullable=True),
        sa.Column('telegram_id', sa.String(64), nullable=True),
        sa.Column('first_name', sa.String(255), nullable=True),
        sa.Column('last_name', sa.String(255), nullable=True),
        sa.Column('username', sa.String(255), nullable=True),
        sa.Column('balance', sa.Numeric(18, 8), nullable=False, server_default='0'),
        sa.Column('is_blocked', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('api_key_hash', sa.String(255), nullable=True),
        sa.Column('api_key_prefix', sa.String(16), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('email IS NOT NULL OR telegram_id IS NOT NULL', name='ck_users_has_identity'),
        sa.UniqueConstraint('email', name='uq_users_email'),
        sa.UniqueConstraint('telegram_id', name='uq_users_telegram_id'),
        sa.UniqueConstraint('api_key_prefix', name='uq_users_api_key_prefix'),
    )

    op.create_index('idx_users_created_at', 'users', ['created_at'])

    # ========================================================================
    # Create chat_sessions table
    # ========================================================================
    op.create_table(
        'chat_sessions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('domain', origin_domain, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # At most one active session per (user, domain)
    op.create_index(
        'uq_chat_sessions_one_active',
        'chat_sessions',
        ['user_id', 'domain'],
        unique=True,
        postgresql_where=sa.text('is_active'),
    )
    op.create_index('idx_chat_sessions_user_updated', 'chat_sessions', ['user_id', 'updated_at'])

    # ========================================================================
    # Create messages table
    # ========================================================================
    op.create_table(
        'messages',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('sequence', sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column('session_id', UUID(as_uuid=True), sa.ForeignKey('chat_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role', message_role, nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('page_url', sa.Text(), nullable=True),
        sa.Column('page_snapshot', JSONB(), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=True),
        sa.Column('output_tokens', sa.Integer(), nullable=True),
        sa.Column('cost', sa.Numeric(18, 8), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('input_tokens IS NULL OR input_tokens >= 0', name='ck_input_tokens'),
        sa.CheckConstraint('output_tokens IS NULL OR output_tokens >= 0', name='ck_output_tokens'),
    )

    op.create_index('idx_messages_session_sequence', 'messages', ['session_id', 'sequence'])

    # ========================================================================
    # Create ledger_entries table
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('kind', ledger_kind, nullable=False),
        sa.Column('amount', sa.Numeric(18, 8), nullable=False),
        sa.Column('balance_after', sa.Numeric(18, 8), nullable=False),
        sa.Column('description', sa.String(500), nullable=False, server_default=''),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        sa.Column('message_id', UUID(as_uuid=True), sa.ForeignKey('messages.id', ondelete='SET NULL'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount != 0', name='ck_ledger_amount_non_zero'),
    )

    op.create_index('idx_ledger_user_created', 'ledger_entries', ['user_id', 'created_at'])
    op.create_index(
        'idx_ledger_user_idempotency',
        'ledger_entries',
        ['user_id', 'idempotency_key'],
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_index('idx_ledger_user_idempotency', table_name='ledger_entries')
    op.drop_index('idx_ledger_user_created', table_name='ledger_entries')
    op.drop_table('ledger_entries')

    op.drop_index('idx_messages_session_sequence', table_name='messages')
    op.drop_table('messages')

    op.drop_index('idx_chat_sessions_user_updated', table_name='chat_sessions')
    op.drop_index('uq_chat_sessions_one_active', table_name='chat_sessions')
    op.drop_table('chat_sessions')

    op.drop_index('idx_users_created_at', table_name='users')
    op.drop_table('users')

    ledger_kind.drop(op.get_bind(), checkfirst=True)
    message_role.drop(op.get_bind(), checkfirst=True)
    origin_domain.drop(op.get_bind(), checkfirst=True)
