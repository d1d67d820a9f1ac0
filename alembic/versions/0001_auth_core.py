"""Auth core tables: user_two_factor and security_events.

Revision ID: 0001_auth_core
Revises:
Create Date: 2024-02-12

The ``users`` table is owned by the iLegal application schema and must
exist before this revision runs.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = '0001_auth_core'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), **kwargs)


def upgrade() -> None:
    op.create_table(
        'user_two_factor',
        sa.Column('id', UUID(as_uuid=False), primary_key=True),
        sa.Column(
            'user_id',
            UUID(as_uuid=False),
            sa.ForeignKey('users.id', ondelete='CASCADE'),
            nullable=False,
            unique=True,
        ),
        # Active and in-enrollment factors; pending_* is promoted on verify
        sa.Column('secret', sa.String(256)),
        sa.Column('pending_secret', sa.String(256)),
        sa.Column('backup_codes', JSONB),
        sa.Column('pending_backup_codes', JSONB),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        # Bumped on every backup code change; guards compare-and-set updates
        sa.Column('version', sa.Integer(), nullable=False, server_default=sa.text('0')),
        _timestamp('verified_at'),
        _timestamp('last_used_at'),
        _timestamp('last_backup_used_at'),
        _timestamp('created_at', nullable=False, server_default=sa.func.now()),
    )
    op.create_index(op.f('ix_user_two_factor_user_id'), 'user_two_factor', ['user_id'])

    op.create_table(
        'security_events',
        sa.Column('id', UUID(as_uuid=False), primary_key=True),
        sa.Column('kind', sa.String(40), nullable=False),
        sa.Column('subject_id', sa.String(64), nullable=False),
        sa.Column('metadata', JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('ip_address', sa.String(45)),
        sa.Column('user_agent', sa.Text()),
        sa.Column('trace_id', sa.String(64)),
        _timestamp('occurred_at', nullable=False, server_default=sa.func.now()),
    )
    for column in ('kind', 'subject_id', 'occurred_at'):
        op.create_index(op.f(f'ix_security_events_{column}'), 'security_events', [column])


def downgrade() -> None:
    for column in ('occurred_at', 'subject_id', 'kind'):
        op.drop_index(op.f(f'ix_security_events_{column}'), table_name='security_events')
    op.drop_table('security_events')

    op.drop_index(op.f('ix_user_two_factor_user_id'), table_name='user_two_factor')
    op.drop_table('user_two_factor')
