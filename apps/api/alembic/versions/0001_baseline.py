"""Baseline migration - congregations, users, territories, maps, addresses,
options and assignments.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), nullable=False)]
    if with_updated:
        columns.append(sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    """Create all tables."""

    op.create_table(
        'congregations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('max_tries', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('expiry_hours', sa.Integer(), nullable=True),
        sa.Column('timezone', sa.String(50), nullable=False, server_default='UTC'),
        *_timestamps(),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('congregation_id', sa.Uuid(), sa.ForeignKey('congregations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('role', sa.String(30), nullable=False, server_default='read_only'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('token_version', sa.Integer(), nullable=False, server_default='1'),
        *_timestamps(with_updated=False),
    )

    op.create_table(
        'territories',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('congregation_id', sa.Uuid(), sa.ForeignKey('congregations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('aggregates', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('congregation_id', 'code', name='uq_territory_code'),
    )

    op.create_table(
        'maps',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('congregation_id', sa.Uuid(), sa.ForeignKey('congregations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('territory_id', sa.Uuid(), sa.ForeignKey('territories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code', sa.String(50), nullable=True),
        sa.Column('description', sa.String(255), nullable=True),
        sa.Column('type', sa.String(10), nullable=False, server_default='single'),
        sa.Column('floors', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('coordinates', sa.Text(), nullable=True),
        sa.Column('aggregates', sa.JSON(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
    )
    op.create_index('idx_maps_territory', 'maps', ['territory_id'])
    op.create_index('idx_maps_updated', 'maps', ['updated_at'])

    op.create_table(
        'options',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('congregation_id', sa.Uuid(), sa.ForeignKey('congregations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('description', sa.String(200), nullable=True),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_countable', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('congregation_id', 'code', name='uq_option_code'),
    )

    op.create_table(
        'addresses',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('congregation_id', sa.Uuid(), sa.ForeignKey('congregations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('territory_id', sa.Uuid(), sa.ForeignKey('territories.id', ondelete='CASCADE'), nullable=False),
        sa.Column('map_id', sa.Uuid(), sa.ForeignKey('maps.id', ondelete='CASCADE'), nullable=False),
        sa.Column('floor', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='not_done'),
        sa.Column('not_home_tries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('dnc_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_notes_updated', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_notes_updated_by', sa.String(255), nullable=True),
        sa.Column('updated_by', sa.String(255), nullable=True),
        *_timestamps(),
    )
    op.create_index('idx_addresses_map_floor', 'addresses', ['map_id', 'floor'])
    op.create_index('idx_addresses_map_code', 'addresses', ['map_id', 'code'])
    op.create_index('idx_addresses_territory_status', 'addresses', ['territory_id', 'status'])

    op.create_table(
        'address_options',
        sa.Column('address_id', sa.Uuid(), sa.ForeignKey('addresses.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('option_id', sa.Uuid(), sa.ForeignKey('options.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table(
        'assignments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('map_id', sa.Uuid(), sa.ForeignKey('maps.id', ondelete='CASCADE'), nullable=False),
        sa.Column('congregation_id', sa.Uuid(), sa.ForeignKey('congregations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('type', sa.String(20), nullable=False, server_default='normal'),
        sa.Column('publisher', sa.String(255), nullable=True),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(with_updated=False),
    )
    op.create_index('idx_assignments_map_active', 'assignments', ['map_id', 'type', 'expiry_date'])
    op.create_index('idx_assignments_expiry', 'assignments', ['expiry_date'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('assignments')
    op.drop_table('address_options')
    op.drop_table('addresses')
    op.drop_table('options')
    op.drop_table('maps')
    op.drop_table('territories')
    op.drop_table('users')
    op.drop_table('congregations')
