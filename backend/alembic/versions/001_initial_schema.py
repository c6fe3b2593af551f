"""Initial schema: shops, connections, mirrors, media processes, webhook events, gates.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now())]
    if with_updated:
        columns.append(
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now())
        )
    return columns


def upgrade() -> None:
    # ### Shops table ###
    op.create_table(
        'shops',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('domain', sa.String(255), unique=True, index=True, nullable=False),
        sa.Column('access_token_encrypted', sa.Text(), nullable=False),
        sa.Column('api_version', sa.String(20), nullable=True),
        sa.Column('is_source', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('location_legacy_id', sa.BigInteger(), nullable=True),
        *_timestamps(),
    )

    # ### Shop connections (source -> target) ###
    op.create_table(
        'shop_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source_shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('target_shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id', ondelete='CASCADE'), nullable=False, index=True),
        *_timestamps(with_updated=False),
        sa.UniqueConstraint('source_shop_id', 'target_shop_id', name='uq_shop_connections_pair'),
    )

    # ### Product mirrors ###
    op.create_table(
        'product_mirrors',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source_shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('source_product_id', sa.BigInteger(), nullable=False, index=True),
        sa.Column('source_product_gid', sa.String(255), nullable=True),
        sa.Column('target_shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('target_product_id', sa.BigInteger(), nullable=True),
        sa.Column('target_product_gid', sa.String(255), nullable=True),
        sa.Column('last_snapshot', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('source_shop_id', 'source_product_id', 'target_shop_id', name='uq_product_mirrors_source_target'),
    )

    # ### Variant mirrors ###
    op.create_table(
        'variant_mirrors',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('product_mirror_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('product_mirrors.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('source_variant_id', sa.BigInteger(), nullable=True),
        sa.Column('source_options_key', sa.String(512), nullable=False, server_default='', index=True),
        sa.Column('target_variant_id', sa.BigInteger(), nullable=True),
        sa.Column('target_variant_gid', sa.String(255), nullable=True),
        sa.Column('inventory_item_gid', sa.String(255), nullable=True),
        sa.Column('variant_fingerprint', sa.String(64), nullable=True),
        sa.Column('inventory_fingerprint', sa.String(64), nullable=True),
        sa.Column('last_snapshot', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('product_mirror_id', 'source_variant_id', name='uq_variant_mirrors_product_source_variant'),
    )

    # ### Product media processes ###
    op.create_table(
        'product_media_processes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), nullable=True, index=True),
        sa.Column('shop_domain', sa.String(255), nullable=False, index=True),
        sa.Column('product_id', sa.BigInteger(), nullable=False),
        sa.Column('product_gid', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('images_count', sa.Integer(), server_default='0'),
        sa.Column('processed_count', sa.Integer(), server_default='0'),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('shop_domain', 'product_id', name='uq_media_processes_shop_product'),
    )

    # ### Webhook events ###
    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('webhook_id', sa.String(255), unique=True, nullable=True),
        sa.Column('topic', sa.String(100), nullable=False, index=True),
        sa.Column('shop_domain', sa.String(255), nullable=True, index=True),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='received'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(with_updated=False),
    )

    # ### Coordination gates ###
    op.create_table(
        'coordination_gates',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('source_shop_id', postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column('source_product_id', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='waiting'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_eligible_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_pending', postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('source_shop_id', 'source_product_id', name='uq_coordination_gates_product'),
    )


def downgrade() -> None:
    op.drop_table('coordination_gates')
    op.drop_table('webhook_events')
    op.drop_table('product_media_processes')
    op.drop_table('variant_mirrors')
    op.drop_table('product_mirrors')
    op.drop_table('shop_connections')
    op.drop_table('shops')
