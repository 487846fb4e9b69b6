"""Initial schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19

Canonical listing, participant projections, inspection records,
projection outbox and listing timeline.
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables."""

    # =========================================================================
    # Table: listing
    # =========================================================================
    op.create_table(
        'listing',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(14, 2), nullable=True),
        sa.Column('transaction_type', sa.String(20), nullable=False, server_default='sale'),
        sa.Column('address', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('province', sa.String(100), nullable=True),
        sa.Column('photos', sa.JSON(), nullable=True),
        sa.Column('is_under_purchase', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('confirmed_buyer_id', sa.String(64), nullable=True),
        sa.Column('purchase_id', sa.String(32), nullable=True),
        sa.Column('buyer_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('buyer_confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('seller_documents_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('acknowledged_documents', sa.JSON(), nullable=True),
        sa.Column('handover_date', sa.Date(), nullable=True),
        sa.Column('handover_note', sa.Text(), nullable=True),
        sa.Column('handover_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_inspection_update_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_inspection_update_by', sa.String(64), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_listing_owner_id', 'listing', ['owner_id'])
    op.create_index('ix_listing_confirmed_buyer_id', 'listing', ['confirmed_buyer_id'])
    op.create_index('ix_listing_purchase_id', 'listing', ['purchase_id'])

    # =========================================================================
    # Table: seller_listing_projection
    # =========================================================================
    op.create_table(
        'seller_listing_projection',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('seller_id', sa.String(64), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(14, 2), nullable=True),
        sa.Column('is_under_purchase', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('confirmed_buyer_id', sa.String(64), nullable=True),
        sa.Column('buyer_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('seller_documents_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('handover_date', sa.Date(), nullable=True),
        sa.Column('last_operation_id', sa.String(64), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
        sa.UniqueConstraint('seller_id', 'listing_id', name='uq_seller_projection_listing'),
    )
    op.create_index('ix_seller_listing_projection_seller_id', 'seller_listing_projection', ['seller_id'])

    # =========================================================================
    # Table: buyer_property_projection
    # =========================================================================
    op.create_table(
        'buyer_property_projection',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('buyer_id', sa.String(64), nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('seller_id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('price', sa.Numeric(14, 2), nullable=True),
        sa.Column('transaction_type', sa.String(20), nullable=False, server_default='sale'),
        sa.Column('address', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('province', sa.String(100), nullable=True),
        sa.Column('thumbnail_url', sa.String(500), nullable=True),
        sa.Column('seller_name', sa.String(255), nullable=True),
        sa.Column('seller_phone', sa.String(50), nullable=True),
        sa.Column('seller_email', sa.String(255), nullable=True),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_under_purchase', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('buyer_confirmed', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('seller_documents_confirmed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('handover_date', sa.Date(), nullable=True),
        sa.Column('handover_note', sa.Text(), nullable=True),
        sa.Column('handover_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_inspection_update_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_inspection_update_by', sa.String(64), nullable=True),
        sa.Column('last_operation_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
        sa.UniqueConstraint('buyer_id', 'listing_id', name='uq_buyer_projection_listing'),
    )
    op.create_index('ix_buyer_property_projection_buyer_id', 'buyer_property_projection', ['buyer_id'])

    # =========================================================================
    # Table: inspection_checklist_item
    # =========================================================================
    op.create_table(
        'inspection_checklist_item',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.String(32), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(10), nullable=False),
        sa.Column('created_by_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('last_updated_by', sa.String(10), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('last_updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
    )
    op.create_index('ix_inspection_checklist_item_listing_id', 'inspection_checklist_item', ['listing_id'])
    op.create_index('ix_inspection_checklist_item_purchase_id', 'inspection_checklist_item', ['purchase_id'])

    # =========================================================================
    # Table: defect_issue
    # =========================================================================
    op.create_table(
        'defect_issue',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.String(32), nullable=True),
        sa.Column('checklist_item_id', sa.Integer(), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('location', sa.String(255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('owner', sa.String(255), nullable=True),
        sa.Column('reported_by', sa.String(10), nullable=False),
        sa.Column('reported_by_id', sa.String(64), nullable=False),
        sa.Column('expected_completion', sa.Date(), nullable=True),
        sa.Column('reported_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
        sa.ForeignKeyConstraint(['checklist_item_id'], ['inspection_checklist_item.id']),
    )
    op.create_index('ix_defect_issue_listing_id', 'defect_issue', ['listing_id'])
    op.create_index('ix_defect_issue_purchase_id', 'defect_issue', ['purchase_id'])
    op.create_index('ix_defect_listing_status', 'defect_issue', ['listing_id', 'status'])

    # =========================================================================
    # Table: defect_photo
    # =========================================================================
    op.create_table(
        'defect_photo',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('issue_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('url', sa.String(1000), nullable=False),
        sa.Column('storage_path', sa.String(500), nullable=False),
        sa.Column('uploaded_by', sa.String(64), nullable=False),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['issue_id'], ['defect_issue.id']),
    )
    op.create_index('ix_defect_photo_issue_id', 'defect_photo', ['issue_id'])

    # =========================================================================
    # Table: inspection_notification
    # =========================================================================
    op.create_table(
        'inspection_notification',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('purchase_id', sa.String(32), nullable=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('category', sa.String(20), nullable=True, server_default='general'),
        sa.Column('audience', sa.String(10), nullable=True, server_default='all'),
        sa.Column('triggered_by', sa.String(10), nullable=True),
        sa.Column('triggered_by_id', sa.String(64), nullable=True),
        sa.Column('related_id', sa.String(64), nullable=True),
        sa.Column('read_by_buyer', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_by_seller', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
    )
    op.create_index('ix_inspection_notification_listing_id', 'inspection_notification', ['listing_id'])

    # =========================================================================
    # Table: projection_outbox
    # =========================================================================
    op.create_table(
        'projection_outbox',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('operation_id', sa.String(64), nullable=False),
        sa.Column('target_kind', sa.String(10), nullable=False),
        sa.Column('participant_id', sa.String(64), nullable=False),
        sa.Column('action', sa.String(10), nullable=False),
        sa.Column('idempotency_key', sa.String(64), nullable=False),
        sa.Column('status', sa.String(10), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_projection_outbox_listing_id', 'projection_outbox', ['listing_id'])
    op.create_index('ix_outbox_status_created', 'projection_outbox', ['status', 'created_at'])

    # =========================================================================
    # Table: listing_event
    # =========================================================================
    op.create_table(
        'listing_event',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('listing_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('actor_id', sa.String(64), nullable=True),
        sa.Column('operation_id', sa.String(64), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.current_timestamp()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['listing_id'], ['listing.id']),
    )
    op.create_index('ix_listing_event_listing_id', 'listing_event', ['listing_id'])
    op.create_index('ix_listing_event_event_type', 'listing_event', ['event_type'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('listing_event')
    op.drop_table('projection_outbox')
    op.drop_table('inspection_notification')
    op.drop_table('defect_photo')
    op.drop_table('defect_issue')
    op.drop_table('inspection_checklist_item')
    op.drop_table('buyer_property_projection')
    op.drop_table('seller_listing_projection')
    op.drop_table('listing')
