"""create shipment hierarchy and scan tracking tables

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'shipment_headers',
        sa.Column('transfer_id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('document_number', sa.String(35), nullable=True),
        sa.Column('document_date', sa.Date(), nullable=True),
        sa.Column('source_location_id', sa.String(20), nullable=True),
        sa.Column('destination_location_id', sa.String(20), nullable=True),
        sa.Column('action_type', sa.String(10), nullable=True),
        sa.Column('ship_to_id', sa.String(20), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('format_version', sa.String(10), nullable=True),
        sa.Column('item_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unit_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notification_status', sa.Enum('OK', 'NOK', name='notificationstatus'), nullable=True),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(35), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'hierarchy_records',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            'transfer_id',
            sa.BigInteger(),
            sa.ForeignKey('shipment_headers.transfer_id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('container_label', sa.String(40), nullable=True),
        sa.Column('parent_container_label', sa.String(40), nullable=True),
        sa.Column('container_type', sa.String(10), nullable=True),
        sa.Column('container_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_code', sa.String(14), nullable=True),
        sa.Column('serial_number', sa.String(40), nullable=True),
        sa.Column('lot_number', sa.String(40), nullable=True),
        sa.Column('expiration_date', sa.Date(), nullable=True),
        sa.Column('production_date', sa.Date(), nullable=True),
        sa.Column('purchase_order_number', sa.String(40), nullable=True),
        sa.Column('line_status', sa.String(10), nullable=True),
        sa.Column('notified_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_hierarchy_transfer_label', 'hierarchy_records', ['transfer_id', 'container_label'])
    op.create_index('ix_hierarchy_transfer_parent', 'hierarchy_records', ['transfer_id', 'parent_container_label'])
    op.create_index('ix_hierarchy_label', 'hierarchy_records', ['container_label'])

    op.create_table(
        'scan_scopes',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('document_id', sa.String(60), nullable=False),
        sa.Column('line_item_id', sa.String(40), nullable=False),
        sa.Column('product_code', sa.String(14), nullable=True),
        sa.Column('expected_quantity', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('document_id', 'line_item_id', name='uq_scan_scope'),
    )

    op.create_table(
        'scan_records',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('document_id', sa.String(60), nullable=False),
        sa.Column('line_item_id', sa.String(40), nullable=False),
        sa.Column('serial_number', sa.String(40), nullable=False),
        sa.Column('product_code', sa.String(14), nullable=False),
        sa.Column('lot_number', sa.String(40), nullable=True),
        sa.Column('expiry_raw', sa.String(6), nullable=True),
        sa.Column('expiration_date', sa.Date(), nullable=True),
        sa.Column('container_label', sa.String(40), nullable=True),
        sa.Column('container_type', sa.String(10), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('recorded_by', sa.String(35), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('document_id', 'line_item_id', 'serial_number', name='uq_scan_serial'),
    )
    op.create_index('ix_scan_records_scope', 'scan_records', ['document_id', 'line_item_id'])
    op.create_index('ix_scan_records_container', 'scan_records', ['document_id', 'container_label'])


def downgrade() -> None:
    op.drop_index('ix_scan_records_container', table_name='scan_records')
    op.drop_index('ix_scan_records_scope', table_name='scan_records')
    op.drop_table('scan_records')
    op.drop_table('scan_scopes')
    op.drop_index('ix_hierarchy_label', table_name='hierarchy_records')
    op.drop_index('ix_hierarchy_transfer_parent', table_name='hierarchy_records')
    op.drop_index('ix_hierarchy_transfer_label', table_name='hierarchy_records')
    op.drop_table('hierarchy_records')
    op.drop_table('shipment_headers')
    sa.Enum(name='notificationstatus').drop(op.get_bind(), checkfirst=True)
