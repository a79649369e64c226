"""create offer, trade, item lock and commission tables

Revision ID: 1c2d3e4f5a6b
Revises:
Create Date: 2026-10-19 00:01:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '1c2d3e4f5a6b'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_OFFER_CLAUSE = "status IN ('pending', 'countered')"


def upgrade() -> None:
    # Create offers table
    op.create_table(
        'offers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('product_id', sa.String(36), nullable=False),
        sa.Column('buyer_id', sa.String(36), nullable=False),
        sa.Column('seller_id', sa.String(36), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('list_price', sa.Numeric(20, 8), nullable=False),
        sa.Column('min_amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('proposer', sa.String(10), nullable=False, server_default='buyer'),
        sa.Column('round_count', sa.Integer, nullable=False, server_default='1'),
        sa.Column('message', sa.Text, nullable=True),
        sa.Column('reject_reason', sa.Text, nullable=True),
        sa.Column('order_id', sa.String(64), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP, nullable=False),
        sa.Column('responded_at', sa.TIMESTAMP, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version', sa.Integer, nullable=False),
    )

    # Create indexes for offers
    op.create_index('ix_offers_product_id', 'offers', ['product_id'])
    op.create_index('ix_offers_buyer_id', 'offers', ['buyer_id'])
    op.create_index('ix_offers_seller_id', 'offers', ['seller_id'])
    op.create_index('ix_offers_status', 'offers', ['status'])
    op.create_index('idx_offer_product_buyer_status', 'offers', ['product_id', 'buyer_id', 'status'])
    op.create_index('idx_offer_expires_status', 'offers', ['expires_at', 'status'])
    op.create_index(
        'uq_offer_active_product_buyer',
        'offers',
        ['product_id', 'buyer_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_OFFER_CLAUSE),
        sqlite_where=sa.text(ACTIVE_OFFER_CLAUSE),
    )

    # Create trades table
    op.create_table(
        'trades',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_number', sa.String(32), nullable=False, unique=True),
        sa.Column('initiator_id', sa.String(36), nullable=False),
        sa.Column('receiver_id', sa.String(36), nullable=False),
        sa.Column('current_proposer_id', sa.String(36), nullable=False),
        sa.Column('status', sa.String(24), nullable=False, server_default='proposed'),
        sa.Column('disputed_from', sa.String(24), nullable=True),
        sa.Column('cash_amount', sa.Numeric(20, 8), nullable=True),
        sa.Column('cash_payer_id', sa.String(36), nullable=True),
        sa.Column('cash_commission', sa.Numeric(20, 8), nullable=True),
        sa.Column('commission_rate', sa.Numeric(8, 6), nullable=False),
        sa.Column('response_deadline', sa.TIMESTAMP, nullable=True),
        sa.Column('payment_deadline', sa.TIMESTAMP, nullable=True),
        sa.Column('shipping_deadline', sa.TIMESTAMP, nullable=True),
        sa.Column('confirmation_deadline', sa.TIMESTAMP, nullable=True),
        sa.Column('initiator_message', sa.Text, nullable=True),
        sa.Column('receiver_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('accepted_at', sa.TIMESTAMP, nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP, nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP, nullable=True),
        sa.Column('cancel_reason', sa.Text, nullable=True),
        sa.Column('version', sa.Integer, nullable=False),
    )

    # Create indexes for trades
    op.create_index('ix_trades_initiator_id', 'trades', ['initiator_id'])
    op.create_index('ix_trades_receiver_id', 'trades', ['receiver_id'])
    op.create_index('ix_trades_status', 'trades', ['status'])
    op.create_index('idx_trade_status_response', 'trades', ['status', 'response_deadline'])
    op.create_index('idx_trade_status_shipping', 'trades', ['status', 'shipping_deadline'])

    # Create trade_items table
    op.create_table(
        'trade_items',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False),
        sa.Column('product_id', sa.String(36), nullable=False),
        sa.Column('side', sa.String(10), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False, server_default='1'),
        sa.Column('value_at_trade', sa.Numeric(20, 8), nullable=False),
    )
    op.create_index('ix_trade_items_trade_id', 'trade_items', ['trade_id'])
    op.create_index('ix_trade_items_product_id', 'trade_items', ['product_id'])

    # Create trade_shipments table
    op.create_table(
        'trade_shipments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False),
        sa.Column('shipper_id', sa.String(36), nullable=False),
        sa.Column('carrier', sa.String(50), nullable=True),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='not_shipped'),
        sa.Column('shipped_at', sa.TIMESTAMP, nullable=True),
        sa.Column('delivered_at', sa.TIMESTAMP, nullable=True),
        sa.Column('confirmed_at', sa.TIMESTAMP, nullable=True),
    )
    op.create_index('ix_trade_shipments_trade_id', 'trade_shipments', ['trade_id'])

    # Create trade_cash_payments table
    op.create_table(
        'trade_cash_payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False, unique=True),
        sa.Column('payer_id', sa.String(36), nullable=False),
        sa.Column('recipient_id', sa.String(36), nullable=False),
        sa.Column('amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('commission', sa.Numeric(20, 8), nullable=False),
        sa.Column('total_amount', sa.Numeric(20, 8), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('hold_id', sa.String(100), nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
        sa.Column('failed_attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('created_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('paid_at', sa.TIMESTAMP, nullable=True),
        sa.Column('released_at', sa.TIMESTAMP, nullable=True),
        sa.Column('refunded_at', sa.TIMESTAMP, nullable=True),
        sa.Column('version', sa.Integer, nullable=False),
    )

    # Create trade_disputes table
    op.create_table(
        'trade_disputes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('trade_id', sa.String(36), sa.ForeignKey('trades.id'), nullable=False, unique=True),
        sa.Column('raised_by_id', sa.String(36), nullable=True),
        sa.Column('reason', sa.String(50), nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('resolution', sa.Text, nullable=True),
        sa.Column('outcome', sa.String(20), nullable=True),
        sa.Column('resolved_by_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('resolved_at', sa.TIMESTAMP, nullable=True),
    )

    # Create item_locks table
    op.create_table(
        'item_locks',
        sa.Column('product_id', sa.String(36), primary_key=True),
        sa.Column('holder_type', sa.String(10), nullable=False),
        sa.Column('holder_id', sa.String(36), nullable=False),
        sa.Column('owner_id', sa.String(36), nullable=False),
        sa.Column('locked_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('idx_item_lock_holder', 'item_locks', ['holder_type', 'holder_id'])

    # Create commission_rules table
    op.create_table(
        'commission_rules',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('min_amount', sa.Numeric(20, 8), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    # Create activity_log table
    op.create_table(
        'activity_log',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('entity_type', sa.String(10), nullable=False),
        sa.Column('entity_id', sa.String(36), nullable=False),
        sa.Column('actor_id', sa.String(36), nullable=True),
        sa.Column('data', sa.JSON, nullable=False),
        sa.Column('created_at', sa.TIMESTAMP, nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('idx_activity_created', 'activity_log', ['created_at'])
    op.create_index('idx_activity_type', 'activity_log', ['event_type'])
    op.create_index('idx_activity_entity', 'activity_log', ['entity_type', 'entity_id'])


def downgrade() -> None:
    op.drop_table('activity_log')
    op.drop_table('commission_rules')
    op.drop_table('item_locks')
    op.drop_table('trade_disputes')
    op.drop_table('trade_cash_payments')
    op.drop_table('trade_shipments')
    op.drop_table('trade_items')
    op.drop_table('trades')
    op.drop_table('offers')
