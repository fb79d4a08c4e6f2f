"""
Alembic migration: Initial order settlement schema.

Creates events, access tokens, price list items, orders, order items and
payment records, the partial unique index that allows at most one pending
order per subject, and the process_payment_webhook PL/pgSQL function used by
the stored-procedure apply strategy.

Revision ID: 001
Revises:
Create Date: 2024-05-14 10:12:31.504118
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ORDER_STATUS_VALUES = ('pending', 'approved', 'failed', 'delivered')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
    ]


def _uuid_pk() -> sa.Column:
    return sa.Column(
        'id',
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text('gen_random_uuid()'),
    )


PROCESS_PAYMENT_WEBHOOK = """
CREATE OR REPLACE FUNCTION process_payment_webhook(
    p_payment_id varchar,
    p_order_id uuid,
    p_status varchar,
    p_status_detail varchar,
    p_amount_cents integer,
    p_payload jsonb,
    p_target_status varchar,
    p_is_refresh boolean
)
RETURNS TABLE(
    previous_status text,
    new_status text,
    accepted boolean,
    order_payment_id text
)
LANGUAGE plpgsql
AS $$
DECLARE
    v_current text;
    v_order_payment_id text;
BEGIN
    SELECT o.status::text, o.gateway_payment_id INTO v_current, v_order_payment_id
    FROM orders o
    WHERE o.id = p_order_id
    FOR UPDATE;

    IF NOT FOUND THEN
        RAISE EXCEPTION 'order_not_found: %', p_order_id
            USING ERRCODE = 'P0002';
    END IF;

    IF p_is_refresh THEN
        UPDATE payment_records
        SET gateway_status = p_status,
            gateway_status_detail = p_status_detail,
            amount_cents = p_amount_cents,
            raw_webhook_payload = p_payload,
            processed_at = now(),
            order_synced_at = now(),
            updated_at = now()
        WHERE gateway_payment_id = p_payment_id;
    ELSE
        INSERT INTO payment_records (
            gateway_payment_id, order_id, gateway_status,
            gateway_status_detail, amount_cents, raw_webhook_payload,
            processed_at, order_synced_at
        ) VALUES (
            p_payment_id, p_order_id, p_status,
            p_status_detail, p_amount_cents, p_payload,
            now(), now()
        );
    END IF;

    previous_status := v_current;
    order_payment_id := v_order_payment_id;

    IF v_current = p_target_status
       OR (v_current = 'pending' AND p_target_status IN ('approved', 'failed')) THEN
        UPDATE orders
        SET status = p_target_status::order_status,
            gateway_payment_id = p_payment_id,
            gateway_status = p_status,
            gateway_status_detail = p_status_detail,
            approved_at = CASE
                WHEN p_target_status = 'approved' AND v_current <> 'approved'
                THEN now() ELSE approved_at END,
            updated_at = now()
        WHERE id = p_order_id;
        new_status := p_target_status;
        accepted := true;
    ELSE
        new_status := v_current;
        accepted := false;
    END IF;

    RETURN NEXT;
END;
$$;
"""


def upgrade() -> None:
    """
    Create the settlement schema.

    The payment function is created after the tables it touches.
    """
    op.create_table(
        'events',
        _uuid_pk(),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'access_tokens',
        _uuid_pk(),
        sa.Column('token', sa.String(128), nullable=False, unique=True),
        sa.Column(
            'event_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('events.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('subject_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_access_tokens_event_id', 'access_tokens', ['event_id'])
    op.create_index('ix_access_tokens_subject_id', 'access_tokens', ['subject_id'])

    op.create_table(
        'price_list_items',
        sa.Column('id', sa.String(100), primary_key=True),
        sa.Column(
            'event_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('events.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('label', sa.String(255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            'price_cents >= 0',
            name='ck_price_list_items_price_non_negative',
        ),
    )
    op.create_index('ix_price_list_items_event_id', 'price_list_items', ['event_id'])

    order_status = postgresql.ENUM(*ORDER_STATUS_VALUES, name='order_status')
    order_status.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'orders',
        _uuid_pk(),
        sa.Column('order_number', sa.String(50), nullable=False, unique=True),
        sa.Column(
            'event_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('events.id', ondelete='RESTRICT'),
            nullable=False,
        ),
        sa.Column('subject_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            'status',
            postgresql.ENUM(*ORDER_STATUS_VALUES, name='order_status', create_type=False),
            nullable=False,
            server_default='pending',
        ),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column(
            'contact_info',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column('gateway_preference_id', sa.String(255), nullable=True),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('gateway_status', sa.String(50), nullable=True),
        sa.Column('gateway_status_detail', sa.String(255), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint('total_cents >= 0', name='ck_orders_total_cents_non_negative'),
        comment='Family photo orders with payment status tracking',
    )
    op.create_index('ix_orders_event_id', 'orders', ['event_id'])
    op.create_index('ix_orders_subject_id', 'orders', ['subject_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_gateway_payment_id', 'orders', ['gateway_payment_id'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index(
        'uq_orders_subject_pending',
        'orders',
        ['subject_id'],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        'order_items',
        _uuid_pk(),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('photo_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('price_list_item_id', sa.String(100), nullable=False),
        sa.Column('label', sa.String(255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint(
            'unit_price_cents >= 0',
            name='ck_order_items_unit_price_non_negative',
        ),
        sa.CheckConstraint(
            'line_total_cents = quantity * unit_price_cents',
            name='ck_order_items_line_total',
        ),
        comment='Priced order lines',
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'payment_records',
        _uuid_pk(),
        sa.Column('gateway_payment_id', sa.String(255), nullable=False, unique=True),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('gateway_status', sa.String(50), nullable=False),
        sa.Column('gateway_status_detail', sa.String(255), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('raw_webhook_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            'processed_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text('now()'),
        ),
        sa.Column('order_synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        comment='Processed gateway payments, one per gateway payment id',
    )
    op.create_index('ix_payment_records_order_id', 'payment_records', ['order_id'])

    op.execute(PROCESS_PAYMENT_WEBHOOK)


def downgrade() -> None:
    """Drop the settlement schema in reverse dependency order."""
    op.execute(
        'DROP FUNCTION IF EXISTS process_payment_webhook('
        'varchar, uuid, varchar, varchar, integer, jsonb, varchar, boolean)'
    )
    op.drop_table('payment_records')
    op.drop_table('order_items')
    op.drop_index('uq_orders_subject_pending', table_name='orders')
    op.drop_table('orders')
    postgresql.ENUM(name='order_status').drop(op.get_bind(), checkfirst=True)
    op.drop_table('price_list_items')
    op.drop_table('access_tokens')
    op.drop_table('events')
