"""
Alembic migration: Initial dispatch schema.

Creates users, orders, delivery records, routes, route stops and alternate
route plans. Enum-like columns are stored as strings guarded by CHECK
constraints. Partial unique indexes keep at most one active delivery record
per order and at most one active alternate plan per route.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = ('pending', 'confirmed', 'in_process', 'shipped', 'delivered', 'cancelled', 'refunded')
LOGISTICS_STATES = ('pending_route', 'route_assigned', 'in_transit', 'delivered', 'cancelled')
DELIVERY_STATES = ('assigned', 'in_transit', 'arrived', 'delivered', 'cancelled', 'failed')
ROUTE_STATES = ('planned', 'active', 'in_progress', 'completed', 'cancelled')
STOP_STATES = ('pending', 'en_route', 'delivered', 'undelivered', 'cancelled')

ACTIVE_DELIVERY_SQL = "state IN ('assigned', 'in_transit', 'arrived')"


def _enum(name: str, values: Sequence[str]) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True, length=32)


def _base_columns() -> list:
    return [
        sa.Column('id', sa.Uuid(), nullable=False, comment='Unique identifier for the record'),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Create the dispatch tables, constraints and indexes.
    """
    op.create_table(
        'users',
        *_base_columns(),
        sa.Column('full_name', sa.String(length=200), nullable=False, comment='Display name'),
        sa.Column('email', sa.String(length=255), nullable=False, comment='Contact email'),
        sa.Column('phone', sa.String(length=30), nullable=True, comment='Contact phone'),
        sa.Column(
            'role',
            sa.String(length=50),
            nullable=False,
            comment='Role name as provided by the identity store',
        ),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_known_lat', sa.Float(), nullable=True),
        sa.Column('last_known_lon', sa.Float(), nullable=True),
        sa.Column('last_position_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_users'),
        sa.UniqueConstraint('email', name='uq_users_email'),
    )
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_role_active', 'users', ['role', 'is_active'])

    op.create_table(
        'orders',
        *_base_columns(),
        sa.Column('order_number', sa.String(length=50), nullable=False),
        sa.Column('status', _enum('order_status', ORDER_STATUSES), nullable=False),
        sa.Column('loaded_on_vehicle', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ledger_party_ref', sa.String(length=64), nullable=True),
        sa.Column('ledger_order_ref', sa.String(length=64), nullable=True),
        sa.Column('customer_name', sa.String(length=200), nullable=True),
        sa.Column('destination_address', sa.Text(), nullable=True),
        sa.Column('destination_lat', sa.Float(), nullable=True),
        sa.Column('destination_lon', sa.Float(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('logistics_state', _enum('logistics_state', LOGISTICS_STATES), nullable=True),
        sa.Column('assigned_courier_id', sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        sa.ForeignKeyConstraint(
            ['assigned_courier_id'],
            ['users.id'],
            name='fk_orders_assigned_courier_id_users',
            ondelete='SET NULL',
        ),
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])
    op.create_index('ix_orders_assigned_courier', 'orders', ['assigned_courier_id'])

    op.create_table(
        'routes',
        *_base_columns(),
        sa.Column('courier_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('stop_count', sa.Integer(), nullable=False),
        sa.Column('state', _enum('route_state', ROUTE_STATES), nullable=False),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_routes'),
        sa.ForeignKeyConstraint(
            ['courier_id'], ['users.id'], name='fk_routes_courier_id_users', ondelete='RESTRICT'
        ),
        sa.CheckConstraint('capacity > 0', name='ck_routes_capacity_positive'),
        sa.CheckConstraint('stop_count <= capacity', name='ck_routes_stop_count_capacity'),
    )
    op.create_index('ix_routes_courier_state', 'routes', ['courier_id', 'state'])
    op.create_index('ix_routes_created', 'routes', ['created_at'])

    op.create_table(
        'delivery_records',
        *_base_columns(),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('courier_id', sa.Uuid(), nullable=False),
        sa.Column('route_id', sa.Uuid(), nullable=True),
        sa.Column('state', _enum('delivery_state', DELIVERY_STATES), nullable=False),
        sa.Column('assigned_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('departed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('arrived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('departure_lat', sa.Float(), nullable=True),
        sa.Column('departure_lon', sa.Float(), nullable=True),
        sa.Column('arrival_lat', sa.Float(), nullable=True),
        sa.Column('arrival_lon', sa.Float(), nullable=True),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.Column('photo_url', sa.String(length=500), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('distance_km', sa.Float(), nullable=True),
        sa.Column('distance_estimated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('duration_minutes', sa.Integer(), nullable=True),
        sa.Column('cancel_reason', sa.String(length=100), nullable=True),
        sa.Column('cancel_detail', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.Uuid(), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('reassigned_from_id', sa.Uuid(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, comment='Optimistic lock counter'),
        sa.PrimaryKeyConstraint('id', name='pk_delivery_records'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_delivery_records_order_id_orders', ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['courier_id'], ['users.id'], name='fk_delivery_records_courier_id_users', ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['route_id'], ['routes.id'], name='fk_delivery_records_route_id_routes', ondelete='SET NULL'
        ),
        sa.ForeignKeyConstraint(
            ['reassigned_from_id'],
            ['delivery_records.id'],
            name='fk_delivery_records_reassigned_from_id',
            ondelete='SET NULL',
        ),
    )
    op.create_index(
        'uq_delivery_records_active_order',
        'delivery_records',
        ['order_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_DELIVERY_SQL),
        sqlite_where=sa.text(ACTIVE_DELIVERY_SQL),
    )
    op.create_index('ix_delivery_records_courier_state', 'delivery_records', ['courier_id', 'state'])
    op.create_index('ix_delivery_records_route', 'delivery_records', ['route_id'])
    op.create_index('ix_delivery_records_order', 'delivery_records', ['order_id'])

    op.create_table(
        'route_stops',
        *_base_columns(),
        sa.Column('route_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('delivery_record_id', sa.Uuid(), nullable=True),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('state', _enum('stop_state', STOP_STATES), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_route_stops'),
        sa.ForeignKeyConstraint(
            ['route_id'], ['routes.id'], name='fk_route_stops_route_id_routes', ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'], name='fk_route_stops_order_id_orders', ondelete='RESTRICT'
        ),
        sa.ForeignKeyConstraint(
            ['delivery_record_id'],
            ['delivery_records.id'],
            name='fk_route_stops_delivery_record_id',
            ondelete='SET NULL',
        ),
        sa.UniqueConstraint('route_id', 'sequence_number', name='uq_route_stops_sequence'),
        sa.UniqueConstraint('route_id', 'order_id', name='uq_route_stops_order'),
        sa.CheckConstraint('sequence_number >= 1', name='ck_route_stops_sequence_positive'),
    )
    op.create_index('ix_route_stops_order', 'route_stops', ['order_id'])

    op.create_table(
        'alternate_route_plans',
        *_base_columns(),
        sa.Column('route_id', sa.Uuid(), nullable=False),
        sa.Column('courier_id', sa.Uuid(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_alternate_route_plans'),
        sa.ForeignKeyConstraint(
            ['route_id'], ['routes.id'], name='fk_alternate_route_plans_route_id', ondelete='CASCADE'
        ),
        sa.ForeignKeyConstraint(
            ['courier_id'], ['users.id'], name='fk_alternate_route_plans_courier_id', ondelete='RESTRICT'
        ),
    )
    op.create_index(
        'uq_alternate_route_plans_active_route',
        'alternate_route_plans',
        ['route_id'],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )
    op.create_index(
        'ix_alternate_route_plans_route_created',
        'alternate_route_plans',
        ['route_id', 'created_at'],
    )

    op.create_table(
        'alternate_plan_stops',
        *_base_columns(),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('route_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_alternate_plan_stops'),
        sa.ForeignKeyConstraint(
            ['plan_id'],
            ['alternate_route_plans.id'],
            name='fk_alternate_plan_stops_plan_id',
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['route_id', 'order_id'],
            ['route_stops.route_id', 'route_stops.order_id'],
            name='fk_alternate_plan_stops_route_stop',
            ondelete='CASCADE',
        ),
        sa.UniqueConstraint('plan_id', 'position', name='uq_alternate_plan_stops_position'),
        sa.UniqueConstraint('plan_id', 'order_id', name='uq_alternate_plan_stops_order'),
        sa.CheckConstraint('position >= 1', name='ck_alternate_plan_stops_position_positive'),
    )


def downgrade() -> None:
    """
    Drop every dispatch table in reverse dependency order.
    """
    op.drop_table('alternate_plan_stops')

    op.drop_index('ix_alternate_route_plans_route_created', table_name='alternate_route_plans')
    op.drop_index('uq_alternate_route_plans_active_route', table_name='alternate_route_plans')
    op.drop_table('alternate_route_plans')

    op.drop_index('ix_route_stops_order', table_name='route_stops')
    op.drop_table('route_stops')

    op.drop_index('ix_delivery_records_order', table_name='delivery_records')
    op.drop_index('ix_delivery_records_route', table_name='delivery_records')
    op.drop_index('ix_delivery_records_courier_state', table_name='delivery_records')
    op.drop_index('uq_delivery_records_active_order', table_name='delivery_records')
    op.drop_table('delivery_records')

    op.drop_index('ix_routes_created', table_name='routes')
    op.drop_index('ix_routes_courier_state', table_name='routes')
    op.drop_table('routes')

    op.drop_index('ix_orders_assigned_courier', table_name='orders')
    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')

    op.drop_index('ix_users_role_active', table_name='users')
    op.drop_index('ix_users_role', table_name='users')
    op.drop_table('users')
