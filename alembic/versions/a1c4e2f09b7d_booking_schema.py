"""booking schema

Revision ID: a1c4e2f09b7d
Revises:
Create Date: 2026-10-18 10:12:41.318204

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a1c4e2f09b7d'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id():
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _created_at():
    return sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def _updated_at():
    return sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)


def upgrade() -> None:
    """Upgrade schema."""

    # 1. Establishments and weekly hours
    op.create_table(
        'establishments',
        _id(),
        sa.Column('owner_user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), nullable=False),
        sa.Column('timezone', sa.String(50), nullable=False, server_default='America/Sao_Paulo'),
        sa.Column('booking_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('auto_confirm_bookings', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('slot_interval_minutes', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('buffer_minutes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_future_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('reschedule_min_hours', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('require_policy_acceptance', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancellation_policy_text', sa.Text(), nullable=True),
        sa.Column('ask_email', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ask_notes', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index('ix_establishments_owner_user_id', 'establishments', ['owner_user_id'])
    op.create_index('ix_establishments_slug', 'establishments', ['slug'], unique=True)

    op.create_table(
        'business_hours',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('open_time', sa.Time(), nullable=True),
        sa.Column('close_time', sa.Time(), nullable=True),
        sa.Column('closed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint('establishment_id', 'weekday', name='uq_business_hours_weekday'),
        sa.CheckConstraint('weekday BETWEEN 0 AND 6', name='ck_business_hours_weekday'),
    )

    # 2. Services and professionals
    op.create_table(
        'services',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint('duration_minutes > 0', name='ck_services_duration_positive'),
    )
    op.create_index('ix_services_establishment_id', 'services', ['establishment_id'])
    op.create_index('ix_services_active', 'services', ['active'])

    op.create_table(
        'professionals',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id'), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('slug', sa.String(100), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('capacity', sa.Integer(), nullable=False, server_default='1'),
        _created_at(),
        sa.CheckConstraint('capacity >= 1', name='ck_professionals_capacity_positive'),
    )
    op.create_index('ix_professionals_establishment_id', 'professionals', ['establishment_id'])

    op.create_table(
        'professional_services',
        sa.Column('professional_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('professionals.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('service_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('services.id', ondelete='CASCADE'), primary_key=True),
    )

    op.create_table(
        'professional_hours',
        _id(),
        sa.Column('professional_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('professionals.id', ondelete='CASCADE'), nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=True),
        sa.Column('end_time', sa.Time(), nullable=True),
        sa.Column('closed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.UniqueConstraint('professional_id', 'weekday', name='uq_professional_hours_weekday'),
    )

    # 3. Blocks
    op.create_table(
        'time_blocks',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('professional_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('professionals.id', ondelete='CASCADE'), nullable=True),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reason', sa.String(200), nullable=True),
        _created_at(),
    )
    op.create_index('ix_time_blocks_establishment_id', 'time_blocks', ['establishment_id'])

    op.create_table(
        'recurring_time_blocks',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('professional_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('professionals.id', ondelete='CASCADE'), nullable=True),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.Time(), nullable=False),
        sa.Column('end_time', sa.Time(), nullable=False),
        sa.Column('reason', sa.String(200), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )
    op.create_index('ix_recurring_time_blocks_establishment_id', 'recurring_time_blocks', ['establishment_id'])

    # 4. Customers and appointments
    op.create_table(
        'customers',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        _created_at(),
        sa.UniqueConstraint('establishment_id', 'phone', name='uq_customers_establishment_phone'),
    )

    op.create_table(
        'appointments',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id'), nullable=False),
        sa.Column('professional_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('professionals.id'), nullable=False),
        sa.Column('service_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('services.id'), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('customers.id'), nullable=False),
        sa.Column('start_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='booked'),
        sa.Column('customer_notes', sa.Text(), nullable=True),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.CheckConstraint('end_at > start_at', name='ck_appointments_interval'),
        sa.CheckConstraint(
            "status IN ('booked', 'confirmed', 'completed', 'canceled', 'no_show')",
            name='ck_appointments_status',
        ),
    )
    op.create_index('ix_appointments_professional_start', 'appointments', ['professional_id', 'start_at'])
    op.create_index('ix_appointments_establishment_created', 'appointments', ['establishment_id', 'created_at'])

    op.create_table(
        'appointment_events',
        _id(),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('appointments.id'), nullable=False),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('actor_type', sa.String(20), nullable=False),
        sa.Column('actor_user_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('from_payload', sa.JSON(), nullable=True),
        sa.Column('to_payload', sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index('ix_appointment_events_appointment_id', 'appointment_events', ['appointment_id'])

    op.create_table(
        'appointment_manage_tokens',
        _id(),
        sa.Column('appointment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('appointments.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        _created_at(),
    )
    op.create_index('ix_appointment_manage_tokens_token_hash', 'appointment_manage_tokens', ['token_hash'],
                    unique=True)

    # 5. Plans, subscriptions, billing events, usage cache
    plans = op.create_table(
        'plans',
        _id(),
        sa.Column('code', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_professionals', sa.Integer(), nullable=True),
        sa.Column('max_appointments_month', sa.Integer(), nullable=True),
        sa.Column('allow_multi_establishments', sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
    )

    op.create_table(
        'subscriptions',
        _id(),
        sa.Column('owner_user_id', postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('plan_code', sa.String(50), sa.ForeignKey('plans.code'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), server_default=sa.text('now()'),
                  nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('provider', sa.String(50), nullable=True),
        sa.Column('provider_subscription_id', sa.String(255), nullable=True),
        sa.Column('provider_order_id', sa.String(255), nullable=True),
        sa.Column('buyer_email', sa.String(255), nullable=True),
        sa.Column('raw_last_event', sa.JSON(), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        'billing_webhook_events',
        _id(),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.UniqueConstraint('provider', 'event_id', name='uq_billing_webhook_events_provider_event'),
    )

    op.create_table(
        'establishment_monthly_usage',
        _id(),
        sa.Column('establishment_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('establishments.id', ondelete='CASCADE'), nullable=False),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('appointments_count', sa.Integer(), nullable=False, server_default='0'),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint('establishment_id', 'year', 'month', name='uq_monthly_usage_period'),
    )

    # 6. Default plans
    op.bulk_insert(plans, [
        {'code': 'basic', 'name': 'Básico', 'price_cents': 2990,
         'max_professionals': 1, 'max_appointments_month': 50, 'allow_multi_establishments': False},
        {'code': 'essential', 'name': 'Essencial', 'price_cents': 5990,
         'max_professionals': 3, 'max_appointments_month': 120, 'allow_multi_establishments': False},
        {'code': 'studio', 'name': 'Studio', 'price_cents': 9990,
         'max_professionals': 10, 'max_appointments_month': None, 'allow_multi_establishments': True},
    ])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('establishment_monthly_usage')
    op.drop_table('billing_webhook_events')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_index('ix_appointment_manage_tokens_token_hash', table_name='appointment_manage_tokens')
    op.drop_table('appointment_manage_tokens')
    op.drop_index('ix_appointment_events_appointment_id', table_name='appointment_events')
    op.drop_table('appointment_events')
    op.drop_index('ix_appointments_establishment_created', table_name='appointments')
    op.drop_index('ix_appointments_professional_start', table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('customers')
    op.drop_index('ix_recurring_time_blocks_establishment_id', table_name='recurring_time_blocks')
    op.drop_table('recurring_time_blocks')
    op.drop_index('ix_time_blocks_establishment_id', table_name='time_blocks')
    op.drop_table('time_blocks')
    op.drop_table('professional_hours')
    op.drop_table('professional_services')
    op.drop_index('ix_professionals_establishment_id', table_name='professionals')
    op.drop_table('professionals')
    op.drop_index('ix_services_active', table_name='services')
    op.drop_index('ix_services_establishment_id', table_name='services')
    op.drop_table('services')
    op.drop_table('business_hours')
    op.drop_index('ix_establishments_slug', table_name='establishments')
    op.drop_index('ix_establishments_owner_user_id', table_name='establishments')
    op.drop_table('establishments')
