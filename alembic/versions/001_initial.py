"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Watches table
    op.create_table(
        'watches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=True),
        sa.Column('route', sa.String(length=128), nullable=False),
        sa.Column('travel_date', sa.Date(), nullable=True),
        sa.Column('booking_class', sa.String(length=32), nullable=False),
        sa.Column('target_price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('min_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('max_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('notification_methods', postgresql.JSONB(), nullable=False),
        sa.Column('monitor_frequency', sa.String(length=16), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('quality_score', sa.Float(), nullable=False),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('next_check_at', sa.DateTime(), nullable=True),
        sa.Column('last_triggered_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('active', 'paused', 'triggered', 'expired', 'cancelled')",
            name='ck_watch_status',
        ),
        sa.CheckConstraint(
            'quality_score >= 0.1 AND quality_score <= 1.0', name='ck_watch_quality_score'
        ),
        sa.CheckConstraint('target_price > 0', name='ck_watch_target_price'),
    )
    op.create_index('ix_watches_owner_id', 'watches', ['owner_id'])
    op.create_index('ix_watches_status_next_check', 'watches', ['status', 'next_check_at'])

    # Trigger history
    op.create_table(
        'watch_triggers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('watch_id', sa.Integer(), nullable=False),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=True),
        sa.Column('drop_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('drop_percentage', sa.Numeric(precision=6, scale=2), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['watch_id'], ['watches.id'], ),
    )
    op.create_index('ix_watch_triggers_watch_id', 'watch_triggers', ['watch_id'])

    # Notification history
    op.create_table(
        'watch_notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('watch_id', sa.Integer(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.Column('method', sa.String(length=16), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['watch_id'], ['watches.id'], ),
    )
    op.create_index('ix_watch_notifications_watch_id', 'watch_notifications', ['watch_id'])

    # Booking actions
    op.create_table(
        'watch_booking_actions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('watch_id', sa.Integer(), nullable=False),
        sa.Column('attempted_at', sa.DateTime(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('confirmation', sa.String(length=128), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['watch_id'], ['watches.id'], ),
    )
    op.create_index('ix_watch_booking_actions_watch_id', 'watch_booking_actions', ['watch_id'])

    # Auto-buy settings (payment_reference is Fernet-encrypted text)
    op.create_table(
        'auto_buy_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('watch_id', sa.Integer(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('payment_method_type', sa.String(length=16), nullable=False),
        sa.Column('payment_reference', sa.String(length=512), nullable=True),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('attempts_count', sa.Integer(), nullable=False),
        sa.Column('disabled_reason', sa.String(length=64), nullable=True),
        sa.Column('disabled_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['watch_id'], ['watches.id'], ),
        sa.UniqueConstraint('watch_id'),
        sa.CheckConstraint(
            'max_attempts >= 1 AND max_attempts <= 5', name='ck_auto_buy_max_attempts'
        ),
        sa.CheckConstraint(
            'attempts_count >= 0 AND attempts_count <= max_attempts',
            name='ck_auto_buy_attempts_count',
        ),
    )

    # Price observations
    op.create_table(
        'price_observations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('route', sa.String(length=128), nullable=False),
        sa.Column('travel_date', sa.Date(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('booking_class', sa.String(length=32), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('captured_at', sa.DateTime(), nullable=False),
        sa.Column('validation_status', sa.String(length=16), nullable=False),
        sa.Column('quality_score', sa.Float(), nullable=False),
        sa.Column('source_record_id', sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'route', 'travel_date', 'provider', 'booking_class',
            name='uq_observation_route_date_provider_class',
        ),
        sa.CheckConstraint('price > 0', name='ck_observation_price'),
        sa.CheckConstraint(
            'quality_score >= 0.1 AND quality_score <= 1.0', name='ck_observation_quality_score'
        ),
    )
    op.create_index(
        'ix_price_observations_route_captured', 'price_observations', ['route', 'captured_at']
    )

    # Raw provider records
    op.create_table(
        'provider_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('flight_identifier', sa.String(length=128), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('route', sa.String(length=128), nullable=False),
        sa.Column('schedule', postgresql.JSONB(), nullable=False),
        sa.Column('pricing', postgresql.JSONB(), nullable=False),
        sa.Column('captured_at', sa.DateTime(), nullable=False),
        sa.Column('validation_status', sa.String(length=16), nullable=False),
        sa.Column('group_key', sa.String(length=256), nullable=True),
        sa.Column('duplicate_group_id', sa.Integer(), nullable=True),
        sa.Column('canonical_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'flight_identifier', name='uq_provider_flight_identifier'),
    )
    op.create_index('ix_provider_records_group_key', 'provider_records', ['group_key'])
    op.create_index(
        'ix_provider_records_duplicate_group_id', 'provider_records', ['duplicate_group_id']
    )
    op.create_index('ix_provider_records_captured_at', 'provider_records', ['captured_at'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_provider_records_captured_at', table_name='provider_records')
    op.drop_index('ix_provider_records_duplicate_group_id', table_name='provider_records')
    op.drop_index('ix_provider_records_group_key', table_name='provider_records')
    op.drop_index('ix_price_observations_route_captured', table_name='price_observations')
    op.drop_index('ix_watch_booking_actions_watch_id', table_name='watch_booking_actions')
    op.drop_index('ix_watch_notifications_watch_id', table_name='watch_notifications')
    op.drop_index('ix_watch_triggers_watch_id', table_name='watch_triggers')
    op.drop_index('ix_watches_status_next_check', table_name='watches')
    op.drop_index('ix_watches_owner_id', table_name='watches')

    # Drop tables
    op.drop_table('provider_records')
    op.drop_table('price_observations')
    op.drop_table('auto_buy_settings')
    op.drop_table('watch_booking_actions')
    op.drop_table('watch_notifications')
    op.drop_table('watch_triggers')
    op.drop_table('watches')
