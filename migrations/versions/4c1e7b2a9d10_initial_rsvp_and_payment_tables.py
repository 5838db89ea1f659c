"""Initial RSVP, payment and projection tables

Revision ID: 4c1e7b2a9d10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e7b2a9d10'
down_revision = None
branch_labels = None
depends_on = None


def _status():
    return sa.Enum('pending', 'paid', 'failed', name='attendance_status',
                   native_enum=False, length=20)


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table('events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(length=255), nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('capacity', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('reserved_count', sa.Integer(), nullable=False),
        sa.Column('creator_user_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('capacity >= 0', name='ck_events_capacity_non_negative'),
        sa.CheckConstraint('price >= 0', name='ck_events_price_non_negative'),
        sa.CheckConstraint('reserved_count >= 0', name='ck_events_reserved_non_negative'),
        sa.CheckConstraint('reserved_count <= capacity', name='ck_events_reserved_lte_capacity'),
        sa.ForeignKeyConstraint(['creator_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('attendances',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'user_id', name='uq_attendances_event_user'),
        sa.UniqueConstraint('payment_reference')
    )
    with op.batch_alter_table('attendances', schema=None) as batch_op:
        batch_op.create_index('ix_attendances_status_created', ['status', 'created_at'], unique=False)

    op.create_table('user_attendances',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('payment_reference', sa.String(length=100), nullable=True),
        sa.Column('payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'event_id', name='uq_user_attendances_user_event')
    )
    with op.batch_alter_table('user_attendances', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_user_attendances_user_id'), ['user_id'], unique=False)

    op.create_table('payment_sessions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('checkout_request_id', sa.String(length=100), nullable=False),
        sa.Column('merchant_request_id', sa.String(length=100), nullable=True),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('phone', sa.String(length=20), nullable=False),
        sa.Column('status', _status(), nullable=False),
        sa.Column('result_code', sa.String(length=20), nullable=True),
        sa.Column('result_desc', sa.String(length=255), nullable=True),
        sa.Column('poll_attempts', sa.Integer(), nullable=False),
        sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkout_request_id')
    )
    with op.batch_alter_table('payment_sessions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payment_sessions_event_id'), ['event_id'], unique=False)
        batch_op.create_index('ix_payment_sessions_status_created', ['status', 'created_at'], unique=False)

    op.create_table('mpesa_callbacks',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('checkout_request_id', sa.String(length=100), nullable=True),
        sa.Column('result_code', sa.String(length=20), nullable=True),
        sa.Column('result_desc', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('outcome', sa.String(length=50), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('mpesa_callbacks', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_mpesa_callbacks_checkout_request_id'), ['checkout_request_id'], unique=False)

    op.create_table('projection_repairs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', 'user_id', name='uq_projection_repairs_pair')
    )

    op.create_table('audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=True),
        sa.Column('actor_user_id', sa.String(length=36), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['actor_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_audit_events_event_id'), ['event_id'], unique=False)


def downgrade():
    with op.batch_alter_table('audit_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_audit_events_event_id'))
    op.drop_table('audit_events')

    op.drop_table('projection_repairs')

    with op.batch_alter_table('mpesa_callbacks', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_mpesa_callbacks_checkout_request_id'))
    op.drop_table('mpesa_callbacks')

    with op.batch_alter_table('payment_sessions', schema=None) as batch_op:
        batch_op.drop_index('ix_payment_sessions_status_created')
        batch_op.drop_index(batch_op.f('ix_payment_sessions_event_id'))
    op.drop_table('payment_sessions')

    with op.batch_alter_table('user_attendances', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_user_attendances_user_id'))
    op.drop_table('user_attendances')

    with op.batch_alter_table('attendances', schema=None) as batch_op:
        batch_op.drop_index('ix_attendances_status_created')
    op.drop_table('attendances')

    op.drop_table('events')
    op.drop_table('users')
