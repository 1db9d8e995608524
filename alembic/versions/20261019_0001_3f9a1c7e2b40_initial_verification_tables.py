"""initial verification tables

Revision ID: 3f9a1c7e2b40
Revises:
Create Date: 2026-10-19

Creates:
  accounts: default Account Directory store
  otp_challenges: HMAC digests of issued codes, consumed at most once
  trusted_devices: devices a user vouched for (90-day trust)
  location_samples: where completed sign-ins came from (risk history)
  verification_events: append-only flow log; flow state is the newest row
"""
from alembic import op
import sqlalchemy as sa

revision = '3f9a1c7e2b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(100), nullable=True),
        sa.Column('attributes', sa.JSON(), nullable=True),
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
    )
    op.create_index('ix_accounts_email', 'accounts', ['email'], unique=True)

    op.create_table(
        'otp_challenges',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'purpose',
            sa.Enum('email', 'device', 'location', name='otp_purpose'),
            nullable=False,
        ),
        sa.Column('subject', sa.String(255), nullable=False),
        sa.Column('code_hash', sa.String(64), nullable=False),
        sa.Column('consumed', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('issued_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('consumed_at', sa.TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index('ix_otp_challenges_subject', 'otp_challenges', ['subject'])
    op.create_index('ix_otp_challenges_lookup', 'otp_challenges', ['purpose', 'subject', 'consumed'])

    op.create_table(
        'trusted_devices',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'user_id',
            sa.Uuid(),
            sa.ForeignKey('accounts.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('device_id', sa.String(255), nullable=False),
        sa.Column('first_seen_ip', sa.String(64), nullable=True),
        sa.Column('first_seen_city', sa.String(100), nullable=True),
        sa.Column('first_seen_country', sa.String(100), nullable=True),
        sa.Column('trusted_until', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index('ix_trusted_devices_user_id', 'trusted_devices', ['user_id'])
    op.create_index('ix_trusted_devices_trusted_until', 'trusted_devices', ['trusted_until'])

    op.create_table(
        'location_samples',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'user_id',
            sa.Uuid(),
            sa.ForeignKey('accounts.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('ip', sa.String(64), nullable=False),
        sa.Column('city', sa.String(100), nullable=False),
        sa.Column('country', sa.String(100), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('observed_at', sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index('ix_location_samples_user_id', 'location_samples', ['user_id'])
    op.create_index('ix_location_samples_observed_at', 'location_samples', ['observed_at'])

    op.create_table(
        'verification_events',
        sa.Column('seq', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('id', sa.Uuid(), nullable=False, unique=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('flow_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(50), nullable=False),
        sa.Column('state', sa.String(40), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
    )
    op.create_index('ix_verification_events_created_at', 'verification_events', ['created_at'])
    op.create_index('ix_verification_events_user_type', 'verification_events', ['user_id', 'event_type', 'seq'])
    op.create_index('ix_verification_events_flow', 'verification_events', ['flow_id', 'seq'])


def downgrade() -> None:
    op.drop_table('verification_events')
    op.drop_table('location_samples')
    op.drop_table('trusted_devices')
    op.drop_table('otp_challenges')
    op.drop_table('accounts')
    sa.Enum(name='otp_purpose').drop(op.get_bind(), checkfirst=True)
