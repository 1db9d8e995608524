"""open challenge index and security questions

Revision ID: 7b2d4e9f1a63
Revises: 3f9a1c7e2b40
Create Date: 2026-10-19

Changes:
  otp_challenges: partial unique index, one unconsumed row per (purpose, subject)
  security_questions: hashed answers, optional additional verification factor
"""
from alembic import op
import sqlalchemy as sa

revision = '7b2d4e9f1a63'
down_revision = '3f9a1c7e2b40'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Close any duplicates an earlier race left behind, keeping the newest
    op.execute(
        """
        UPDATE otp_challenges SET consumed = true, consumed_at = CURRENT_TIMESTAMP
        WHERE NOT consumed AND id NOT IN (
            SELECT id FROM (
                SELECT id, ROW_NUMBER() OVER (
                    PARTITION BY purpose, subject ORDER BY issued_at DESC
                ) AS rn
                FROM otp_challenges WHERE NOT consumed
            ) ranked WHERE rn = 1
        )
        """
    )
    op.create_index(
        'uq_otp_challenges_open',
        'otp_challenges',
        ['purpose', 'subject'],
        unique=True,
        postgresql_where=sa.text('NOT consumed'),
        sqlite_where=sa.text('NOT consumed'),
    )

    op.create_table(
        'security_questions',
        sa.Column('id', sa.Uuid(), primary_key=True, nullable=False),
        sa.Column(
            'user_id',
            sa.Uuid(),
            sa.ForeignKey('accounts.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('question', sa.String(200), nullable=False),
        sa.Column('answer_hash', sa.String(), nullable=False),
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
        sa.UniqueConstraint('user_id', 'position', name='uq_security_questions_user_position'),
    )
    op.create_index('ix_security_questions_user_id', 'security_questions', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_security_questions_user_id', table_name='security_questions')
    op.drop_table('security_questions')
    op.drop_index('uq_otp_challenges_open', table_name='otp_challenges')
