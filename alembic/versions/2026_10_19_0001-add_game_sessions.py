"""add game sessions

Revision ID: 2026_10_19_0001
Revises: 2026_10_19_0000
Create Date: 2026-10-19 14:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0001'
down_revision: Union[str, None] = '2026_10_19_0000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create game_sessions table holding server-issued tier unlocks."""
    op.create_table(
        'game_sessions',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('tier', sa.String(10), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),

        sa.CheckConstraint('score >= 0', name='ck_game_session_score_non_negative'),
        sa.CheckConstraint("tier IN ('bronze', 'silver', 'gold')", name='ck_game_session_tier'),
    )
    op.create_index('idx_game_sessions_valid_until', 'game_sessions', ['valid_until'])


def downgrade() -> None:
    """Drop game_sessions table."""
    op.drop_index('idx_game_sessions_valid_until', table_name='game_sessions')
    op.drop_table('game_sessions')
