"""Initial schema

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261018_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create profile and result tables."""
    # Create user_profiles table
    op.create_table(
        'user_profiles',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=False),
        sa.Column('age', sa.Integer(), nullable=True),
        sa.Column('gender', sa.String(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    # Create user_test_results table (guests have user_id NULL)
    op.create_table(
        'user_test_results',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('test_type', sa.String(), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('duration_seconds', sa.Integer(), nullable=True),
        sa.Column('tested_at', sa.DateTime(), nullable=True),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('email', sa.String(), nullable=True),
        sa.Column('age', sa.Integer(), nullable=True),
        sa.Column('gender', sa.String(), nullable=True),
        sa.Column('country', sa.String(), nullable=True),
        sa.Column('country_code', sa.String(), nullable=True),
        sa.Column('guest_name', sa.String(), nullable=True),
        sa.Column('guest_age', sa.Integer(), nullable=True),
        sa.Column('guest_location', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_user_test_results_user_id', 'user_test_results', ['user_id'])
    op.create_index('ix_user_test_results_score', 'user_test_results', ['score'])
    op.create_index('ix_user_test_results_tested_at', 'user_test_results', ['tested_at'])
    op.create_index('ix_user_test_results_email', 'user_test_results', ['email'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index('ix_user_test_results_email', 'user_test_results')
    op.drop_index('ix_user_test_results_tested_at', 'user_test_results')
    op.drop_index('ix_user_test_results_score', 'user_test_results')
    op.drop_index('ix_user_test_results_user_id', 'user_test_results')
    op.drop_table('user_test_results')
    op.drop_table('user_profiles')
