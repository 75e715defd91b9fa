"""widen_quota_cycle_key

Revision ID: 8f2d41c6a9e3
Revises: 3c1e5a9d7b20
Create Date: 2026-10-18 15:42:51.307215

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8f2d41c6a9e3'
down_revision: Union[str, None] = '3c1e5a9d7b20'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Quota cycles are keyed by the full window start instead of its month."""
    with op.batch_alter_table('quota_cycles') as batch_op:
        batch_op.alter_column('cycle_id', existing_type=sa.String(length=7), type_=sa.String(length=20),
                              existing_nullable=False)
    with op.batch_alter_table('quota_subject_counts') as batch_op:
        batch_op.alter_column('cycle_id', existing_type=sa.String(length=7), type_=sa.String(length=20),
                              existing_nullable=False)


def downgrade() -> None:
    # Keys longer than 7 characters must be removed before downgrading.
    with op.batch_alter_table('quota_subject_counts') as batch_op:
        batch_op.alter_column('cycle_id', existing_type=sa.String(length=20), type_=sa.String(length=7),
                              existing_nullable=False)
    with op.batch_alter_table('quota_cycles') as batch_op:
        batch_op.alter_column('cycle_id', existing_type=sa.String(length=20), type_=sa.String(length=7),
                              existing_nullable=False)
