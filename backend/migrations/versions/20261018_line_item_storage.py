"""Add storage placement to line item decisions

Revision ID: 20261018_item_storage
Revises: 20261018_initial
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_item_storage"
down_revision = "20261018_initial"
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table("line_item_decisions", schema=None) as batch_op:
        batch_op.add_column(sa.Column("storage_location", sa.JSON(), nullable=True))
        batch_op.add_column(sa.Column("storage_conditions", sa.JSON(), nullable=True))


def downgrade():
    with op.batch_alter_table("line_item_decisions", schema=None) as batch_op:
        batch_op.drop_column("storage_conditions")
        batch_op.drop_column("storage_location")
