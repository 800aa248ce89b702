"""monthly budgets and app settings

Revision ID: 202410160900
Revises:
Create Date: 2024-10-16 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202410160900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "monthly_budgets",
        sa.Column("month_key", sa.String(length=7), primary_key=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("length(month_key) = 7", name="ck_monthly_budgets_key_len"),
    )

    op.create_table(
        "app_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table("app_settings")
    op.drop_table("monthly_budgets")
