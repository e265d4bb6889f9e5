"""initial budget schema

Revision ID: 202610010900
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610010900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _txn_type():
    return sa.Enum("income", "expense", name="transactiontype")


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("label", sa.String(length=50), nullable=False),
        sa.Column("type", _txn_type(), nullable=False),
        sa.Column("color", sa.String(length=20), nullable=False),
        sa.Column("icon", sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("label", name="uq_categories_label"),
    )

    op.create_table(
        "recurring_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("type", _txn_type(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column("day_of_month", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date()),
        sa.Column("duration_months", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents >= 0", name="ck_recurring_amount_positive"),
        sa.CheckConstraint(
            "day_of_month BETWEEN 1 AND 31", name="ck_recurring_day_of_month"
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", _txn_type(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "status",
            sa.Enum("confirmed", "planned", "skipped", name="transactionstatus"),
        ),
        sa.Column(
            "recurring_id",
            sa.Integer(),
            sa.ForeignKey("recurring_items.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
        sa.CheckConstraint(
            "(type = 'expense' AND amount_cents <= 0)"
            " OR (type = 'income' AND amount_cents >= 0)",
            name="ck_transactions_amount_sign",
        ),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_recurring_date", "transactions", ["recurring_id", "date"]
    )

    op.create_table(
        "planned_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("type", _txn_type(), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="SET NULL"),
        ),
        *_timestamps(),
    )
    op.create_index("ix_planned_items_date", "planned_items", ["date"])

    op.create_table(
        "savings_goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("target_cents", sa.Integer(), nullable=False),
        sa.Column("current_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deadline", sa.Date()),
        *_timestamps(),
        sa.CheckConstraint("target_cents >= 0", name="ck_savings_target_positive"),
    )

    op.create_table(
        "settings",
        sa.Column("key", sa.String(length=50), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
    )


def downgrade():
    op.drop_table("settings")
    op.drop_table("savings_goals")
    op.drop_index("ix_planned_items_date", table_name="planned_items")
    op.drop_table("planned_items")
    op.drop_index("ix_transactions_recurring_date", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("recurring_items")
    op.drop_table("categories")
