"""users, categories, expenses, incomes, budgets and summaries

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _owner():
    return sa.Column(
        "user_id",
        sa.Integer(),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=15), nullable=False),
        sa.Column("email", sa.String(length=254), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=100), nullable=False),
        sa.Column("income", sa.Float(), nullable=False, server_default="0"),
        *_timestamps(),
        sqlite_autoincrement=True,
    )

    op.create_table(
        "user_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_user_category_name"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("description", sa.String(length=100), nullable=False),
        sa.Column("product_details", sa.JSON(), nullable=False),
        sa.Column("split_allocation", sa.JSON(), nullable=False),
        sa.Column("total", sa.Float(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("total >= 0", name="ck_expenses_total_positive"),
    )
    op.create_index("ix_expenses_user_created", "expenses", ["user_id", "created_at"])
    op.create_index("ix_expenses_description", "expenses", ["description"])

    op.create_table(
        "incomes",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("description", sa.String(length=100), nullable=False),
        sa.Column(
            "category",
            sa.String(length=50),
            nullable=False,
            server_default="Uncategorised",
        ),
        sa.Column("amount", sa.Float(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_incomes_amount_positive"),
    )
    op.create_index("ix_incomes_user_created", "incomes", ["user_id", "created_at"])
    op.create_index("ix_incomes_category", "incomes", ["category"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("description", sa.String(length=100)),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("limits", sa.JSON(), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_budgets_user_month", "budgets", ["user_id", "month"])

    op.create_table(
        "summaries",
        sa.Column("id", sa.Integer(), primary_key=True),
        _owner(),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("expense_total", sa.Float(), nullable=False, server_default="0"),
        sa.Column("expense_by_category", sa.JSON(), nullable=False),
        sa.Column("income_total", sa.Float(), nullable=False, server_default="0"),
        sa.Column("income_by_category", sa.JSON(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_summary_user_month"),
    )


def downgrade():
    op.drop_table("summaries")
    op.drop_index("ix_budgets_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_incomes_category", table_name="incomes")
    op.drop_index("ix_incomes_user_created", table_name="incomes")
    op.drop_table("incomes")
    op.drop_index("ix_expenses_description", table_name="expenses")
    op.drop_index("ix_expenses_user_created", table_name="expenses")
    op.drop_table("expenses")
    op.drop_table("user_categories")
    op.drop_table("users")
