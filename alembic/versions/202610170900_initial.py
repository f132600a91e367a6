"""initial household schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None


MONEY = sa.Numeric(12, 2)

member_role = sa.Enum("admin", "member", name="memberrole")
transaction_status = sa.Enum("active", "pending", "deleted", name="transactionstatus")
transaction_source = sa.Enum(
    "manual", "statement", "ticket", "ocr", "file", name="transactionsource"
)
rule_field = sa.Enum("description", "amount", "date", name="rulefield")
budget_period = sa.Enum("monthly", "weekly", "biweekly", "custom", name="budgetperiod")
change_type = sa.Enum(
    "created", "updated", "deleted", "category_changed", name="changetype"
)
notification_type = sa.Enum("info", "alert", "reminder", name="notificationtype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("invite_code", sa.String(length=32), unique=True),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("email", sa.String(length=254), nullable=False, unique=True),
        sa.Column("role", member_role, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("banks_json", sa.Text()),
        *_timestamps(),
    )
    op.create_index("ix_users_team_active", "users", ["team_id", "is_active"])

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("icon", sa.String(length=16)),
        sa.Column("color", sa.String(length=9)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_categories_team_active", "categories", ["team_id", "is_active"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("bank", sa.String(length=60)),
        sa.Column("source", transaction_source, nullable=False),
        sa.Column("status", transaction_status, nullable=False),
        sa.Column(
            "is_ai_suggested", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_team_status_date",
        "transactions",
        ["team_id", "status", "date"],
    )
    op.create_index(
        "ix_transactions_team_category_date",
        "transactions",
        ["team_id", "category_id", "date"],
    )

    op.create_table(
        "rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("field", rule_field, nullable=False),
        sa.Column("match_text", sa.String(length=200), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_rules_team_active", "rules", ["team_id", "is_active", "id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("period", budget_period, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_budgets_amount_positive"),
    )
    op.create_index("ix_budgets_team_active", "budgets", ["team_id", "is_active"])

    op.create_table(
        "transaction_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("change_type", change_type, nullable=False),
        sa.Column("old_value", sa.JSON()),
        sa.Column("new_value", sa.JSON()),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_audit_team_transaction",
        "transaction_audit_log",
        ["team_id", "transaction_id", "changed_at"],
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("team_id", sa.Integer(), sa.ForeignKey("teams.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id")),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("type", notification_type, nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("read_at", sa.DateTime()),
        sa.Column(
            "related_transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")
        ),
        sa.Column("related_category_id", sa.Integer(), sa.ForeignKey("categories.id")),
    )
    op.create_index(
        "ix_notifications_team_type_created",
        "notifications",
        ["team_id", "type", "created_at"],
    )
    op.create_index(
        "ix_notifications_user_read", "notifications", ["user_id", "is_read"]
    )


def downgrade() -> None:
    op.drop_index("ix_notifications_user_read", table_name="notifications")
    op.drop_index("ix_notifications_team_type_created", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_audit_team_transaction", table_name="transaction_audit_log")
    op.drop_table("transaction_audit_log")
    op.drop_index("ix_budgets_team_active", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_rules_team_active", table_name="rules")
    op.drop_table("rules")
    op.drop_index("ix_transactions_team_category_date", table_name="transactions")
    op.drop_index("ix_transactions_team_status_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_categories_team_active", table_name="categories")
    op.drop_table("categories")
    op.drop_index("ix_users_team_active", table_name="users")
    op.drop_table("users")
    op.drop_table("teams")
