"""initial schema

Revision ID: 202601100900
Revises:
Create Date: 2026-01-10 09:00:00.000000

"""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from alembic import op

from seed import DEFAULT_CATEGORY_GROUPS


revision = "202601100900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("rule_order_json", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "category_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id")),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_category_group_budget_name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id", sa.Integer(), sa.ForeignKey("category_groups.id"), nullable=False
        ),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id")),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_composite", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("composite_json", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "group_id", "budget_id", "name", name="uq_category_group_budget_name"
        ),
    )

    op.create_table(
        "connection_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_item_id", sa.String(length=100), nullable=False, unique=True),
        sa.Column("institution_name", sa.String(length=120)),
        sa.Column("access_token", sa.String(length=255), nullable=False),
        sa.Column("next_cursor", sa.Text()),
        sa.Column("last_synced_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "aggregator_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "connection_item_id",
            sa.Integer(),
            sa.ForeignKey("connection_items.id"),
            nullable=False,
        ),
        sa.Column(
            "external_account_id", sa.String(length=100), nullable=False, unique=True
        ),
        sa.Column("name", sa.String(length=120)),
        sa.Column("mask", sa.String(length=8)),
        sa.Column("currency_code", sa.String(length=3)),
        *_timestamps(),
    )

    op.create_table(
        "budget_account_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("aggregator_accounts.id"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "account_id", name="uq_link_budget_account"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_tx_id", sa.String(length=40), nullable=False, unique=True),
        sa.Column("external_id", sa.String(length=100), unique=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("aggregator_accounts.id")),
        sa.Column("manual_account_name", sa.String(length=120)),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "posted", name="transactionstatus"),
            nullable=False,
            server_default="posted",
        ),
        sa.Column("merchant_name", sa.String(length=200)),
        sa.Column("payee", sa.String(length=200)),
        sa.Column(
            "currency_code", sa.String(length=3), nullable=False, server_default="USD"
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("provider_category", sa.String(length=120)),
        sa.Column("provider_category_confidence", sa.String(length=30)),
        sa.Column("raw_json", sa.Text()),
        *_timestamps(),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("budget_id", "name", name="uq_tag_budget_name"),
    )

    op.create_table(
        "budget_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id"),
            nullable=False,
        ),
        sa.Column("link_id", sa.Integer(), sa.ForeignKey("budget_account_links.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("merchant_name", sa.String(length=200)),
        sa.Column("payee", sa.String(length=200)),
        sa.Column("notes", sa.Text()),
        sa.Column("attachments_json", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "transaction_id", name="uq_budget_transaction_scope"
        ),
    )
    op.create_index(
        "ix_budget_transactions_budget", "budget_transactions", ["budget_id"]
    )

    op.create_table(
        "budget_transaction_tags",
        sa.Column(
            "budget_transaction_id",
            sa.Integer(),
            sa.ForeignKey("budget_transactions.id"),
            primary_key=True,
        ),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id"), primary_key=True),
    )

    op.create_table(
        "recurring_groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_tx_id", sa.String(length=40), nullable=False, unique=True),
        sa.Column("external_stream_id", sa.String(length=100), unique=True),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("aggregator_accounts.id")),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("merchant_name", sa.String(length=200)),
        sa.Column("amount_cents", sa.Integer()),
        sa.Column("frequency", sa.String(length=30)),
        sa.Column(
            "transaction_ids_json", sa.Text(), nullable=False, server_default="[]"
        ),
        sa.Column("raw_json", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "rules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "applies_to_history", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("conditions_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("actions_json", sa.Text(), nullable=False, server_default="{}"),
        *_timestamps(),
    )
    op.create_index("ix_rules_budget_active", "rules", ["budget_id", "is_active"])

    op.create_table(
        "spending_group_rollups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("group_name", sa.String(length=50), nullable=False),
        sa.Column(
            "target_source",
            sa.Enum("group", "category", name="targetsource"),
            nullable=False,
            server_default="group",
        ),
        sa.Column("actual_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_tax_deductible", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "budget_id", "month", "group_name", name="uq_spending_group_month"
        ),
    )
    op.create_index(
        "ix_spending_group_budget_month",
        "spending_group_rollups",
        ["budget_id", "month"],
    )

    op.create_table(
        "spending_category_rollups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_rollup_id",
            sa.Integer(),
            sa.ForeignKey("spending_group_rollups.id"),
            nullable=False,
        ),
        sa.Column("category_name", sa.String(length=50), nullable=False),
        sa.Column("actual_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_tax_deductible", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.UniqueConstraint(
            "group_rollup_id", "category_name", name="uq_spending_category_group"
        ),
    )

    _seed_categories()


def _seed_categories() -> None:
    bind = op.get_bind()
    now = datetime.utcnow()
    groups = sa.table(
        "category_groups",
        sa.column("id", sa.Integer),
        sa.column("name", sa.String),
        sa.column("description", sa.Text),
        sa.column("is_enabled", sa.Boolean),
        sa.column("order", sa.Integer),
        sa.column("created_at", sa.DateTime),
        sa.column("updated_at", sa.DateTime),
    )
    categories = sa.table(
        "categories",
        sa.column("group_id", sa.Integer),
        sa.column("name", sa.String),
        sa.column("description", sa.Text),
        sa.column("order", sa.Integer),
        sa.column("created_at", sa.DateTime),
        sa.column("updated_at", sa.DateTime),
    )
    for group_order, (group_name, group_desc, enabled, members) in enumerate(
        DEFAULT_CATEGORY_GROUPS
    ):
        result = bind.execute(
            groups.insert().values(
                name=group_name,
                description=group_desc,
                is_enabled=enabled,
                order=group_order,
                created_at=now,
                updated_at=now,
            )
        )
        group_id = result.inserted_primary_key[0]
        op.bulk_insert(
            categories,
            [
                {
                    "group_id": group_id,
                    "name": name,
                    "description": description,
                    "order": order,
                    "created_at": now,
                    "updated_at": now,
                }
                for order, (name, description) in enumerate(members)
            ],
        )


def downgrade() -> None:
    op.drop_table("spending_category_rollups")
    op.drop_index("ix_spending_group_budget_month", table_name="spending_group_rollups")
    op.drop_table("spending_group_rollups")
    op.drop_index("ix_rules_budget_active", table_name="rules")
    op.drop_table("rules")
    op.drop_table("recurring_groups")
    op.drop_table("budget_transaction_tags")
    op.drop_index("ix_budget_transactions_budget", table_name="budget_transactions")
    op.drop_table("budget_transactions")
    op.drop_table("tags")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("budget_account_links")
    op.drop_table("aggregator_accounts")
    op.drop_table("connection_items")
    op.drop_table("categories")
    op.drop_table("category_groups")
    op.drop_table("budgets")
