import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionStatus(str, Enum):
    pending = "pending"
    posted = "posted"


class TargetSource(str, Enum):
    group = "group"
    category = "category"


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    return json.loads(raw)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    rule_order_json: Mapped[Optional[str]] = mapped_column(Text)

    links: Mapped[list["BudgetAccountLink"]] = relationship(
        "BudgetAccountLink", back_populates="budget", cascade="all, delete-orphan"
    )

    @property
    def rule_order(self) -> list[int]:
        return [int(rule_id) for rule_id in _load_json(self.rule_order_json, [])]

    @rule_order.setter
    def rule_order(self, rule_ids: list[int]) -> None:
        self.rule_order_json = json.dumps([int(rule_id) for rule_id in rule_ids])


class CategoryGroup(Base, TimestampMixin):
    __tablename__ = "category_groups"
    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_category_group_budget_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # NULL budget_id marks the built-in set shared by every budget
    budget_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budgets.id"))
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="group", order_by="Category.order, Category.id"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint(
            "group_id", "budget_id", "name", name="uq_category_group_budget_name"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("category_groups.id"), nullable=False
    )
    budget_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budgets.id"))
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_composite: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    composite_json: Mapped[Optional[str]] = mapped_column(Text)

    group: Mapped["CategoryGroup"] = relationship(
        "CategoryGroup", back_populates="categories"
    )

    @property
    def composite_parts(self) -> list[dict[str, Any]]:
        return _load_json(self.composite_json, [])


class ConnectionItem(Base, TimestampMixin):
    __tablename__ = "connection_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_item_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True
    )
    institution_name: Mapped[Optional[str]] = mapped_column(String(120))
    access_token: Mapped[str] = mapped_column(String(255), nullable=False)
    next_cursor: Mapped[Optional[str]] = mapped_column(Text)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    accounts: Mapped[list["AggregatorAccount"]] = relationship(
        "AggregatorAccount", back_populates="item", cascade="all, delete-orphan"
    )


class AggregatorAccount(Base, TimestampMixin):
    __tablename__ = "aggregator_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    connection_item_id: Mapped[int] = mapped_column(
        ForeignKey("connection_items.id"), nullable=False
    )
    external_account_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True
    )
    name: Mapped[Optional[str]] = mapped_column(String(120))
    mask: Mapped[Optional[str]] = mapped_column(String(8))
    currency_code: Mapped[Optional[str]] = mapped_column(String(3))

    item: Mapped["ConnectionItem"] = relationship(
        "ConnectionItem", back_populates="accounts"
    )
    links: Mapped[list["BudgetAccountLink"]] = relationship(
        "BudgetAccountLink", back_populates="account"
    )


class BudgetAccountLink(Base, TimestampMixin):
    __tablename__ = "budget_account_links"
    __table_args__ = (
        UniqueConstraint("budget_id", "account_id", name="uq_link_budget_account"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("aggregator_accounts.id"), nullable=False
    )

    budget: Mapped["Budget"] = relationship("Budget", back_populates="links")
    account: Mapped["AggregatorAccount"] = relationship(
        "AggregatorAccount", back_populates="links"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_tx_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("aggregator_accounts.id")
    )
    manual_account_name: Mapped[Optional[str]] = mapped_column(String(120))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    # signed, aggregator convention: positive is money leaving the account
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False, default=TransactionStatus.posted
    )
    merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    payee: Mapped[Optional[str]] = mapped_column(String(200))
    currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    provider_category: Mapped[Optional[str]] = mapped_column(String(120))
    provider_category_confidence: Mapped[Optional[str]] = mapped_column(String(30))
    raw_json: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship("Category")
    account: Mapped[Optional["AggregatorAccount"]] = relationship("AggregatorAccount")
    projections: Mapped[list["BudgetTransaction"]] = relationship(
        "BudgetTransaction", back_populates="transaction"
    )

    __table_args__ = (
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_date", "date"),
    )

    @property
    def raw(self) -> dict[str, Any]:
        return _load_json(self.raw_json, {})


budget_transaction_tags = Table(
    "budget_transaction_tags",
    Base.metadata,
    Column(
        "budget_transaction_id",
        Integer,
        ForeignKey("budget_transactions.id"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("budget_id", "name", name="uq_tag_budget_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)


class BudgetTransaction(Base, TimestampMixin):
    __tablename__ = "budget_transactions"
    __table_args__ = (
        UniqueConstraint(
            "budget_id", "transaction_id", name="uq_budget_transaction_scope"
        ),
        Index("ix_budget_transactions_budget", "budget_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    link_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_account_links.id")
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    payee: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    attachments_json: Mapped[Optional[str]] = mapped_column(Text)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="projections"
    )
    category: Mapped[Optional["Category"]] = relationship("Category")
    tags: Mapped[list["Tag"]] = relationship("Tag", secondary=budget_transaction_tags)

    @property
    def attachments(self) -> list[str]:
        return _load_json(self.attachments_json, [])


class RecurringGroup(Base, TimestampMixin):
    __tablename__ = "recurring_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_tx_id: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)
    external_stream_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("aggregator_accounts.id")
    )
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    frequency: Mapped[Optional[str]] = mapped_column(String(30))
    transaction_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    raw_json: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    @property
    def transaction_ids(self) -> list[int]:
        return [int(txn_id) for txn_id in _load_json(self.transaction_ids_json, [])]

    @transaction_ids.setter
    def transaction_ids(self, ids: list[int]) -> None:
        self.transaction_ids_json = json.dumps([int(txn_id) for txn_id in ids])


class Rule(Base, TimestampMixin):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    applies_to_history: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    conditions_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    actions_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    __table_args__ = (Index("ix_rules_budget_active", "budget_id", "is_active"),)


class SpendingGroupRollup(Base, TimestampMixin):
    __tablename__ = "spending_group_rollups"
    __table_args__ = (
        UniqueConstraint(
            "budget_id", "month", "group_name", name="uq_spending_group_month"
        ),
        Index("ix_spending_group_budget_month", "budget_id", "month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    group_name: Mapped[str] = mapped_column(String(50), nullable=False)
    target_source: Mapped[TargetSource] = mapped_column(
        SAEnum(TargetSource), nullable=False, default=TargetSource.group
    )
    actual_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_tax_deductible: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    categories: Mapped[list["SpendingCategoryRollup"]] = relationship(
        "SpendingCategoryRollup",
        back_populates="group_rollup",
        cascade="all, delete-orphan",
        order_by="SpendingCategoryRollup.id",
    )


class SpendingCategoryRollup(Base, TimestampMixin):
    __tablename__ = "spending_category_rollups"
    __table_args__ = (
        UniqueConstraint(
            "group_rollup_id", "category_name", name="uq_spending_category_group"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_rollup_id: Mapped[int] = mapped_column(
        ForeignKey("spending_group_rollups.id"), nullable=False
    )
    category_name: Mapped[str] = mapped_column(String(50), nullable=False)
    actual_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_tax_deductible: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    group_rollup: Mapped["SpendingGroupRollup"] = relationship(
        "SpendingGroupRollup", back_populates="categories"
    )
