from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import TargetSource


class MerchantCondition(BaseModel):
    enabled: bool = False
    match_type: Literal["contains", "exactly"] = "contains"
    value: str = Field(default="", max_length=200)


class AmountCondition(BaseModel):
    enabled: bool = False
    match_type: Literal["exactly", "between"] = "exactly"
    value_cents: Optional[int] = Field(default=None, ge=0)
    range_start_cents: Optional[int] = Field(default=None, ge=0)
    range_end_cents: Optional[int] = Field(default=None, ge=0)
    direction: Optional[Literal["expenses", "income"]] = None


class DayOfMonthCondition(BaseModel):
    enabled: bool = False
    match_type: Literal["exactly", "between"] = "exactly"
    value: Optional[int] = Field(default=None, ge=1, le=31)
    range_start: Optional[int] = Field(default=None, ge=1, le=31)
    range_end: Optional[int] = Field(default=None, ge=1, le=31)


class AccountCondition(BaseModel):
    enabled: bool = False
    link_id: Optional[int] = None


class RuleConditions(BaseModel):
    merchant: MerchantCondition = Field(default_factory=MerchantCondition)
    amount: AmountCondition = Field(default_factory=AmountCondition)
    day_of_month: DayOfMonthCondition = Field(default_factory=DayOfMonthCondition)
    account: AccountCondition = Field(default_factory=AccountCondition)


class SetCategoryAction(BaseModel):
    enabled: bool = False
    category_id: Optional[int] = None


class TextAction(BaseModel):
    enabled: bool = False
    value: str = Field(default="", max_length=500)


class TagsAction(BaseModel):
    enabled: bool = False
    tag_ids: list[int] = Field(default_factory=list)


class RuleActions(BaseModel):
    set_category: SetCategoryAction = Field(default_factory=SetCategoryAction)
    rename_merchant: TextAction = Field(default_factory=TextAction)
    set_note: TextAction = Field(default_factory=TextAction)
    add_tags: TagsAction = Field(default_factory=TagsAction)


class RuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True
    applies_to_history: bool = False
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: RuleActions = Field(default_factory=RuleActions)


class RuleOrderIn(BaseModel):
    rule_ids: list[int]


class RecalculateSpendingIn(BaseModel):
    months: list[str] = Field(..., min_length=1)


class CategoryTargetIn(BaseModel):
    category_name: str = Field(..., min_length=1, max_length=50)
    target_cents: int = Field(default=0, ge=0)
    is_tax_deductible: bool = False


class GroupTargetIn(BaseModel):
    group_name: str = Field(..., min_length=1, max_length=50)
    target_source: TargetSource = TargetSource.group
    target_cents: int = Field(default=0, ge=0)
    is_tax_deductible: bool = False
    categories: list[CategoryTargetIn] = Field(default_factory=list)


class SpendingTargetsIn(BaseModel):
    month: str
    groups: list[GroupTargetIn] = Field(..., min_length=1)


class CompositePartIn(BaseModel):
    category_name: str = Field(..., min_length=1, max_length=50)
    weight: Decimal = Field(..., gt=0, le=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    group_id: int
    description: Optional[str] = None
    order: int = 0
    composite: list[CompositePartIn] = Field(default_factory=list)

    @model_validator(mode="after")
    def _weights_sum_to_100(self) -> "CategoryIn":
        if self.composite:
            total = sum((part.weight for part in self.composite), Decimal("0"))
            if total != Decimal("100"):
                raise ValueError("Composite weights must sum to 100")
        return self


class CategoryGroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None


class ManualTransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: date
    amount_cents: int
    merchant_name: Optional[str] = Field(default=None, max_length=200)
    payee: Optional[str] = Field(default=None, max_length=200)
    currency_code: str = Field(default="USD", min_length=3, max_length=3)
    account_name: Optional[str] = Field(default=None, max_length=120)
    budget_id: Optional[int] = None
    category_id: Optional[int] = None
    notes: Optional[str] = None

    @field_validator("currency_code")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class BudgetTransactionPatch(BaseModel):
    category_id: Optional[int] = None
    merchant_name: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    tags: Optional[list[str]] = None
