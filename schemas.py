import math
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from models import UNCATEGORISED, Summary, User
from periods import MONTH_PATTERN


EMAIL_PATTERN = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


def _clean_mapping(value: Optional[dict[str, float]]) -> Optional[dict[str, float]]:
    if value is None:
        return None
    cleaned: dict[str, float] = {}
    for key, amount in value.items():
        name = key.strip()
        if not name:
            raise ValueError("keys must not be blank")
        if not math.isfinite(amount):
            raise ValueError(f"'{name}' must be a finite number")
        if amount < 0:
            raise ValueError(f"'{name}' must not be negative")
        cleaned[name] = cleaned.get(name, 0) + amount
    return cleaned


class SignupIn(ApiModel):
    name: str = Field(..., min_length=2, max_length=15)
    email: str = Field(..., max_length=254, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=20)


class LoginIn(ApiModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=8, max_length=20)


class UserUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=2, max_length=15)
    income: Optional[float] = Field(None, ge=0)


class CategoryIn(ApiModel):
    category: str = Field(..., max_length=50)


class ExpenseIn(ApiModel):
    description: str = Field(..., min_length=1, max_length=100)
    product_details: dict[str, float] = Field(..., min_length=1)
    split_allocation: Optional[dict[str, float]] = None

    @field_validator("product_details", "split_allocation")
    @classmethod
    def check_mappings(cls, value):
        return _clean_mapping(value)


class ExpenseUpdate(ApiModel):
    description: Optional[str] = Field(None, min_length=1, max_length=100)
    product_details: Optional[dict[str, float]] = Field(None, min_length=1)
    split_allocation: Optional[dict[str, float]] = Field(None, min_length=1)

    @field_validator("product_details", "split_allocation")
    @classmethod
    def check_mappings(cls, value):
        return _clean_mapping(value)


class IncomeIn(ApiModel):
    description: str = Field(..., min_length=1, max_length=100)
    category: str = Field(UNCATEGORISED, min_length=1, max_length=50)
    amount: float = Field(..., gt=0, allow_inf_nan=False)


class IncomeUpdate(ApiModel):
    description: Optional[str] = Field(None, min_length=1, max_length=100)
    category: Optional[str] = Field(None, min_length=1, max_length=50)
    amount: Optional[float] = Field(None, gt=0, allow_inf_nan=False)


class BudgetIn(ApiModel):
    description: Optional[str] = Field(None, max_length=100)
    month: str = Field(..., pattern=MONTH_PATTERN.pattern)
    limits: dict[str, float] = Field(..., min_length=1)

    @field_validator("limits")
    @classmethod
    def check_limits(cls, value):
        return _clean_mapping(value)


class BudgetUpdate(ApiModel):
    description: Optional[str] = Field(None, max_length=100)
    month: Optional[str] = Field(None, pattern=MONTH_PATTERN.pattern)
    limits: Optional[dict[str, float]] = Field(None, min_length=1)

    @field_validator("limits")
    @classmethod
    def check_limits(cls, value):
        return _clean_mapping(value)


class RecordOut(ApiModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    created_at: datetime
    updated_at: datetime


class ExpenseOut(RecordOut):
    description: str
    product_details: dict[str, float]
    split_allocation: dict[str, float]
    total: float


class IncomeOut(RecordOut):
    description: str
    category: str
    amount: float


class BudgetOut(RecordOut):
    description: Optional[str]
    month: str
    limits: dict[str, float]


class UserOut(ApiModel):
    id: int
    name: str
    email: str
    income: float
    categories: list[str]
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            income=user.income,
            categories=user.category_names,
            created_at=user.created_at,
        )


class CategoryTotal(ApiModel):
    category: str
    total: float


class AggregateOut(ApiModel):
    total: float
    by_category: list[CategoryTotal]


class SummaryOut(ApiModel):
    id: int
    user_id: int
    month: str
    expense: AggregateOut
    income: AggregateOut
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_summary(cls, summary: Summary) -> "SummaryOut":
        return cls(
            id=summary.id,
            user_id=summary.user_id,
            month=summary.month,
            expense=AggregateOut(
                total=summary.expense_total,
                by_category=summary.expense_by_category,
            ),
            income=AggregateOut(
                total=summary.income_total,
                by_category=summary.income_by_category,
            ),
            created_at=summary.created_at,
            updated_at=summary.updated_at,
        )
