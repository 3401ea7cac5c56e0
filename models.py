from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


UNCATEGORISED = "Uncategorised"

DEFAULT_CATEGORIES = (
    "Groceries",
    "Leisure",
    "Electronics",
    "Utilities",
    "Health",
    UNCATEGORISED,
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"
    # Ids are never reused.
    __table_args__ = {"sqlite_autoincrement": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(15), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    income: Mapped[float] = mapped_column(Float, default=0, nullable=False)

    categories: Mapped[list["UserCategory"]] = relationship(
        "UserCategory",
        back_populates="user",
        order_by="UserCategory.id",
        cascade="all, delete-orphan",
    )
    expenses: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="user", cascade="all, delete-orphan"
    )
    incomes: Mapped[list["Income"]] = relationship(
        "Income", back_populates="user", cascade="all, delete-orphan"
    )
    budgets: Mapped[list["Budget"]] = relationship(
        "Budget", back_populates="user", cascade="all, delete-orphan"
    )
    summaries: Mapped[list["Summary"]] = relationship(
        "Summary", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def category_names(self) -> list[str]:
        return [category.name for category in self.categories]


class UserCategory(Base):
    __tablename__ = "user_categories"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_user_category_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="categories")


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(100), nullable=False)
    product_details: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False)
    split_allocation: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False)
    total: Mapped[float] = mapped_column(Float, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="expenses")

    __table_args__ = (
        Index("ix_expenses_user_created", "user_id", "created_at"),
        Index("ix_expenses_description", "description"),
        CheckConstraint("total >= 0", name="ck_expenses_total_positive"),
    )


class Income(Base, TimestampMixin):
    __tablename__ = "incomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(
        String(50), nullable=False, default=UNCATEGORISED
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="incomes")

    __table_args__ = (
        Index("ix_incomes_user_created", "user_id", "created_at"),
        Index("ix_incomes_category", "category"),
        CheckConstraint("amount > 0", name="ck_incomes_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(String(100))
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    limits: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="budgets")

    __table_args__ = (Index("ix_budgets_user_month", "user_id", "month"),)


class Summary(Base, TimestampMixin):
    __tablename__ = "summaries"
    __table_args__ = (
        UniqueConstraint("user_id", "month", name="uq_summary_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    expense_total: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    expense_by_category: Mapped[list[dict]] = mapped_column(
        JSON, nullable=False, default=list
    )
    income_total: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    income_by_category: Mapped[list[dict]] = mapped_column(
        JSON, nullable=False, default=list
    )

    user: Mapped["User"] = relationship("User", back_populates="summaries")
