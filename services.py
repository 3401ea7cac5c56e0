from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from auth import hash_password, verify_password
from errors import Conflict, Forbidden, InvalidInput, NotFound
from models import (
    DEFAULT_CATEGORIES,
    UNCATEGORISED,
    Budget,
    Expense,
    Income,
    Summary,
    User,
    UserCategory,
)
from periods import validate_month
from query_builder import QuerySpec, apply_query_spec, json_key_path
from schemas import (
    BudgetIn,
    BudgetUpdate,
    ExpenseIn,
    ExpenseUpdate,
    IncomeIn,
    IncomeUpdate,
    LoginIn,
    SignupIn,
    UserUpdate,
)


logger = logging.getLogger(__name__)

MAX_CATEGORY_LENGTH = 50
SPLIT_TOLERANCE = 0.005


def _money(value: float) -> float:
    return round(value, 2)


def expense_total(product_details: dict[str, float]) -> float:
    total = _money(sum(product_details.values()))
    if not math.isfinite(total):
        raise InvalidInput("productDetails add up to more than can be stored")
    return total


def find_unknown_categories(
    split_allocation: dict[str, float], declared: Iterable[str]
) -> list[str]:
    """Return the split-allocation keys that are not declared categories."""
    known = set(declared)
    return [key for key in split_allocation if key not in known]


def _closest_category(label: str, declared: Iterable[str]) -> Optional[str]:
    label_lower = label.lower()
    best_distance: Optional[int] = None
    best: Optional[str] = None
    for name in declared:
        dist = int(Levenshtein.distance(label_lower, name.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = name
    if best_distance is not None and best_distance <= 2:
        return best
    return None


def unknown_categories_error(
    unknown: list[str], declared: list[str]
) -> InvalidInput:
    described = []
    for label in unknown:
        suggestion = _closest_category(label, declared)
        if suggestion:
            described.append(f"'{label}' (did you mean '{suggestion}'?)")
        else:
            described.append(f"'{label}'")
    noun = "Category" if len(unknown) == 1 else "Categories"
    verb = "is" if len(unknown) == 1 else "are"
    return InvalidInput(f"{noun} {', '.join(described)} {verb} not one of your categories")


def clean_category_label(label: Optional[str]) -> str:
    name = (label or "").strip()
    if not name:
        raise InvalidInput("Provide a category")
    if len(name) > MAX_CATEGORY_LENGTH:
        raise InvalidInput(
            f"Category names cannot exceed {MAX_CATEGORY_LENGTH} characters"
        )
    json_key_path(name)
    return name


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def signup(self, data: SignupIn) -> User:
        email = data.email.lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise Conflict("Email already registered")
        user = User(
            name=data.name,
            email=email,
            password_hash=hash_password(data.password),
        )
        user.categories = [UserCategory(name=name) for name in DEFAULT_CATEGORIES]
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict("Email already registered") from exc
        self.session.refresh(user)
        logger.info(f"user_signup: user_id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        user = self.session.scalar(
            select(User).where(User.email == data.email.lower())
        )
        if not user or not verify_password(data.password, user.password_hash):
            raise Forbidden("Invalid email or password")
        return user

    def list_all(self) -> list[User]:
        stmt = select(User).options(selectinload(User.categories)).order_by(User.id)
        return self.session.scalars(stmt).all()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def update(self, user_id: int, data: UserUpdate) -> User:
        user = self.get(user_id)
        if data.name is not None:
            user.name = data.name
        if data.income is not None:
            user.income = data.income
        self.session.commit()
        self.session.refresh(user)
        return user

    def delete(self, user_id: int) -> None:
        user = self.get(user_id)
        self.session.delete(user)
        self.session.commit()
        logger.info(f"user_deleted: user_id={user_id}")


@dataclass
class CategoryRemoval:
    categories: list[str]
    modified_count: int
    expense_ids: list[int]


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _user(self) -> User:
        user = self.session.get(User, self.user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def list_names(self) -> list[str]:
        return self._user().category_names

    def add(self, label: Optional[str]) -> list[str]:
        name = clean_category_label(label)
        user = self._user()
        if name not in user.category_names:
            user.categories.append(UserCategory(name=name))
            try:
                self.session.commit()
            except IntegrityError:
                # Added concurrently by another request; the set already holds it.
                self.session.rollback()
        return user.category_names

    def remove(self, label: Optional[str]) -> CategoryRemoval:
        name = clean_category_label(label)
        if name == UNCATEGORISED:
            raise InvalidInput(f"The {UNCATEGORISED} category cannot be removed")
        user = self._user()

        for category in list(user.categories):
            if category.name == name:
                user.categories.remove(category)
        self.session.flush()

        expense_ids = self._move_to_uncategorised(name)
        if expense_ids and UNCATEGORISED not in user.category_names:
            user.categories.append(UserCategory(name=UNCATEGORISED))
        self.session.commit()
        logger.info(
            f"category_removed: user_id={self.user_id} category={name} "
            f"expenses_modified={len(expense_ids)}"
        )
        return CategoryRemoval(
            categories=user.category_names,
            modified_count=len(expense_ids),
            expense_ids=expense_ids,
        )

    def _move_to_uncategorised(self, name: str) -> list[int]:
        """Fold ``name`` into Uncategorised on every expense of this user.

        One UPDATE statement rewrites each matching row inside the store, so
        no row is ever observed with both keys present.
        """
        source = json_key_path(name)
        target = json_key_path(UNCATEGORISED)
        moved = func.json_remove(
            func.json_set(
                Expense.split_allocation,
                target,
                func.coalesce(func.json_extract(Expense.split_allocation, target), 0)
                + func.json_extract(Expense.split_allocation, source),
            ),
            source,
        )
        stmt = (
            update(Expense)
            .where(
                Expense.user_id == self.user_id,
                func.json_type(Expense.split_allocation, source).is_not(None),
            )
            .values(split_allocation=moved, updated_at=datetime.utcnow())
            .returning(Expense.id)
            .execution_options(synchronize_session=False)
        )
        expense_ids = sorted(self.session.scalars(stmt).all())

        touched = set(expense_ids)
        for obj in list(self.session.identity_map.values()):
            if isinstance(obj, Expense) and obj.id in touched:
                self.session.expire(obj, ["split_allocation", "updated_at"])
        return expense_ids


class ExpenseService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _declared_categories(self) -> list[str]:
        user = self.session.get(User, self.user_id)
        if not user:
            raise NotFound("User not found")
        return user.category_names

    def _check_split(self, split_allocation: dict[str, float], total: float) -> None:
        declared = self._declared_categories()
        unknown = find_unknown_categories(split_allocation, declared)
        if unknown:
            raise unknown_categories_error(unknown, declared)
        allocated = sum(split_allocation.values())
        if not math.isclose(allocated, total, abs_tol=SPLIT_TOLERANCE):
            raise InvalidInput(
                f"splitAllocation must add up to the total {total:g}, got {allocated:g}"
            )

    def list(self, spec: QuerySpec) -> list[Expense]:
        stmt = select(Expense).where(Expense.user_id == self.user_id)
        stmt = apply_query_spec(stmt, Expense, spec)
        return self.session.scalars(stmt).all()

    def get(self, expense_id: int) -> Expense:
        expense = self.session.scalar(
            select(Expense).where(
                Expense.id == expense_id, Expense.user_id == self.user_id
            )
        )
        if not expense:
            raise NotFound("Expense not found")
        return expense

    def create(self, data: ExpenseIn) -> Expense:
        total = expense_total(data.product_details)
        split_allocation = dict(data.split_allocation or {}) or {UNCATEGORISED: total}
        self._check_split(split_allocation, total)
        expense = Expense(
            user_id=self.user_id,
            description=data.description,
            product_details=dict(data.product_details),
            split_allocation=split_allocation,
            total=total,
        )
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def update(self, expense_id: int, data: ExpenseUpdate) -> Expense:
        expense = self.get(expense_id)
        product_details = dict(data.product_details or expense.product_details)
        split_allocation = dict(data.split_allocation or expense.split_allocation)
        total = expense_total(product_details)
        self._check_split(split_allocation, total)

        if data.description is not None:
            expense.description = data.description
        expense.product_details = product_details
        expense.split_allocation = split_allocation
        expense.total = total
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()


class IncomeService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, spec: QuerySpec) -> list[Income]:
        stmt = select(Income).where(Income.user_id == self.user_id)
        stmt = apply_query_spec(stmt, Income, spec)
        return self.session.scalars(stmt).all()

    def get(self, income_id: int) -> Income:
        income = self.session.scalar(
            select(Income).where(Income.id == income_id, Income.user_id == self.user_id)
        )
        if not income:
            raise NotFound("Income not found")
        return income

    def create(self, data: IncomeIn) -> Income:
        income = Income(
            user_id=self.user_id,
            description=data.description,
            category=data.category,
            amount=data.amount,
        )
        self.session.add(income)
        self.session.commit()
        self.session.refresh(income)
        return income

    def update(self, income_id: int, data: IncomeUpdate) -> Income:
        income = self.get(income_id)
        if data.description is not None:
            income.description = data.description
        if data.category is not None:
            income.category = data.category
        if data.amount is not None:
            income.amount = data.amount
        self.session.commit()
        self.session.refresh(income)
        return income

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        self.session.delete(income)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, spec: QuerySpec) -> list[Budget]:
        stmt = select(Budget).where(Budget.user_id == self.user_id)
        stmt = apply_query_spec(stmt, Budget, spec)
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(Budget.id == budget_id, Budget.user_id == self.user_id)
        )
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        budget = Budget(
            user_id=self.user_id,
            description=data.description,
            month=validate_month(data.month),
            limits=dict(data.limits),
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdate) -> Budget:
        budget = self.get(budget_id)
        if data.description is not None:
            budget.description = data.description
        if data.month is not None:
            budget.month = validate_month(data.month)
        if data.limits is not None:
            budget.limits = dict(data.limits)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()


class SummaryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id

    def latest(self, month: Optional[str] = None) -> Summary:
        stmt = (
            select(Summary)
            .where(Summary.user_id == self.user_id)
            .order_by(Summary.month.desc())
            .limit(1)
        )
        if month:
            stmt = stmt.where(Summary.month == validate_month(month))
        summary = self.session.scalar(stmt)
        if not summary:
            raise NotFound("Summary not found")
        return summary

    def list_all(self, month: Optional[str] = None) -> list[Summary]:
        stmt = select(Summary).order_by(Summary.month.desc(), Summary.user_id.asc())
        if month:
            stmt = stmt.where(Summary.month == validate_month(month))
        return self.session.scalars(stmt).all()
