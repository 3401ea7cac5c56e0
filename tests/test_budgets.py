import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import NotFound
from query_builder import QueryParams, RecordKind, build_query
from schemas import BudgetIn, BudgetUpdate, IncomeIn, IncomeUpdate, SignupIn
from services import BudgetService, IncomeService, UserService


def _signup(session: Session, email: str = "ada@example.com"):
    return UserService(session).signup(
        SignupIn(name="Ada", email=email, password="correct-horse")
    )


def test_budget_month_must_be_year_dash_month() -> None:
    with pytest.raises(ValidationError):
        BudgetIn(month="2024-13", limits={"Groceries": 300})
    with pytest.raises(ValidationError):
        BudgetIn(month="March", limits={"Groceries": 300})


def test_budget_limits_must_be_non_negative_numbers() -> None:
    with pytest.raises(ValidationError):
        BudgetIn(month="2024-03", limits={"Groceries": None})
    with pytest.raises(ValidationError):
        BudgetIn(month="2024-03", limits={"Groceries": -5})
    with pytest.raises(ValidationError):
        BudgetIn(month="2024-03", limits={})


def test_budget_create_update_and_filter_by_month() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)
        service = BudgetService(session, user.id)
        march = service.create(
            BudgetIn(description="Spring", month="2024-03", limits={"Groceries": 300})
        )
        service.create(BudgetIn(month="2024-04", limits={"Leisure": 50}))

        updated = service.update(
            march.id, BudgetUpdate(limits={"Groceries": 250, "Health": 40})
        )
        only_march = service.list(
            build_query(QueryParams(month="2024-03"), RecordKind.budget)
        )

        assert updated.month == "2024-03"
        assert updated.description == "Spring"
        assert updated.limits == {"Groceries": 250, "Health": 40}
        assert [b.id for b in only_march] == [march.id]


def test_budget_delete_is_scoped_to_owner() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ada = _signup(session)
        bob = _signup(session, "bob@example.com")
        budget = BudgetService(session, ada.id).create(
            BudgetIn(month="2024-03", limits={"Groceries": 300})
        )

        with pytest.raises(NotFound, match="Budget not found"):
            BudgetService(session, bob.id).delete(budget.id)

        BudgetService(session, ada.id).delete(budget.id)
        with pytest.raises(NotFound):
            BudgetService(session, ada.id).get(budget.id)


def test_income_amount_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        IncomeIn(description="Refund", amount=0)
    with pytest.raises(ValidationError):
        IncomeUpdate(amount=float("inf"))


def test_income_defaults_to_uncategorised_and_updates_partially() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)
        service = IncomeService(session, user.id)
        income = service.create(IncomeIn(description="Gift", amount=40))

        assert income.category == "Uncategorised"

        updated = service.update(income.id, IncomeUpdate(category="Gifts"))

        assert updated.category == "Gifts"
        assert updated.amount == 40
