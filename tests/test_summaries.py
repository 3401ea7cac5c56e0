from datetime import datetime

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidInput, NotFound
from models import Summary
from periods import summary_period, validate_month
from schemas import ExpenseIn, IncomeIn, SignupIn
from services import ExpenseService, IncomeService, SummaryService, UserService
from summaries import Aggregate, SummaryAggregator, group_by_user, merge_summaries


def _signup(session: Session, email: str = "ada@example.com"):
    return UserService(session).signup(
        SignupIn(name="Ada", email=email, password="correct-horse")
    )


def test_summary_period_runs_from_first_of_month_to_now() -> None:
    now = datetime(2024, 3, 17, 22, 0, 5)

    period = summary_period(now)

    assert period.month == "2024-03"
    assert period.start == datetime(2024, 3, 1)
    assert period.end == now


def test_validate_month_requires_year_dash_month() -> None:
    assert validate_month(" 2024-11 ") == "2024-11"
    for bad in ("2024-13", "2024-1", "24-01", "", None):
        with pytest.raises(InvalidInput):
            validate_month(bad)


def test_group_by_user_sorts_categories_and_rounds() -> None:
    rows = [
        (1, "Leisure", 10.004),
        (1, "Groceries", 5.1),
        (2, "Health", 7),
        (1, "Groceries", 0.2),
    ]

    grouped = group_by_user(rows)

    assert grouped[1].total == 15.3
    assert grouped[1].by_category == [
        {"category": "Groceries", "total": 5.3},
        {"category": "Leisure", "total": 10.0},
    ]
    assert grouped[2] == Aggregate(total=7, by_category=[{"category": "Health", "total": 7}])


def test_merge_fills_missing_side_with_empty_aggregate() -> None:
    expenses = {2: Aggregate(total=50, by_category=[{"category": "Groceries", "total": 50}])}
    incomes = {1: Aggregate(total=10, by_category=[{"category": "Tips", "total": 10}])}

    merged = merge_summaries("2024-03", expenses, incomes)

    assert [m.user_id for m in merged] == [1, 2]
    assert merged[0].expense == Aggregate()
    assert merged[1].income == Aggregate()
    assert all(m.month == "2024-03" for m in merged)


def test_aggregator_builds_one_summary_per_user() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)
        incomes = IncomeService(session, user.id)
        incomes.create(IncomeIn(description="Salary", category="Employment", amount=5000))
        incomes.create(IncomeIn(description="Side gig", category="Freelance", amount=1500))
        ExpenseService(session, user.id).create(
            ExpenseIn(
                description="Groceries run",
                product_details={"Apples": 50},
                split_allocation={"Groceries": 50},
            )
        )

        run = SummaryAggregator(session).generate(datetime.utcnow())

        assert run.inserted == 1
        summary = SummaryService(session, user.id).latest()
        assert summary.month == run.month
        assert summary.income_total == 6500
        assert summary.income_by_category == [
            {"category": "Employment", "total": 5000},
            {"category": "Freelance", "total": 1500},
        ]
        assert summary.expense_total == 50
        assert summary.expense_by_category == [{"category": "Groceries", "total": 50}]


def test_rerunning_aggregator_updates_instead_of_duplicating() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)
        incomes = IncomeService(session, user.id)
        incomes.create(IncomeIn(description="Salary", amount=100))

        first = SummaryAggregator(session).generate(datetime.utcnow())
        incomes.create(IncomeIn(description="Bonus", amount=20))
        second = SummaryAggregator(session).generate(datetime.utcnow())

        assert (first.inserted, first.updated) == (1, 0)
        assert (second.inserted, second.updated) == (0, 1)
        assert session.scalar(select(func.count(Summary.id))) == 1
        assert SummaryService(session, user.id).latest().income_total == 120


def test_records_outside_the_period_are_ignored() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)
        old = IncomeService(session, user.id).create(
            IncomeIn(description="Last year", amount=999)
        )
        old.created_at = datetime(2020, 1, 5)
        session.commit()
        IncomeService(session, user.id).create(IncomeIn(description="Now", amount=1))

        SummaryAggregator(session).generate(datetime.utcnow())

        assert SummaryService(session, user.id).latest().income_total == 1


def test_users_without_records_get_no_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)

        run = SummaryAggregator(session).generate(datetime.utcnow())

        assert run.users == 0
        with pytest.raises(NotFound, match="Summary not found"):
            SummaryService(session, user.id).latest()


def test_rerunning_unchanged_period_gives_identical_summary() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _signup(session)
        IncomeService(session, user.id).create(
            IncomeIn(description="Salary", category="Employment", amount=5000)
        )
        ExpenseService(session, user.id).create(
            ExpenseIn(
                description="Weekend",
                product_details={"Cinema": 12.5, "Apples": 7.25},
                split_allocation={"Leisure": 12.5, "Groceries": 7.25},
            )
        )
        now = datetime.utcnow()

        def snapshot():
            summary = SummaryService(session, user.id).latest()
            return (
                summary.id,
                summary.expense_total,
                summary.expense_by_category,
                summary.income_total,
                summary.income_by_category,
            )

        SummaryAggregator(session).generate(now)
        first = snapshot()
        SummaryAggregator(session).generate(now)
        second = snapshot()

        assert first == second
        assert first[1] == 19.75
        assert first[2] == [
            {"category": "Groceries", "total": 7.25},
            {"category": "Leisure", "total": 12.5},
        ]
