from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select, true
from sqlalchemy.orm import Session

from models import Expense, Income, Summary
from periods import SummaryPeriod, summary_period


logger = logging.getLogger(__name__)


@dataclass
class Aggregate:
    total: float = 0
    by_category: list[dict] = field(default_factory=list)


@dataclass
class MergedSummary:
    user_id: int
    month: str
    expense: Aggregate
    income: Aggregate


@dataclass(frozen=True)
class SummaryRun:
    month: str
    start: datetime
    end: datetime
    inserted: int
    updated: int

    @property
    def users(self) -> int:
        return self.inserted + self.updated


def group_by_user(rows) -> dict[int, Aggregate]:
    """Fold ``(user_id, category, total)`` rows into one aggregate per user."""
    per_user: dict[int, dict[str, float]] = {}
    for user_id, category, total in rows:
        categories = per_user.setdefault(user_id, {})
        categories[category] = categories.get(category, 0) + (total or 0)

    aggregates: dict[int, Aggregate] = {}
    for user_id, categories in per_user.items():
        by_category = [
            {"category": name, "total": round(amount, 2)}
            for name, amount in sorted(categories.items())
        ]
        aggregates[user_id] = Aggregate(
            total=round(sum(categories.values()), 2), by_category=by_category
        )
    return aggregates


def merge_summaries(
    month: str,
    expenses: dict[int, Aggregate],
    incomes: dict[int, Aggregate],
) -> list[MergedSummary]:
    merged: list[MergedSummary] = []
    for user_id in sorted(set(expenses) | set(incomes)):
        merged.append(
            MergedSummary(
                user_id=user_id,
                month=month,
                expense=expenses.get(user_id, Aggregate()),
                income=incomes.get(user_id, Aggregate()),
            )
        )
    return merged


class SummaryAggregator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def expense_totals(self, start: datetime, end: datetime) -> dict[int, Aggregate]:
        entries = func.json_each(Expense.split_allocation).table_valued(
            "key", "value"
        )
        stmt = (
            select(Expense.user_id, entries.c.key, func.sum(entries.c.value))
            .select_from(Expense)
            .join(entries, true())
            .where(Expense.created_at.between(start, end))
            .group_by(Expense.user_id, entries.c.key)
        )
        return group_by_user(self.session.execute(stmt).all())

    def income_totals(self, start: datetime, end: datetime) -> dict[int, Aggregate]:
        stmt = (
            select(Income.user_id, Income.category, func.sum(Income.amount))
            .where(Income.created_at.between(start, end))
            .group_by(Income.user_id, Income.category)
        )
        return group_by_user(self.session.execute(stmt).all())

    def _upsert(self, record: MergedSummary) -> bool:
        summary = self.session.scalar(
            select(Summary).where(
                Summary.user_id == record.user_id,
                Summary.month == record.month,
            )
        )
        created = summary is None
        if created:
            summary = Summary(user_id=record.user_id, month=record.month)
            self.session.add(summary)

        summary.expense_total = record.expense.total
        summary.expense_by_category = record.expense.by_category
        summary.income_total = record.income.total
        summary.income_by_category = record.income.by_category
        return created

    def generate_for_period(self, period: SummaryPeriod) -> SummaryRun:
        expenses = self.expense_totals(period.start, period.end)
        incomes = self.income_totals(period.start, period.end)
        merged = merge_summaries(period.month, expenses, incomes)

        inserted = updated = 0
        try:
            for record in merged:
                if self._upsert(record):
                    inserted += 1
                else:
                    updated += 1
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"summary_generated: month={period.month} inserted={inserted} updated={updated}"
        )
        return SummaryRun(
            month=period.month,
            start=period.start,
            end=period.end,
            inserted=inserted,
            updated=updated,
        )

    def generate(self, now: datetime) -> SummaryRun:
        return self.generate_for_period(summary_period(now))
