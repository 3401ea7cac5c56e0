"""Translate list-endpoint query parameters into a query specification.

``build_query`` is pure: it turns a :class:`QueryParams` into a frozen
:class:`QuerySpec` describing filters, ordering, projection and paging
without touching the store. ``apply_query_spec`` compiles a spec onto a
SQLAlchemy ``select``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, Select, exists, func, or_, select

from errors import InvalidInput
from periods import validate_month


DEFAULT_PAGE_SIZE = 10


class RecordKind(str, Enum):
    expense = "expense"
    income = "income"
    budget = "budget"


@dataclass(frozen=True)
class RecordFields:
    search: tuple[str, ...]
    category: Optional[str]
    category_is_mapping: bool
    amount: Optional[str]
    selectable: tuple[str, ...]
    sortable: tuple[str, ...]


_COMMON = ("user_id", "created_at", "updated_at")

KIND_FIELDS: dict[RecordKind, RecordFields] = {
    RecordKind.expense: RecordFields(
        search=("description", "product_details"),
        category="split_allocation",
        category_is_mapping=True,
        amount="total",
        selectable=("description", "product_details", "split_allocation", "total")
        + _COMMON,
        sortable=("description", "total", "created_at", "updated_at"),
    ),
    RecordKind.income: RecordFields(
        search=("description",),
        category="category",
        category_is_mapping=False,
        amount="amount",
        selectable=("description", "category", "amount") + _COMMON,
        sortable=("description", "category", "amount", "created_at", "updated_at"),
    ),
    RecordKind.budget: RecordFields(
        search=("description",),
        category=None,
        category_is_mapping=False,
        amount=None,
        selectable=("description", "month", "limits") + _COMMON,
        sortable=("description", "month", "created_at", "updated_at"),
    ),
}


@dataclass(frozen=True)
class Clause:
    field: str
    op: str
    value: Any = None


@dataclass(frozen=True)
class AnyOf:
    clauses: tuple[Clause, ...]


Filter = Union[Clause, AnyOf]


@dataclass(frozen=True)
class SortKey:
    field: str
    descending: bool = False


DEFAULT_SORT = (SortKey("created_at", descending=True),)


@dataclass(frozen=True)
class QuerySpec:
    filters: tuple[Filter, ...] = ()
    sort: tuple[SortKey, ...] = DEFAULT_SORT
    fields: tuple[str, ...] = ()
    limit: Optional[int] = None
    offset: int = 0


Timestamp = Union[float, datetime]


@dataclass(frozen=True)
class QueryParams:
    search: Optional[str] = None
    category: Optional[str] = None
    total: Optional[float] = None
    start_date: Optional[Timestamp] = None
    end_date: Optional[Timestamp] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    month: Optional[str] = None
    sort: Optional[str] = None
    field: Optional[str] = None
    limit: Optional[int] = None
    page: Optional[int] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, str]) -> "QueryParams":
        def text(name: str) -> Optional[str]:
            value = raw.get(name)
            if value is None:
                return None
            value = value.strip()
            return value or None

        return cls(
            search=text("search"),
            category=text("category"),
            total=_parse_number("total", text("total")),
            start_date=_parse_timestamp("startDate", text("startDate")),
            end_date=_parse_timestamp("endDate", text("endDate"), end_of_day=True),
            min_amount=_parse_number("minAmount", text("minAmount")),
            max_amount=_parse_number("maxAmount", text("maxAmount")),
            month=text("month"),
            sort=text("sort"),
            field=text("field"),
            limit=_parse_int("limit", text("limit")),
            page=_parse_int("page", text("page")),
        )


def _parse_number(name: str, value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise InvalidInput(f"{name} must be a number") from exc


def _parse_int(name: str, value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise InvalidInput(f"{name} must be an integer") from exc


def _parse_timestamp(
    name: str, value: Optional[str], *, end_of_day: bool = False
) -> Optional[Timestamp]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidInput(f"Invalid time value for {name}") from exc
    if end_of_day and len(value) == 10:
        parsed = datetime.combine(parsed.date(), time.max)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _to_datetime(name: str, value: Timestamp) -> datetime:
    if isinstance(value, datetime):
        return value
    if value < 0:
        raise InvalidInput(f"Invalid time value for {name}")
    try:
        moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise InvalidInput(f"Invalid time value for {name}") from exc
    return moment.replace(tzinfo=None)


def json_key_path(label: str) -> str:
    if '"' in label:
        raise InvalidInput("Category names cannot contain double quotes")
    return f'$."{label}"'


def escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _field_names(allowed: tuple[str, ...]) -> dict[str, str]:
    names: dict[str, str] = {"id": "id"}
    for name in allowed:
        names[name] = name
        names[to_camel(name)] = name
    return names


def _split_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def build_query(params: QueryParams, kind: RecordKind) -> QuerySpec:
    fields = KIND_FIELDS[kind]
    filters: list[Filter] = []

    if params.search:
        filters.append(
            AnyOf(tuple(Clause(name, "icontains", params.search) for name in fields.search))
        )

    if params.category:
        if fields.category is None:
            raise InvalidInput(f"Cannot filter {kind.value} records by category")
        if fields.category_is_mapping:
            json_key_path(params.category)
            filters.append(Clause(fields.category, "has_key", params.category))
        else:
            filters.append(Clause(fields.category, "eq", params.category))

    if params.month:
        if kind != RecordKind.budget:
            raise InvalidInput(f"Cannot filter {kind.value} records by month")
        filters.append(Clause("month", "eq", validate_month(params.month)))

    amount_filters = (params.total, params.min_amount, params.max_amount)
    if fields.amount is None and any(v is not None for v in amount_filters):
        raise InvalidInput(f"Cannot filter {kind.value} records by amount")

    if params.total is not None:
        filters.append(Clause(fields.amount, "eq", params.total))

    if params.start_date is not None:
        start = _to_datetime("startDate", params.start_date)
        filters.append(Clause("created_at", "gte", start))
    if params.end_date is not None:
        end = _to_datetime("endDate", params.end_date)
        filters.append(Clause("created_at", "lte", end))

    if (
        params.min_amount is not None
        and params.max_amount is not None
        and params.min_amount > params.max_amount
    ):
        raise InvalidInput("minAmount cannot exceed maxAmount")
    if params.min_amount is not None:
        filters.append(Clause(fields.amount, "gte", params.min_amount))
    if params.max_amount is not None:
        filters.append(Clause(fields.amount, "lte", params.max_amount))

    sort = DEFAULT_SORT
    if params.sort:
        sortable = _field_names(fields.sortable)
        keys: list[SortKey] = []
        for raw in _split_list(params.sort):
            descending = raw.startswith("-")
            name = raw.lstrip("-")
            if name not in sortable:
                raise InvalidInput(f"Cannot sort by '{name}'")
            keys.append(SortKey(sortable[name], descending))
        if keys:
            sort = tuple(keys)

    selected: tuple[str, ...] = ()
    if params.field:
        selectable = _field_names(fields.selectable)
        names: list[str] = []
        for raw in _split_list(params.field):
            if raw not in selectable:
                raise InvalidInput(f"Unknown field '{raw}'")
            if selectable[raw] not in names:
                names.append(selectable[raw])
        selected = tuple(names)

    limit: Optional[int] = None
    offset = 0
    if params.limit is not None and params.limit < 1:
        raise InvalidInput("limit must be at least 1")
    if params.page is not None:
        if params.page < 1:
            raise InvalidInput("page must be at least 1")
        limit = params.limit or DEFAULT_PAGE_SIZE
        offset = limit * (params.page - 1)
    elif params.limit is not None:
        limit = params.limit

    return QuerySpec(
        filters=tuple(filters),
        sort=sort,
        fields=selected,
        limit=limit,
        offset=offset,
    )


def _compile_clause(model, clause: Clause):
    column = getattr(model, clause.field)
    if clause.op == "icontains":
        like = f"%{escape_like(str(clause.value).lower())}%"
        if isinstance(column.type, JSON):
            entries = func.json_each(column).table_valued("key")
            return exists(
                select(entries.c.key).where(
                    func.lower(entries.c.key).like(like, escape="\\")
                )
            )
        return func.lower(func.coalesce(column, "")).like(like, escape="\\")
    if clause.op == "has_key":
        return func.json_type(column, json_key_path(clause.value)).is_not(None)
    if clause.op == "eq":
        return column == clause.value
    if clause.op == "gte":
        return column >= clause.value
    if clause.op == "lte":
        return column <= clause.value
    raise ValueError(f"Unsupported filter operator {clause.op}")


def apply_query_spec(stmt: Select, model, spec: QuerySpec) -> Select:
    for item in spec.filters:
        if isinstance(item, AnyOf):
            stmt = stmt.where(or_(*(_compile_clause(model, c) for c in item.clauses)))
        else:
            stmt = stmt.where(_compile_clause(model, item))

    order_by = []
    for key in spec.sort:
        column = getattr(model, key.field)
        order_by.append(column.desc() if key.descending else column.asc())
    order_by.append(model.id.desc() if spec.sort[-1].descending else model.id.asc())
    stmt = stmt.order_by(*order_by)

    if spec.offset:
        stmt = stmt.offset(spec.offset)
    if spec.limit is not None:
        stmt = stmt.limit(spec.limit)
    return stmt

