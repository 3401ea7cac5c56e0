from datetime import datetime

import pytest

from errors import InvalidInput
from query_builder import (
    DEFAULT_SORT,
    AnyOf,
    Clause,
    QueryParams,
    RecordKind,
    SortKey,
    build_query,
    json_key_path,
)


def test_empty_params_produce_default_spec() -> None:
    spec = build_query(QueryParams(), RecordKind.expense)

    assert spec.filters == ()
    assert spec.sort == DEFAULT_SORT
    assert spec.fields == ()
    assert spec.limit is None
    assert spec.offset == 0


def test_identical_params_build_identical_specs() -> None:
    raw = {"search": "milk", "category": "Groceries", "sort": "-total", "page": "3"}

    first = build_query(QueryParams.from_mapping(raw), RecordKind.expense)
    second = build_query(QueryParams.from_mapping(raw), RecordKind.expense)

    assert first == second


def test_search_matches_description_or_product_names_for_expenses() -> None:
    spec = build_query(QueryParams(search="milk"), RecordKind.expense)

    assert spec.filters == (
        AnyOf(
            (
                Clause("description", "icontains", "milk"),
                Clause("product_details", "icontains", "milk"),
            )
        ),
    )


def test_category_filter_checks_key_presence_for_expenses() -> None:
    spec = build_query(QueryParams(category="Groceries"), RecordKind.expense)

    assert spec.filters == (Clause("split_allocation", "has_key", "Groceries"),)


def test_category_filter_is_exact_match_for_incomes() -> None:
    spec = build_query(QueryParams(category="Freelance"), RecordKind.income)

    assert spec.filters == (Clause("category", "eq", "Freelance"),)


def test_budgets_reject_category_and_amount_filters() -> None:
    with pytest.raises(InvalidInput):
        build_query(QueryParams(category="Food"), RecordKind.budget)
    with pytest.raises(InvalidInput):
        build_query(QueryParams(min_amount=5), RecordKind.budget)


def test_month_filter_only_applies_to_budgets() -> None:
    spec = build_query(QueryParams(month="2024-02"), RecordKind.budget)
    assert spec.filters == (Clause("month", "eq", "2024-02"),)

    with pytest.raises(InvalidInput):
        build_query(QueryParams(month="2024-02"), RecordKind.expense)
    with pytest.raises(InvalidInput):
        build_query(QueryParams(month="2024-2"), RecordKind.budget)


def test_amount_range_targets_total_on_expenses() -> None:
    spec = build_query(QueryParams(min_amount=10, max_amount=50), RecordKind.expense)

    assert spec.filters == (
        Clause("total", "gte", 10),
        Clause("total", "lte", 50),
    )


def test_min_amount_above_max_amount_is_rejected() -> None:
    with pytest.raises(InvalidInput, match="minAmount"):
        build_query(QueryParams(min_amount=60, max_amount=50), RecordKind.income)


def test_epoch_millisecond_dates_become_created_at_bounds() -> None:
    params = QueryParams.from_mapping(
        {"startDate": "1700000000000", "endDate": "1700086400000"}
    )
    spec = build_query(params, RecordKind.income)

    assert spec.filters == (
        Clause("created_at", "gte", datetime(2023, 11, 14, 22, 13, 20)),
        Clause("created_at", "lte", datetime(2023, 11, 15, 22, 13, 20)),
    )


def test_date_only_end_date_covers_the_whole_day() -> None:
    params = QueryParams.from_mapping({"startDate": "2024-01-31", "endDate": "2024-01-31"})

    assert params.start_date == datetime(2024, 1, 31)
    assert params.end_date == datetime(2024, 1, 31, 23, 59, 59, 999999)


def test_unparseable_and_negative_dates_are_rejected() -> None:
    with pytest.raises(InvalidInput, match="startDate"):
        QueryParams.from_mapping({"startDate": "yesterday"})
    with pytest.raises(InvalidInput, match="startDate"):
        build_query(QueryParams(start_date=-5), RecordKind.expense)


def test_page_without_limit_uses_default_page_size() -> None:
    spec = build_query(QueryParams(page=2), RecordKind.expense)

    assert spec.limit == 10
    assert spec.offset == 10


def test_page_and_limit_compute_offset() -> None:
    spec = build_query(QueryParams(page=3, limit=25), RecordKind.income)

    assert spec.limit == 25
    assert spec.offset == 50


def test_limit_alone_does_not_skip() -> None:
    spec = build_query(QueryParams(limit=5), RecordKind.income)

    assert spec.limit == 5
    assert spec.offset == 0


def test_non_positive_paging_values_are_rejected() -> None:
    with pytest.raises(InvalidInput):
        build_query(QueryParams(page=0), RecordKind.expense)
    with pytest.raises(InvalidInput):
        build_query(QueryParams(limit=0), RecordKind.expense)
    with pytest.raises(InvalidInput, match="integer"):
        QueryParams.from_mapping({"limit": "ten"})


def test_sort_accepts_camel_case_and_descending_prefix() -> None:
    spec = build_query(QueryParams(sort="-total,createdAt"), RecordKind.expense)

    assert spec.sort == (SortKey("total", True), SortKey("created_at", False))


def test_unknown_sort_or_field_is_rejected() -> None:
    with pytest.raises(InvalidInput, match="sort"):
        build_query(QueryParams(sort="password"), RecordKind.expense)
    with pytest.raises(InvalidInput, match="field"):
        build_query(QueryParams(field="total,secret"), RecordKind.expense)


def test_field_projection_is_deduplicated() -> None:
    spec = build_query(
        QueryParams(field="total,splitAllocation,total"), RecordKind.expense
    )

    assert spec.fields == ("total", "split_allocation")


def test_json_key_path_quotes_label_and_rejects_double_quotes() -> None:
    assert json_key_path("Eating out") == '$."Eating out"'
    with pytest.raises(InvalidInput):
        json_key_path('Bad"label')
