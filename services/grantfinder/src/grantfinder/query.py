from __future__ import annotations

from datetime import UTC, datetime, timedelta

from common.utils import normalize_terms, normalize_whitespace, now_utc

from grantfinder.errors import FilterValidationError
from grantfinder.models import (
    Condition,
    ConditionGroup,
    FilterSpec,
    GrantQuery,
    RangeFilter,
    SortOrder,
)

DEFAULT_MAX_PAGE_SIZE = 100

# sort key -> (attribute, descending, nulls_last)
SORT_KEYS: dict[str, tuple[str, bool, bool]] = {
    "deadline": ("close_date", False, True),
    "deadline_latest": ("close_date", True, False),
    "amount": ("award_ceiling", True, True),
    "amount_asc": ("award_ceiling", False, False),
    "recent": ("post_date", True, True),
    "title_asc": ("title", False, True),
    "title_desc": ("title", True, True),
}


def _validate_range(name: str, bounds: RangeFilter) -> None:
    if bounds.only_null:
        return
    for label, value in (("min", bounds.min), ("max", bounds.max)):
        if value is not None and value < 0:
            raise FilterValidationError(f"{name}.{label} must not be negative.")
    if bounds.min is not None and bounds.max is not None and bounds.min > bounds.max:
        raise FilterValidationError(f"{name}.min must not exceed {name}.max.")


def validate_page(page: int, page_size: int, max_page_size: int = DEFAULT_MAX_PAGE_SIZE) -> None:
    if page <= 0:
        raise FilterValidationError("page must be a positive integer (pages are 1-based).")
    if page_size <= 0:
        raise FilterValidationError("page_size must be a positive integer.")
    if page_size > max_page_size:
        raise FilterValidationError(f"page_size must not exceed {max_page_size}.")


def range_groups(field: str, bounds: RangeFilter, low: object, high: object) -> list[ConditionGroup]:
    """Translate one range filter on ``field`` into AND-ed condition groups.

    ``low``/``high`` are the already-converted bound values (or None).
    """
    if bounds.only_null:
        return [ConditionGroup(any_of=[Condition(field=field, op="is_null")])]

    bound_conditions: list[Condition] = []
    if low is not None:
        bound_conditions.append(Condition(field=field, op="gte", value=low))
    if high is not None:
        bound_conditions.append(Condition(field=field, op="lte", value=high))

    if bounds.include_null:
        return [
            ConditionGroup(any_of=[Condition(field=field, op="is_null"), condition])
            for condition in bound_conditions
        ]

    # Null comparisons are neither true nor false in most stores; exclude explicitly.
    groups = [ConditionGroup(any_of=[Condition(field=field, op="not_null")])]
    groups.extend(ConditionGroup(any_of=[condition]) for condition in bound_conditions)
    return groups


def _offset_days(now: datetime, days: float | None) -> str | None:
    if days is None:
        return None
    return (now + timedelta(days=days)).astimezone(UTC).isoformat()


def build_query(
    filter_spec: FilterSpec,
    page: int,
    page_size: int,
    *,
    now: datetime | None = None,
    max_page_size: int = DEFAULT_MAX_PAGE_SIZE,
) -> GrantQuery:
    validate_page(page, page_size, max_page_size)
    _validate_range("funding", filter_spec.funding)
    _validate_range("deadline", filter_spec.deadline)
    sort = SORT_KEYS.get(filter_spec.sort_by)
    if sort is None:
        raise FilterValidationError(
            f"Unknown sort_by {filter_spec.sort_by!r}; expected one of {sorted(SORT_KEYS)}."
        )

    reference = now or now_utc()
    where: list[ConditionGroup] = []

    where.extend(
        range_groups(
            "award_ceiling",
            filter_spec.funding,
            filter_spec.funding.min,
            filter_spec.funding.max,
        )
    )
    where.extend(
        range_groups(
            "close_date",
            filter_spec.deadline,
            _offset_days(reference, filter_spec.deadline.min),
            _offset_days(reference, filter_spec.deadline.max),
        )
    )

    if filter_spec.active_only:
        where.append(
            ConditionGroup(
                any_of=[
                    Condition(field="close_date", op="is_null"),
                    Condition(field="close_date", op="gt", value=reference.isoformat()),
                ]
            )
        )

    topics = normalize_terms(filter_spec.topics)
    if topics:
        where.append(
            ConditionGroup(any_of=[Condition(field="categories", op="overlaps", value=topics)])
        )

    agencies = normalize_terms(filter_spec.agencies)
    if agencies:
        where.append(
            ConditionGroup(any_of=[Condition(field="agency_name", op="in", value=agencies)])
        )

    search_term = normalize_whitespace(filter_spec.search_term)
    if search_term:
        where.append(
            ConditionGroup(
                any_of=[
                    Condition(field="title", op="contains", value=search_term),
                    Condition(field="description", op="contains", value=search_term),
                ]
            )
        )

    if filter_spec.cost_sharing != "any":
        where.append(
            ConditionGroup(
                any_of=[
                    Condition(
                        field="cost_sharing",
                        op="eq",
                        value=filter_spec.cost_sharing == "required",
                    )
                ]
            )
        )

    exclude_ids = sorted(set(filter_spec.exclude_ids))
    if exclude_ids:
        where.append(ConditionGroup(any_of=[Condition(field="id", op="not_in", value=exclude_ids)]))

    field, descending, nulls_last = sort
    order_by = [
        SortOrder(field=field, descending=descending, nulls_last=nulls_last),
        SortOrder(field="id", descending=False),
    ]
    return GrantQuery(
        where=where,
        order_by=order_by,
        offset=(page - 1) * page_size,
        limit=page_size,
    )
