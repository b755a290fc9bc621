from __future__ import annotations

import json
from typing import Any, Literal

from common.utils import normalize_terms
from pydantic import BaseModel, Field, model_validator

Action = Literal["saved", "applied", "ignored"]
ACTIONS: tuple[str, ...] = ("saved", "applied", "ignored")

MAX_FUNDING = 5_000_000

CostSharing = Literal["any", "required", "not_required"]
ConditionOp = Literal[
    "eq",
    "in",
    "not_in",
    "gt",
    "gte",
    "lt",
    "lte",
    "is_null",
    "not_null",
    "overlaps",
    "contains",
]


class GrantItem(BaseModel):
    id: str = Field(..., min_length=1, description="Unique grant identifier")
    title: str = ""
    description: str = ""
    agency_name: str | None = None
    agency_code: str | None = None
    categories: list[str] = Field(default_factory=list)
    award_ceiling: float | None = None
    award_floor: float | None = None
    close_date: str | None = None
    post_date: str | None = None
    cost_sharing: bool = False
    source_url: str | None = None


class PreferenceProfile(BaseModel):
    topics: list[str] = Field(default_factory=list)
    funding_min: float = Field(default=0, ge=0)
    funding_max: float = Field(default=MAX_FUNDING, ge=0)
    agencies: list[str] = Field(default_factory=list)
    deadline_days: int = Field(default=0, ge=0, description="0 accepts any deadline")
    accept_unspecified_funding: bool = True
    accept_unspecified_deadline: bool = True

    @model_validator(mode="after")
    def validate_funding_range(self) -> PreferenceProfile:
        if self.funding_min > self.funding_max:
            raise ValueError("funding_min must not exceed funding_max.")
        return self

    def config_json(self) -> str:
        return json.dumps(
            {
                "topics": normalize_terms(self.topics),
                "funding_min": self.funding_min,
                "funding_max": self.funding_max,
                "agencies": normalize_terms(self.agencies),
                "deadline_days": self.deadline_days,
                "accept_unspecified_funding": self.accept_unspecified_funding,
                "accept_unspecified_deadline": self.accept_unspecified_deadline,
            }
        )


class UserPreferences(BaseModel):
    user_id: str
    profile: PreferenceProfile
    is_default: bool
    created_at: str | None = None
    updated_at: str | None = None


class InteractionRecord(BaseModel):
    record_id: int
    user_id: str
    grant_id: str
    action: Action | None
    cleared_action: Action | None = None
    timestamp: str


class RecommendationEntry(BaseModel):
    grant_id: str
    score: float
    rank: int


class ScoredGrant(BaseModel):
    grant: GrantItem
    score: float


class RangeFilter(BaseModel):
    min: float | None = None
    max: float | None = None
    include_null: bool = True
    only_null: bool = False


class FilterSpec(BaseModel):
    search_term: str = ""
    funding: RangeFilter = Field(default_factory=RangeFilter)
    deadline: RangeFilter = Field(default_factory=RangeFilter)
    topics: list[str] = Field(default_factory=list)
    agencies: list[str] = Field(default_factory=list)
    cost_sharing: CostSharing = "any"
    sort_by: str = "deadline"
    active_only: bool = False
    exclude_ids: list[str] = Field(default_factory=list)


class Condition(BaseModel):
    field: str
    op: ConditionOp
    value: Any = None


class ConditionGroup(BaseModel):
    """Conditions joined with OR. A query ANDs its groups together."""

    any_of: list[Condition]


class SortOrder(BaseModel):
    field: str
    descending: bool = False
    nulls_last: bool = True


class GrantQuery(BaseModel):
    where: list[ConditionGroup] = Field(default_factory=list)
    order_by: list[SortOrder] = Field(default_factory=list)
    offset: int = 0
    limit: int


class UpsertGrantsRequest(BaseModel):
    grants: list[GrantItem] = Field(default_factory=list)


class UpsertGrantsResponse(BaseModel):
    updated: int


class SearchRequest(BaseModel):
    filters: FilterSpec = Field(default_factory=FilterSpec)
    page: int = 1
    page_size: int = 6


class GrantPage(BaseModel):
    items: list[GrantItem]
    total_count: int
    page: int
    page_size: int


class RecommendedGrant(BaseModel):
    grant: GrantItem
    score: float
    rank: int


class RecommendationsResponse(BaseModel):
    user_id: str
    target_count: int
    generated_at: str
    recommendations: list[RecommendedGrant]


class InteractionRequest(BaseModel):
    grant_id: str = Field(..., min_length=1)
    action: Action


class InteractionResult(BaseModel):
    user_id: str
    grant_id: str
    action: Action | None
    previous_action: Action | None
    committed_at: str | None = None


class ActionListResponse(BaseModel):
    user_id: str
    action: Action
    grants: list[GrantItem]


class InteractionStateResponse(BaseModel):
    user_id: str
    saved: list[str]
    applied: list[str]
    ignored: list[str]


class InteractionHistoryResponse(BaseModel):
    user_id: str
    grant_id: str
    current_action: Action | None
    records: list[InteractionRecord]
