from __future__ import annotations

from grantfinder.errors import FilterValidationError
from grantfinder.ledger import InteractionLedger
from grantfinder.models import (
    Action,
    FilterSpec,
    GrantItem,
    GrantPage,
    InteractionHistoryResponse,
    InteractionResult,
    PreferenceProfile,
    RecommendedGrant,
    UserPreferences,
)
from grantfinder.observability import MetricsStore
from grantfinder.query import build_query
from grantfinder.recommendations import RecommendationSetManager
from grantfinder.repository import GrantRepository, run_storage
from grantfinder.settings import ServiceSettings
from grantfinder.sync import InteractionSynchronizer

SIMILAR_GRANTS_LIMIT = 3


class GrantFinder:
    """Operations exposed to callers, wired over one repository."""

    def __init__(
        self,
        repository: GrantRepository,
        settings: ServiceSettings,
        metrics: MetricsStore | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.ledger = InteractionLedger(repository)
        self.recommendations = RecommendationSetManager(repository, self.ledger, settings, metrics)
        self.synchronizer = InteractionSynchronizer(self.ledger, self.recommendations, metrics)

    async def get_recommended(
        self,
        user_id: str,
        target_count: int | None = None,
    ) -> list[RecommendedGrant]:
        target = self.settings.target_count if target_count is None else target_count
        if target <= 0:
            raise FilterValidationError("target_count must be a positive integer.")
        await self.recommendations.ensure_filled(user_id, target)
        return [
            RecommendedGrant(grant=grant, score=entry.score, rank=entry.rank)
            for entry, grant in self.recommendations.recommended_grants(user_id)
        ]

    async def get_by_action(self, user_id: str, action: Action) -> list[GrantItem]:
        view = await self.synchronizer.view(user_id)
        grant_ids = view.grant_ids(action)
        grants = await run_storage(self.repository.get_grants, grant_ids)
        return [grants[grant_id] for grant_id in grant_ids if grant_id in grants]

    async def interaction_lists(self, user_id: str) -> dict[str, list[str]]:
        view = await self.synchronizer.view(user_id)
        return view.lists()

    async def apply_action(self, user_id: str, grant_id: str, action: Action) -> InteractionResult:
        return await self.synchronizer.apply_action(user_id, grant_id, action)

    async def undo_action(self, user_id: str, grant_id: str, action: Action) -> InteractionResult:
        return await self.synchronizer.undo_action(user_id, grant_id, action)

    async def interaction_history(self, user_id: str, grant_id: str) -> InteractionHistoryResponse:
        records = await self.ledger.history(user_id, grant_id)
        current = records[-1].action if records else None
        return InteractionHistoryResponse(
            user_id=user_id,
            grant_id=grant_id,
            current_action=current,
            records=records,
        )

    async def filter_and_page(self, filter_spec: FilterSpec, page: int, page_size: int) -> GrantPage:
        query = build_query(
            filter_spec,
            page,
            page_size,
            max_page_size=self.settings.max_page_size,
        )
        items, total = await run_storage(self.repository.query, query)
        return GrantPage(items=items, total_count=total, page=page, page_size=page_size)

    async def upsert_grants(self, grants: list[GrantItem]) -> int:
        return await run_storage(self.repository.upsert_grants, grants)

    async def get_grant(self, grant_id: str) -> GrantItem | None:
        return await run_storage(self.repository.get_grant, grant_id)

    async def similar_grants(
        self,
        grant_id: str,
        limit: int = SIMILAR_GRANTS_LIMIT,
    ) -> list[GrantItem] | None:
        grant = await self.get_grant(grant_id)
        if grant is None:
            return None
        spec = FilterSpec(topics=grant.categories, active_only=True, exclude_ids=[grant_id])
        page = await self.filter_and_page(spec, 1, limit)
        return page.items

    async def get_preferences(self, user_id: str) -> UserPreferences:
        stored = await run_storage(self.repository.get_preference_profile, user_id)
        if stored is None:
            return UserPreferences(user_id=user_id, profile=PreferenceProfile(), is_default=True)
        return stored

    async def update_preferences(self, user_id: str, profile: PreferenceProfile) -> UserPreferences:
        stored = await run_storage(self.repository.upsert_preference_profile, user_id, profile)
        self.recommendations.reset(user_id)
        return stored

    async def reset_preferences(self, user_id: str) -> UserPreferences:
        await run_storage(self.repository.delete_preference_profile, user_id)
        self.recommendations.reset(user_id)
        return UserPreferences(user_id=user_id, profile=PreferenceProfile(), is_default=True)

    def end_session(self, user_id: str) -> bool:
        self.synchronizer.discard(user_id)
        return self.recommendations.discard(user_id)

    async def close(self) -> None:
        await self.recommendations.close()
