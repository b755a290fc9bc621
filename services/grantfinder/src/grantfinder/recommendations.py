from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Literal

from grantfinder.errors import TransientBackendError
from grantfinder.ledger import InteractionLedger
from grantfinder.models import (
    MAX_FUNDING,
    FilterSpec,
    GrantItem,
    PreferenceProfile,
    RangeFilter,
    RecommendationEntry,
)
from grantfinder.observability import MetricsStore
from grantfinder.query import build_query
from grantfinder.repository import GrantRepository, run_storage
from grantfinder.scoring import rank_candidates, score_candidates
from grantfinder.settings import ServiceSettings

LOGGER = logging.getLogger("grantfinder.recommendations")

ReplenishmentStatus = Literal["stable", "needs_replenishment", "replenishing"]


@dataclass
class UserRecommendationState:
    target_count: int
    entries: list[RecommendationEntry] = field(default_factory=list)
    grants: dict[str, GrantItem] = field(default_factory=dict)
    status: ReplenishmentStatus = "needs_replenishment"
    requested: int = 0
    task: asyncio.Task[None] | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    generation: int = 0
    epoch: int = 0
    touched: dict[str, int] = field(default_factory=dict)
    held: set[str] = field(default_factory=set)
    next_rank: int = 1

    def entry_ids(self) -> set[str]:
        return {entry.grant_id for entry in self.entries}

    def remove(self, grant_id: str) -> RecommendationEntry | None:
        for index, entry in enumerate(self.entries):
            if entry.grant_id == grant_id:
                return self.entries.pop(index)
        return None

    def trim(self) -> None:
        while len(self.entries) > self.target_count:
            dropped = self.entries.pop()
            self.grants.pop(dropped.grant_id, None)


@dataclass
class DetachedEntry:
    entry: RecommendationEntry
    grant: GrantItem | None


@dataclass
class CandidateBatch:
    profile: PreferenceProfile
    candidates: list[GrantItem]
    started_generation: int
    needed: int


def preference_filter(profile: PreferenceProfile, exclude_ids: set[str]) -> FilterSpec:
    funding = RangeFilter(
        min=profile.funding_min or None,
        max=profile.funding_max if profile.funding_max < MAX_FUNDING else None,
        include_null=profile.accept_unspecified_funding,
    )
    deadline = RangeFilter(
        max=profile.deadline_days or None,
        include_null=profile.accept_unspecified_deadline,
    )
    return FilterSpec(
        topics=profile.topics,
        agencies=profile.agencies,
        funding=funding,
        deadline=deadline,
        active_only=True,
        exclude_ids=sorted(exclude_ids),
    )


class RecommendationSetManager:
    """Keeps each user's bounded recommendation set disjoint from their ledger.

    State is keyed per user and lives until ``discard`` is called for that
    user. Replenishment runs in background tasks; concurrent requests for the
    same user collapse into the running task.
    """

    def __init__(
        self,
        repository: GrantRepository,
        ledger: InteractionLedger,
        settings: ServiceSettings,
        metrics: MetricsStore | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.settings = settings
        self.metrics = metrics
        self._states: dict[str, UserRecommendationState] = {}

    def _state(self, user_id: str) -> UserRecommendationState:
        state = self._states.get(user_id)
        if state is None:
            state = UserRecommendationState(target_count=self.settings.target_count)
            self._states[user_id] = state
        return state

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(name)

    def status(self, user_id: str) -> ReplenishmentStatus:
        return self._state(user_id).status

    def active_set(self, user_id: str) -> list[RecommendationEntry]:
        return list(self._state(user_id).entries)

    def recommended_grants(self, user_id: str) -> list[tuple[RecommendationEntry, GrantItem]]:
        state = self._state(user_id)
        return [
            (entry, state.grants[entry.grant_id])
            for entry in state.entries
            if entry.grant_id in state.grants
        ]

    def set_target(self, user_id: str, target_count: int) -> None:
        state = self._state(user_id)
        state.target_count = target_count
        state.trim()
        if len(state.entries) < target_count and state.status == "stable":
            state.status = "needs_replenishment"

    async def load_profile(self, user_id: str) -> PreferenceProfile:
        stored = await run_storage(self.repository.get_preference_profile, user_id)
        if stored is None:
            return PreferenceProfile()
        return stored.profile

    def on_interaction(self, user_id: str, grant_id: str) -> None:
        state = self._state(user_id)
        state.generation += 1
        if state.lock.locked():
            # Only a fetch already in flight can hold a stale view of this grant.
            state.touched[grant_id] = state.generation
        state.held.discard(grant_id)
        removed = state.remove(grant_id)
        if removed is not None:
            state.grants.pop(grant_id, None)

        deficit = state.target_count - len(state.entries)
        if deficit > 0:
            state.status = "needs_replenishment"
            self.schedule_replenishment(user_id, deficit)

    def schedule_replenishment(self, user_id: str, needed: int) -> None:
        state = self._state(user_id)
        state.requested = max(state.requested, needed)
        if state.task is not None and not state.task.done():
            LOGGER.debug(
                json.dumps(
                    {"event": "replenishment_coalesced", "user_id": user_id, "needed": needed}
                )
            )
            return
        state.task = asyncio.create_task(self._drain(user_id, state))

    async def _drain(self, user_id: str, state: UserRecommendationState) -> None:
        while state.requested > 0:
            needed = state.requested
            state.requested = 0
            try:
                await self.replenish(user_id, needed)
            except Exception:
                state.status = "needs_replenishment"
                self._count("replenishment_failures")
                LOGGER.exception(
                    json.dumps({"event": "replenishment_crashed", "user_id": user_id})
                )
                return

    async def replenish(self, user_id: str, needed: int) -> int:
        state = self._state(user_id)
        async with state.lock:
            deficit = min(needed, state.target_count - len(state.entries))
            if deficit <= 0:
                state.status = "stable"
                return 0

            try:
                batch = await self._fetch_batch(user_id, state, deficit)
            except TransientBackendError as exc:
                state.status = "needs_replenishment"
                state.touched.clear()
                self._count("replenishment_failures")
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "replenishment_failed",
                            "user_id": user_id,
                            "needed": deficit,
                            "error": str(exc),
                        }
                    )
                )
                return 0
            if batch is None:
                state.status = "stable"
                state.touched.clear()
                return 0

            ranked = rank_candidates(score_candidates(batch.candidates, batch.profile))
            current_ids = state.entry_ids()
            appended = 0
            for scored in ranked:
                if len(state.entries) >= state.target_count or appended >= batch.needed:
                    break
                grant_id = scored.grant.id
                if grant_id in current_ids or grant_id in state.held:
                    continue
                # Touched while the fetch was in flight; its ledger status above is stale.
                if state.touched.get(grant_id, 0) > batch.started_generation:
                    continue
                state.entries.append(
                    RecommendationEntry(grant_id=grant_id, score=scored.score, rank=state.next_rank)
                )
                state.grants[grant_id] = scored.grant
                state.next_rank += 1
                current_ids.add(grant_id)
                appended += 1
            state.touched.clear()

            exhausted = len(batch.candidates) < batch.needed
            if len(state.entries) >= state.target_count or exhausted:
                state.status = "stable"
            else:
                state.status = "needs_replenishment"
            self._count("replenishments")
            LOGGER.info(
                json.dumps(
                    {
                        "event": "replenishment_complete",
                        "user_id": user_id,
                        "needed": batch.needed,
                        "fetched": len(batch.candidates),
                        "appended": appended,
                        "size": len(state.entries),
                        "target_count": state.target_count,
                    }
                )
            )
            return appended

    async def _fetch_batch(
        self,
        user_id: str,
        state: UserRecommendationState,
        needed: int,
    ) -> CandidateBatch | None:
        """Fetch candidates against the profile that is current when the fetch ends.

        A reset while the fetch is in flight discards the batch and fetches
        again for the emptied set. Returns None when nothing is left to fill.
        """
        while True:
            state.status = "replenishing"
            epoch = state.epoch
            started_generation = state.generation
            profile = await self.load_profile(user_id)
            ledger_items = await self.ledger.all_active_items(user_id)
            excluded = state.entry_ids() | state.held | ledger_items
            candidates = await self._fetch_candidates(profile, excluded, needed)
            if state.epoch == epoch:
                return CandidateBatch(profile, candidates, started_generation, needed)

            LOGGER.info(
                json.dumps(
                    {
                        "event": "replenishment_discarded",
                        "user_id": user_id,
                        "fetched": len(candidates),
                    }
                )
            )
            needed = state.target_count - len(state.entries)
            if needed <= 0:
                return None

    async def _query(self, spec: FilterSpec, page_size: int) -> list[GrantItem]:
        query = build_query(spec, 1, page_size, max_page_size=max(page_size, 1))
        items, _ = await run_storage(self.repository.query, query)
        return items

    async def _fetch_candidates(
        self,
        profile: PreferenceProfile,
        excluded: set[str],
        needed: int,
    ) -> list[GrantItem]:
        candidates = await self._query(
            preference_filter(profile, excluded),
            needed * self.settings.batch_multiplier,
        )
        if len(candidates) >= needed:
            return candidates

        # Not enough close matches; widen to every active grant and let scoring rank them.
        fetched = excluded | {grant.id for grant in candidates}
        relaxed = FilterSpec(active_only=True, exclude_ids=sorted(fetched))
        candidates.extend(
            await self._query(relaxed, needed * self.settings.fallback_multiplier)
        )
        return candidates

    async def ensure_filled(self, user_id: str, target_count: int) -> list[RecommendationEntry]:
        self.set_target(user_id, target_count)
        state = self._state(user_id)
        if state.task is not None and not state.task.done():
            await asyncio.shield(state.task)
        if len(state.entries) < state.target_count:
            await self.replenish(user_id, state.target_count - len(state.entries))
        return list(state.entries)

    def detach(self, user_id: str, grant_id: str) -> DetachedEntry | None:
        state = self._state(user_id)
        state.held.add(grant_id)
        entry = state.remove(grant_id)
        if entry is None:
            return None
        return DetachedEntry(entry=entry, grant=state.grants.pop(grant_id, None))

    def restore(self, user_id: str, grant_id: str, detached: DetachedEntry | None) -> None:
        state = self._state(user_id)
        state.held.discard(grant_id)
        if detached is None or grant_id in state.entry_ids() or detached.grant is None:
            return
        state.entries.append(detached.entry)
        state.entries.sort(key=lambda entry: entry.rank)
        state.grants[grant_id] = detached.grant
        state.trim()

    def reset(self, user_id: str) -> None:
        state = self._states.get(user_id)
        if state is None:
            return
        state.entries.clear()
        state.grants.clear()
        state.generation += 1
        state.epoch += 1
        state.status = "needs_replenishment"

    async def wait_idle(self, user_id: str) -> None:
        state = self._states.get(user_id)
        if state is not None and state.task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await state.task

    def discard(self, user_id: str) -> bool:
        state = self._states.pop(user_id, None)
        if state is None:
            return False
        if state.task is not None and not state.task.done():
            state.task.cancel()
        return True

    async def close(self) -> None:
        tasks = [state.task for state in self._states.values() if state.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._states.clear()
