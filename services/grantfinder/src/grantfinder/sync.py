"""Optimistic application of user actions with rollback on failed commits.

Every (user, grant) pair moves through ``none -> pending -> committed``; undo
is ``committed -> pending(None)``. A failed commit restores the snapshot taken
before the optimistic update, so the pair returns to its prior committed
state rather than to ``none``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Literal

from common.utils import now_utc_iso

from grantfinder.ledger import InteractionLedger
from grantfinder.models import ACTIONS, Action, InteractionRecord, InteractionResult
from grantfinder.observability import MetricsStore
from grantfinder.recommendations import DetachedEntry, RecommendationSetManager

LOGGER = logging.getLogger("grantfinder.sync")

ItemStatus = Literal["none", "pending", "committed"]


@dataclass(frozen=True)
class ItemState:
    status: ItemStatus = "none"
    action: Action | None = None


@dataclass(frozen=True)
class ItemSnapshot:
    action: Action | None
    updated_at: str | None
    state: ItemState


@dataclass
class UserView:
    """Derived saved/applied/ignored lists for one user."""

    actions: dict[str, Action] = field(default_factory=dict)
    updated_at: dict[str, str] = field(default_factory=dict)
    items: dict[str, ItemState] = field(default_factory=dict)

    @classmethod
    def from_records(cls, records: dict[str, InteractionRecord]) -> UserView:
        view = cls()
        for grant_id, record in records.items():
            if record.action is None:
                continue
            view.actions[grant_id] = record.action
            view.updated_at[grant_id] = record.timestamp
            view.items[grant_id] = ItemState(status="committed", action=record.action)
        return view

    def state_of(self, grant_id: str) -> ItemState:
        return self.items.get(grant_id, ItemState())

    def snapshot(self, grant_id: str) -> ItemSnapshot:
        return ItemSnapshot(
            action=self.actions.get(grant_id),
            updated_at=self.updated_at.get(grant_id),
            state=self.state_of(grant_id),
        )

    def apply(self, grant_id: str, action: Action | None, timestamp: str) -> None:
        if action is None:
            self.actions.pop(grant_id, None)
            self.updated_at.pop(grant_id, None)
        else:
            self.actions[grant_id] = action
            self.updated_at[grant_id] = timestamp

    def restore(self, grant_id: str, snapshot: ItemSnapshot) -> None:
        if snapshot.action is None:
            self.actions.pop(grant_id, None)
            self.updated_at.pop(grant_id, None)
        else:
            self.actions[grant_id] = snapshot.action
            self.updated_at[grant_id] = snapshot.updated_at or now_utc_iso()
        if snapshot.state.status == "none":
            self.items.pop(grant_id, None)
        else:
            self.items[grant_id] = snapshot.state

    def grant_ids(self, action: Action) -> list[str]:
        matching = [grant_id for grant_id, value in self.actions.items() if value == action]
        matching.sort(key=lambda grant_id: self.updated_at.get(grant_id, ""), reverse=True)
        return matching

    def lists(self) -> dict[str, list[str]]:
        return {action: self.grant_ids(action) for action in ACTIONS}


class InteractionSynchronizer:
    def __init__(
        self,
        ledger: InteractionLedger,
        manager: RecommendationSetManager,
        metrics: MetricsStore | None = None,
    ) -> None:
        self.ledger = ledger
        self.manager = manager
        self.metrics = metrics
        self._views: dict[str, UserView] = {}
        self._pair_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._pair_users: dict[tuple[str, str], int] = {}

    def _count(self, name: str) -> None:
        if self.metrics is not None:
            self.metrics.increment(name)

    def _enter_pair(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._pair_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._pair_locks[key] = lock
        self._pair_users[key] = self._pair_users.get(key, 0) + 1
        return lock

    def _leave_pair(self, key: tuple[str, str], *, release: bool = True) -> None:
        if release:
            self._pair_locks[key].release()
        remaining = self._pair_users[key] - 1
        if remaining:
            self._pair_users[key] = remaining
            return
        # Nobody holds or waits for the pair any more.
        del self._pair_users[key]
        del self._pair_locks[key]

    async def view(self, user_id: str) -> UserView:
        view = self._views.get(user_id)
        if view is not None:
            return view
        records = await self.ledger.current_actions(user_id)
        return self._views.setdefault(user_id, UserView.from_records(records))

    def item_state(self, user_id: str, grant_id: str) -> ItemState:
        view = self._views.get(user_id)
        if view is None:
            return ItemState()
        return view.state_of(grant_id)

    async def apply_action(self, user_id: str, grant_id: str, action: Action) -> InteractionResult:
        return await self._submit(user_id, grant_id, action, undo_only=False)

    async def undo_action(self, user_id: str, grant_id: str, action: Action) -> InteractionResult:
        return await self._submit(user_id, grant_id, action, undo_only=True)

    async def _submit(
        self,
        user_id: str,
        grant_id: str,
        action: Action,
        *,
        undo_only: bool,
    ) -> InteractionResult:
        key = (user_id, grant_id)
        lock = self._enter_pair(key)
        try:
            await lock.acquire()
        except BaseException:
            self._leave_pair(key, release=False)
            raise
        try:
            view = await self.view(user_id)
        except BaseException:
            self._leave_pair(key)
            raise

        previous = view.actions.get(grant_id)
        if undo_only and previous != action:
            self._leave_pair(key)
            return InteractionResult(
                user_id=user_id,
                grant_id=grant_id,
                action=previous,
                previous_action=previous,
            )

        # Re-issuing the current action is an undo.
        effective: Action | None = None if previous == action else action
        snapshot = view.snapshot(grant_id)
        view.items[grant_id] = ItemState(status="pending", action=effective)
        view.apply(grant_id, effective, now_utc_iso())
        detached = self.manager.detach(user_id, grant_id) if effective is not None else None

        commit = asyncio.ensure_future(
            self._commit(user_id, grant_id, previous, effective, view, snapshot, detached)
        )

        def finish(task: asyncio.Future[InteractionResult]) -> None:
            self._leave_pair(key)
            if not task.cancelled():
                # Already logged by _commit; mark retrieved for abandoned callers.
                task.exception()

        # The pair stays locked until the ledger answers, even if the caller goes away.
        commit.add_done_callback(finish)
        try:
            return await asyncio.shield(commit)
        except asyncio.CancelledError:
            LOGGER.info(
                json.dumps(
                    {
                        "event": "interaction_caller_cancelled",
                        "user_id": user_id,
                        "grant_id": grant_id,
                    }
                )
            )
            raise

    async def _commit(
        self,
        user_id: str,
        grant_id: str,
        previous: Action | None,
        effective: Action | None,
        view: UserView,
        snapshot: ItemSnapshot,
        detached: DetachedEntry | None,
    ) -> InteractionResult:
        try:
            if effective is None:
                record = await self.ledger.clear_action(user_id, grant_id, previous)
            else:
                record = await self.ledger.record_action(user_id, grant_id, effective)
        except Exception as exc:
            view.restore(grant_id, snapshot)
            self.manager.restore(user_id, grant_id, detached)
            self._count("interactions_rolled_back")
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "interaction_rolled_back",
                        "user_id": user_id,
                        "grant_id": grant_id,
                        "action": effective,
                        "restored_action": snapshot.action,
                        "error": str(exc),
                    }
                )
            )
            raise

        if effective is None:
            view.items.pop(grant_id, None)
        else:
            view.items[grant_id] = ItemState(status="committed", action=effective)
            view.updated_at[grant_id] = record.timestamp
        self.manager.on_interaction(user_id, grant_id)
        self._count("interactions_committed")
        LOGGER.info(
            json.dumps(
                {
                    "event": "interaction_committed",
                    "user_id": user_id,
                    "grant_id": grant_id,
                    "action": effective,
                    "previous_action": previous,
                    "record_id": record.record_id,
                }
            )
        )
        return InteractionResult(
            user_id=user_id,
            grant_id=grant_id,
            action=effective,
            previous_action=previous,
            committed_at=record.timestamp,
        )

    def reload(self, user_id: str) -> None:
        self._views.pop(user_id, None)

    def discard(self, user_id: str) -> None:
        self._views.pop(user_id, None)
