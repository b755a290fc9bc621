"""Append-only interaction ledger.

The current action for a (user, grant) pair is always derived from the latest
record (timestamp, then record id). Undo appends a clearing record whose
``action`` is None, so earlier records stay as an audit trail.
"""

from __future__ import annotations

from grantfinder.models import Action, InteractionRecord
from grantfinder.repository import GrantRepository, run_storage


class InteractionLedger:
    def __init__(self, repository: GrantRepository) -> None:
        self.repository = repository

    async def record_action(self, user_id: str, grant_id: str, action: Action) -> InteractionRecord:
        return await run_storage(self.repository.append_interaction, user_id, grant_id, action)

    async def clear_action(self, user_id: str, grant_id: str, action: Action) -> InteractionRecord:
        return await run_storage(
            self.repository.append_interaction,
            user_id,
            grant_id,
            None,
            cleared_action=action,
        )

    async def current_action(self, user_id: str, grant_id: str) -> Action | None:
        records = await run_storage(self.repository.list_current_interactions, user_id, grant_id)
        if not records:
            return None
        return records[0].action

    async def current_actions(self, user_id: str) -> dict[str, InteractionRecord]:
        """Ledger-active records keyed by grant id, most recent first."""
        records = await run_storage(self.repository.list_current_interactions, user_id)
        return {record.grant_id: record for record in records if record.action is not None}

    async def all_active_items(self, user_id: str) -> set[str]:
        return set(await self.current_actions(user_id))

    async def history(self, user_id: str, grant_id: str) -> list[InteractionRecord]:
        return await run_storage(self.repository.list_interaction_history, user_id, grant_id)
