from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from grantfinder.errors import TransientBackendError
from grantfinder.ledger import InteractionLedger
from grantfinder.repository import GrantRepository

pytestmark = pytest.mark.integration


@pytest.fixture
def repository(tmp_path: Path):
    repo = GrantRepository(database_path=str(tmp_path / "grantfinder.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


@pytest.mark.asyncio
async def test_undo_appends_a_clearing_record(repository: GrantRepository) -> None:
    ledger = InteractionLedger(repository)

    await ledger.record_action("user-1", "g-1", "saved")
    assert await ledger.current_action("user-1", "g-1") == "saved"

    cleared = await ledger.clear_action("user-1", "g-1", "saved")
    history = await ledger.history("user-1", "g-1")

    assert cleared.action is None
    assert cleared.cleared_action == "saved"
    assert await ledger.current_action("user-1", "g-1") is None
    assert [(record.action, record.cleared_action) for record in history] == [
        ("saved", None),
        (None, "saved"),
    ]


@pytest.mark.asyncio
async def test_active_items_cover_every_action(repository: GrantRepository) -> None:
    ledger = InteractionLedger(repository)
    await ledger.record_action("user-1", "g-1", "saved")
    await ledger.record_action("user-1", "g-2", "applied")
    await ledger.record_action("user-1", "g-3", "ignored")
    await ledger.record_action("user-1", "g-4", "saved")
    await ledger.clear_action("user-1", "g-4", "saved")
    await ledger.record_action("user-2", "g-5", "saved")

    current = await ledger.current_actions("user-1")

    assert await ledger.all_active_items("user-1") == {"g-1", "g-2", "g-3"}
    assert current["g-2"].action == "applied"
    assert await ledger.current_action("user-1", "g-unknown") is None


@pytest.mark.asyncio
async def test_storage_errors_surface_as_transient(repository: GrantRepository) -> None:
    ledger = InteractionLedger(repository)
    repository.connection.execute("DROP TABLE user_interactions")

    with pytest.raises(TransientBackendError) as exc_info:
        await ledger.record_action("user-1", "g-1", "saved")

    assert exc_info.value.retryable is True
    assert isinstance(exc_info.value.__cause__, sqlite3.Error)
