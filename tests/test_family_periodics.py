"""Tests for the family background tasks."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from expense_tracker.managers.family_cleanup import OrphanCleanupResult, SweepResult
from expense_tracker.routes.family.periodics import (
    EXPIRY_DOC_ID,
    ORPHAN_CLEANUP_DOC_ID,
    get_last_run_time,
    periodic_join_request_expiry,
    periodic_orphaned_family_cleanup,
    set_last_run_time,
)


@pytest.fixture
def system_collection():
    collection = MagicMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.update_one = AsyncMock()
    return collection


@pytest.fixture
def mock_db(system_collection):
    db = MagicMock()
    db.get_collection.return_value = system_collection
    return db


@pytest.mark.asyncio
async def test_last_run_time_round_trip_through_system_collection(mock_db, system_collection):
    run_at = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    await set_last_run_time(EXPIRY_DOC_ID, run_at, mock_db)

    system_collection.update_one.assert_awaited_once_with(
        {"_id": EXPIRY_DOC_ID}, {"$set": {"last_run": run_at.isoformat()}}, upsert=True
    )

    system_collection.find_one.return_value = {"_id": EXPIRY_DOC_ID, "last_run": "2024-03-01T09:00:00"}
    last_run = await get_last_run_time(EXPIRY_DOC_ID, mock_db)
    assert last_run == run_at


@pytest.mark.asyncio
async def test_missing_last_run_time_is_none(mock_db):
    assert await get_last_run_time(ORPHAN_CLEANUP_DOC_ID, mock_db) is None


@pytest.mark.asyncio
async def test_expiry_task_sweeps_when_due(mock_db, system_collection):
    sweeper = MagicMock()
    sweeper.sweep = AsyncMock(return_value=SweepResult(expired=2))

    with patch("expense_tracker.routes.family.periodics.asyncio.sleep", AsyncMock(side_effect=[None, asyncio.CancelledError()])):
        with pytest.raises(asyncio.CancelledError):
            await periodic_join_request_expiry(sweeper=sweeper, interval=60, initial_delay=0, database=mock_db)

    sweeper.sweep.assert_awaited_once()
    args = system_collection.update_one.await_args.args
    assert args[0] == {"_id": EXPIRY_DOC_ID}


@pytest.mark.asyncio
async def test_expiry_task_skips_when_recently_run(mock_db, system_collection):
    recent = datetime.now(timezone.utc) - timedelta(seconds=10)
    system_collection.find_one.return_value = {"_id": EXPIRY_DOC_ID, "last_run": recent.isoformat()}
    sweeper = MagicMock()
    sweeper.sweep = AsyncMock()

    with patch("expense_tracker.routes.family.periodics.asyncio.sleep", AsyncMock(side_effect=[None, asyncio.CancelledError()])):
        with pytest.raises(asyncio.CancelledError):
            await periodic_join_request_expiry(sweeper=sweeper, interval=3600, initial_delay=0, database=mock_db)

    sweeper.sweep.assert_not_awaited()
    system_collection.update_one.assert_not_awaited()


@pytest.mark.asyncio
async def test_expiry_task_survives_a_failed_run(mock_db, system_collection):
    sweeper = MagicMock()
    sweeper.sweep = AsyncMock(side_effect=[RuntimeError("mongo down"), SweepResult()])
    sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

    with patch("expense_tracker.routes.family.periodics.asyncio.sleep", sleep):
        with pytest.raises(asyncio.CancelledError):
            await periodic_join_request_expiry(sweeper=sweeper, interval=60, initial_delay=0, database=mock_db)

    assert sweeper.sweep.await_count == 2
    system_collection.update_one.assert_awaited_once()


@pytest.mark.asyncio
async def test_orphan_cleanup_task_runs_cleaner(mock_db, system_collection):
    cleaner = MagicMock()
    cleaner.cleanup = AsyncMock(return_value=OrphanCleanupResult(pointers_cleared=1))

    with patch("expense_tracker.routes.family.periodics.asyncio.sleep", AsyncMock(side_effect=asyncio.CancelledError())):
        with pytest.raises(asyncio.CancelledError):
            await periodic_orphaned_family_cleanup(cleaner=cleaner, interval=60, database=mock_db)

    cleaner.cleanup.assert_awaited_once()
    assert system_collection.update_one.await_args.args[0] == {"_id": ORPHAN_CLEANUP_DOC_ID}
