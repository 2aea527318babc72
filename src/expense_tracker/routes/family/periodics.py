"""
Background tasks for family membership maintenance.

- ``periodic_join_request_expiry`` runs the join-request expiry sweep every
  JOIN_REQUEST_SWEEP_INTERVAL_SECONDS.
- ``periodic_orphaned_family_cleanup`` clears user family pointers that
  reference deleted families every ORPHAN_CLEANUP_INTERVAL_SECONDS.

The last run of each task is stored in the ``system`` collection so that a
restart does not trigger an immediate extra run. Both tasks run forever and
stop only when cancelled; a failed run is logged and retried on the next tick.
"""

import asyncio
from datetime import datetime
from typing import Optional

from expense_tracker.config import settings
from expense_tracker.database import DatabaseManager, db_manager
from expense_tracker.managers.family_cleanup import (
    FamilyReferenceCleaner,
    JoinRequestSweeper,
    family_reference_cleaner,
    join_request_sweeper,
)
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.utils.datetime_utils import ensure_timezone_aware, utc_now

logger = get_logger(prefix="[Family Periodic]")

EXPIRY_DOC_ID = "family_join_request_expiry"
ORPHAN_CLEANUP_DOC_ID = "family_orphan_cleanup"


async def get_last_run_time(doc_id: str, database: DatabaseManager = db_manager) -> Optional[datetime]:
    """Return when the task stored under ``doc_id`` last ran, or None."""
    try:
        system = database.get_collection(settings.SYSTEM_COLLECTION)
        doc = await system.find_one({"_id": doc_id})
        if doc and "last_run" in doc:
            return ensure_timezone_aware(datetime.fromisoformat(doc["last_run"]))
        logger.debug("No last run time found for %s", doc_id)
        return None
    except Exception as exc:
        logger.error("Error getting last run time for %s: %s", doc_id, exc, exc_info=True)
        raise


async def set_last_run_time(doc_id: str, dt: datetime, database: DatabaseManager = db_manager) -> None:
    try:
        system = database.get_collection(settings.SYSTEM_COLLECTION)
        await system.update_one({"_id": doc_id}, {"$set": {"last_run": dt.isoformat()}}, upsert=True)
        logger.debug("Set last run time for %s to %s", doc_id, dt.isoformat())
    except Exception as exc:
        logger.error("Error setting last run time for %s: %s", doc_id, exc, exc_info=True)
        raise


async def _is_due(doc_id: str, interval: int, database: DatabaseManager) -> bool:
    last_run = await get_last_run_time(doc_id, database)
    return last_run is None or (utc_now() - last_run).total_seconds() >= interval


async def periodic_join_request_expiry(
    sweeper: Optional[JoinRequestSweeper] = None,
    interval: Optional[int] = None,
    initial_delay: Optional[int] = None,
    database: DatabaseManager = db_manager,
) -> None:
    """
    Expire stale PENDING join requests on a fixed interval.

    Args:
        sweeper: Sweeper to run; the global one by default
        interval: Seconds between runs (JOIN_REQUEST_SWEEP_INTERVAL_SECONDS)
        initial_delay: Seconds to wait after startup (JOIN_REQUEST_SWEEP_INITIAL_DELAY_SECONDS)
    """
    sweeper = sweeper or join_request_sweeper
    interval = interval if interval is not None else settings.JOIN_REQUEST_SWEEP_INTERVAL_SECONDS
    initial_delay = initial_delay if initial_delay is not None else settings.JOIN_REQUEST_SWEEP_INITIAL_DELAY_SECONDS
    logger.info("Starting periodic join request expiry task with interval %ds", interval)

    await asyncio.sleep(initial_delay)
    while True:
        try:
            if await _is_due(EXPIRY_DOC_ID, interval, database):
                result = await sweeper.sweep()
                await set_last_run_time(EXPIRY_DOC_ID, utc_now(), database)
                if result.expired:
                    logger.info("Expired %d stale join requests", result.expired)
        except asyncio.CancelledError:
            logger.info("Periodic join request expiry task cancelled")
            raise
        except Exception as e:
            logger.error("Error in periodic join request expiry: %s", e, exc_info=True)
        await asyncio.sleep(interval)


async def periodic_orphaned_family_cleanup(
    cleaner: Optional[FamilyReferenceCleaner] = None,
    interval: Optional[int] = None,
    database: DatabaseManager = db_manager,
) -> None:
    """Clear family pointers left behind by deleted families on a fixed interval."""
    cleaner = cleaner or family_reference_cleaner
    interval = interval if interval is not None else settings.ORPHAN_CLEANUP_INTERVAL_SECONDS
    logger.info("Starting periodic orphaned family reference cleanup with interval %ds", interval)

    while True:
        try:
            if await _is_due(ORPHAN_CLEANUP_DOC_ID, interval, database):
                result = await cleaner.cleanup()
                await set_last_run_time(ORPHAN_CLEANUP_DOC_ID, utc_now(), database)
                if result.pointers_cleared:
                    logger.info("Cleared %d orphaned family references", result.pointers_cleared)
        except asyncio.CancelledError:
            logger.info("Periodic orphaned family cleanup task cancelled")
            raise
        except Exception as e:
            logger.error("Error in periodic orphaned family cleanup: %s", e, exc_info=True)
        await asyncio.sleep(interval)
