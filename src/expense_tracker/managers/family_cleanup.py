"""
Background cleanup for family membership data.

JoinRequestSweeper soft-expires join requests that stayed PENDING longer than
the configured TTL: the row becomes CANCELLED and the requester is dropped
from the family's ``pending_join_requests``. The row transition is a
compare-and-set, so a head's accept/reject or the requester's cancel that
commits first wins and the sweeper simply skips that row.

The sweep also repairs the pending mirror: a requester listed in
``pending_join_requests`` without a PENDING row (left behind when a write
failed half way) is removed once the pair has been quiet for
JOIN_REQUEST_MIRROR_GRACE_SECONDS.

FamilyReferenceCleaner clears user ``family_id`` pointers that reference a
family that no longer exists.

Both are safe to run repeatedly and concurrently with user actions. A failure
on one row or user is logged and counted; the rest of the batch still runs.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Set

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models.family_models import JoinRequest, JoinRequestStatus
from expense_tracker.repositories.family_stores import (
    ConcurrentModification,
    FamilyStore,
    JoinRequestStore,
    MongoFamilyStore,
    MongoJoinRequestStore,
    MongoUserStore,
    UserStore,
)
from expense_tracker.utils.datetime_utils import Clock, utc_now

logger = get_logger(prefix="[FamilyCleanup]")


@dataclass
class SweepResult:
    expired: int = 0
    families_touched: int = 0
    mirrors_repaired: int = 0
    skipped: int = 0
    errors: int = 0
    cutoff: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "expired": self.expired,
            "families_touched": self.families_touched,
            "mirrors_repaired": self.mirrors_repaired,
            "skipped": self.skipped,
            "errors": self.errors,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
        }


@dataclass
class OrphanCleanupResult:
    users_checked: int = 0
    pointers_cleared: int = 0
    errors: int = 0
    finished_at: Optional[datetime] = None
    missing_family_ids: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users_checked": self.users_checked,
            "pointers_cleared": self.pointers_cleared,
            "errors": self.errors,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "missing_family_ids": sorted(self.missing_family_ids),
        }


class JoinRequestSweeper:
    """Expires stale PENDING join requests."""

    def __init__(
        self,
        join_request_store: Optional[JoinRequestStore] = None,
        family_store: Optional[FamilyStore] = None,
        ttl: Optional[timedelta] = None,
        clock: Optional[Clock] = None,
        write_retries: Optional[int] = None,
        mirror_grace: Optional[timedelta] = None,
    ):
        self.join_request_store = join_request_store or MongoJoinRequestStore()
        self.family_store = family_store or MongoFamilyStore()
        self.ttl = ttl or timedelta(seconds=settings.JOIN_REQUEST_TTL_SECONDS)
        self.clock = clock or utc_now
        self.write_retries = write_retries or settings.FAMILY_WRITE_RETRIES
        self.mirror_grace = (
            mirror_grace if mirror_grace is not None else timedelta(seconds=settings.JOIN_REQUEST_MIRROR_GRACE_SECONDS)
        )
        self.last_result: Optional[SweepResult] = None

    async def sweep(self) -> SweepResult:
        """
        Cancel every PENDING request created before ``now - ttl``.

        Returns:
            SweepResult: Aggregate counts for this run
        """
        now = self.clock()
        result = SweepResult(cutoff=now - self.ttl)
        stale = await self.join_request_store.find_pending_older_than(result.cutoff)
        logger.info("Join request sweep started: %d candidates older than %s", len(stale), result.cutoff.isoformat())

        touched: Set[str] = set()
        for row in stale:
            try:
                expired = await self._expire(row)
                if not expired:
                    result.skipped += 1
                    continue
                result.expired += 1
                if await self._drop_from_pending(row.family_id, row.requester_id):
                    touched.add(row.family_id)
            except Exception as exc:
                result.errors += 1
                logger.error(
                    "Failed to expire join request %s (family %s): %s",
                    row.id,
                    row.family_id,
                    exc,
                    exc_info=True,
                    extra={"request_id": row.id, "family_id": row.family_id},
                )

        await self._repair_mirrors(result, touched)

        result.families_touched = len(touched)
        self.last_result = result
        logger.info(
            "Join request sweep finished: expired=%d families_touched=%d mirrors_repaired=%d skipped=%d errors=%d",
            result.expired,
            result.families_touched,
            result.mirrors_repaired,
            result.skipped,
            result.errors,
            extra=result.to_dict(),
        )
        return result

    async def _expire(self, row: JoinRequest) -> bool:
        """CAS the row to CANCELLED. False when someone else already moved it out of PENDING."""
        current: Optional[JoinRequest] = row
        for _ in range(self.write_retries):
            if current is None or not current.is_pending:
                return False
            try:
                await self.join_request_store.save(current.transitioned(JoinRequestStatus.CANCELLED, self.clock()))
                logger.debug("Expired join request %s", row.id)
                return True
            except ConcurrentModification:
                current = await self.join_request_store.find_by_id(row.id)
        current = await self.join_request_store.find_by_id(row.id)
        if current is None or not current.is_pending:
            return False
        raise ConcurrentModification("JoinRequest", row.id, current.version)

    async def _drop_from_pending(self, family_id: str, requester_id: str) -> bool:
        """Remove the requester from the family's pending mirror. True if the family changed."""
        for _ in range(self.write_retries):
            family = await self.family_store.find_by_id(family_id)
            if family is None or not family.has_pending_request(requester_id):
                return False
            try:
                await self.family_store.save(family.without_pending_request(requester_id, self.clock()))
                return True
            except ConcurrentModification:
                continue
        raise ConcurrentModification("Family", family_id)

    async def _repair_mirrors(self, result: SweepResult, touched: Set[str]) -> None:
        """Drop pending_join_requests entries that no PENDING row backs any more."""
        families = await self.family_store.find_with_pending_requests()
        for family in families:
            for requester_id in family.pending_join_requests:
                try:
                    if await self._repair_mirror_entry(family.family_id, requester_id):
                        result.mirrors_repaired += 1
                        touched.add(family.family_id)
                        logger.info(
                            "Removed unbacked pending entry for user %s from family %s", requester_id, family.family_id
                        )
                except Exception as exc:
                    result.errors += 1
                    logger.error(
                        "Failed to repair pending entry for user %s in family %s: %s",
                        requester_id,
                        family.family_id,
                        exc,
                        exc_info=True,
                        extra={"requester_id": requester_id, "family_id": family.family_id},
                    )

    async def _mirror_entry_is_stale(self, family_id: str, requester_id: str) -> bool:
        history = await self.join_request_store.find_history(requester_id, family_id)
        if any(row.is_pending for row in history):
            return False
        if not history:
            return True
        last_change = max(row.updated_at for row in history)
        return last_change <= self.clock() - self.mirror_grace

    async def _repair_mirror_entry(self, family_id: str, requester_id: str) -> bool:
        for _ in range(self.write_retries):
            family = await self.family_store.find_by_id(family_id)
            if family is None or not family.has_pending_request(requester_id):
                return False
            if not await self._mirror_entry_is_stale(family_id, requester_id):
                return False
            try:
                await self.family_store.save(family.without_pending_request(requester_id, self.clock()))
                return True
            except ConcurrentModification:
                continue
        raise ConcurrentModification("Family", family_id)


class FamilyReferenceCleaner:
    """Clears user family pointers that reference deleted families."""

    def __init__(
        self,
        user_store: Optional[UserStore] = None,
        family_store: Optional[FamilyStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.user_store = user_store or MongoUserStore()
        self.family_store = family_store or MongoFamilyStore()
        self.clock = clock or utc_now
        self.last_result: Optional[OrphanCleanupResult] = None

    async def cleanup(self) -> OrphanCleanupResult:
        result = OrphanCleanupResult()
        users = await self.user_store.find_with_family()
        known: Dict[str, bool] = {}

        for user in users:
            result.users_checked += 1
            try:
                family_id = user.family_id
                if family_id not in known:
                    known[family_id] = await self.family_store.exists_by_id(family_id)
                if known[family_id]:
                    continue
                await self.user_store.save(user.detached(self.clock()))
                result.pointers_cleared += 1
                result.missing_family_ids.add(family_id)
                logger.info("Cleared orphaned family reference %s from user %s", family_id, user.id)
            except ConcurrentModification:
                # The user changed since it was listed; the next run re-checks it.
                logger.debug("User %s changed during orphan cleanup; skipping", user.id)
            except Exception as exc:
                result.errors += 1
                logger.error(
                    "Failed to clean family reference for user %s: %s", user.id, exc, exc_info=True
                )

        result.finished_at = self.clock()
        self.last_result = result
        logger.info(
            "Orphaned family reference cleanup finished: checked=%d cleared=%d errors=%d",
            result.users_checked,
            result.pointers_cleared,
            result.errors,
        )
        return result

    def status(self) -> Dict[str, Any]:
        if self.last_result is None:
            return {"has_run": False}
        return {"has_run": True, **self.last_result.to_dict()}


# Global instances used by the periodic tasks and admin routes
join_request_sweeper = JoinRequestSweeper()
family_reference_cleaner = FamilyReferenceCleaner()
