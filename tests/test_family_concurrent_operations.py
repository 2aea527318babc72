"""
Interleaving tests for the family manager and the expiry sweeper.

The in-memory stores yield to the event loop on every read and write, so
``asyncio.gather`` interleaves the competing operations between their reads
and their compare-and-set writes.
"""

import asyncio
from datetime import timedelta

import pytest

from expense_tracker.managers.family_cleanup import JoinRequestSweeper
from expense_tracker.managers.family_manager import FamilyConflict
from expense_tracker.models.family_models import JoinRequest, JoinRequestStatus


@pytest.fixture
def sweeper(join_request_store, family_store, clock):
    return JoinRequestSweeper(join_request_store, family_store, ttl=timedelta(days=3), clock=clock)


def assert_consistent(family_store, join_request_store, user_store, family_id, requester_id):
    """Accepted rows imply membership and a user pointer; other rows imply neither."""
    family = family_store.families[family_id]
    rows = [r for r in join_request_store.rows.values() if r.requester_id == requester_id]
    accepted = any(r.status is JoinRequestStatus.ACCEPTED for r in rows)
    assert len([r for r in rows if r.is_pending]) <= 1
    if accepted:
        assert requester_id in family.members_ids
        assert requester_id not in family.pending_join_requests
        assert user_store.users[requester_id].family_id == family_id
    else:
        assert requester_id not in family.members_ids
        assert user_store.users[requester_id].family_id is None


class TestCapacityRace:
    @pytest.mark.asyncio
    async def test_only_one_accept_fits_last_seat(self, manager, make_family, user_store, family_store):
        user_store.add("alice")
        user_store.add("bob")
        family = make_family(members=("member",), max_size=3)
        await manager.request_to_join("alice", "FAM001")
        await manager.request_to_join("bob", "FAM001")

        results = await asyncio.gather(
            manager.accept_join_request("head", "alice"),
            manager.accept_join_request("head", "bob"),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, JoinRequest)]
        conflicts = [r for r in results if isinstance(r, FamilyConflict)]
        assert len(accepted) == 1
        assert len(conflicts) == 1
        assert conflicts[0].error_code == "FAMILY_FULL"

        stored = family_store.families[family.family_id]
        assert len(stored.members_ids) == 3
        joined = [u for u in ("alice", "bob") if user_store.users[u].family_id == family.family_id]
        assert joined == [accepted[0].requester_id]


class TestDuplicateRequests:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_pending_row(
        self, manager, make_family, user_store, join_request_store, dispatcher
    ):
        user_store.add("alice")
        family = make_family()

        first, second = await asyncio.gather(
            manager.request_to_join("alice", "FAM001"),
            manager.request_to_join("alice", "FAM001"),
        )

        assert first.id == second.id
        assert len(join_request_store.pending_for("alice", family.family_id)) == 1
        assert len(dispatcher.events) == 1


class TestSweepRaces:
    async def _stale_request(self, manager, make_family, user_store, clock):
        user_store.add("alice")
        family = make_family()
        request = await manager.request_to_join("alice", "FAM001")
        clock.advance(days=4)
        return family, request

    @pytest.mark.asyncio
    async def test_sweep_and_accept_interleaved(
        self, manager, sweeper, make_family, user_store, family_store, join_request_store, clock
    ):
        family, request = await self._stale_request(manager, make_family, user_store, clock)

        sweep_result, accept_result = await asyncio.gather(
            sweeper.sweep(), manager.accept_join_request("head", "alice"), return_exceptions=True
        )

        final = join_request_store.rows[request.id]
        if isinstance(accept_result, JoinRequest):
            assert final.status is JoinRequestStatus.ACCEPTED
            assert sweep_result.expired == 0
        else:
            assert isinstance(accept_result, FamilyConflict)
            assert final.status is JoinRequestStatus.CANCELLED
        assert_consistent(family_store, join_request_store, user_store, family.family_id, "alice")

    @pytest.mark.asyncio
    async def test_accept_before_sweep_wins(
        self, manager, sweeper, make_family, user_store, family_store, join_request_store, clock
    ):
        family, request = await self._stale_request(manager, make_family, user_store, clock)

        await manager.accept_join_request("head", "alice")
        result = await sweeper.sweep()

        assert result.expired == 0
        assert join_request_store.rows[request.id].status is JoinRequestStatus.ACCEPTED
        assert_consistent(family_store, join_request_store, user_store, family.family_id, "alice")

    @pytest.mark.asyncio
    async def test_sweep_before_accept_wins(
        self, manager, sweeper, make_family, user_store, family_store, join_request_store, clock
    ):
        family, request = await self._stale_request(manager, make_family, user_store, clock)

        result = await sweeper.sweep()
        with pytest.raises(FamilyConflict) as exc_info:
            await manager.accept_join_request("head", "alice")

        assert result.expired == 1
        assert exc_info.value.error_code == "JOIN_REQUEST_NOT_PENDING"
        assert join_request_store.rows[request.id].status is JoinRequestStatus.CANCELLED
        assert_consistent(family_store, join_request_store, user_store, family.family_id, "alice")

    @pytest.mark.asyncio
    async def test_sweep_and_reject_interleaved(
        self, manager, sweeper, make_family, user_store, family_store, join_request_store, clock
    ):
        family, request = await self._stale_request(manager, make_family, user_store, clock)

        await asyncio.gather(sweeper.sweep(), manager.reject_join_request("head", "alice"), return_exceptions=True)

        final = join_request_store.rows[request.id]
        assert final.status in (JoinRequestStatus.REJECTED, JoinRequestStatus.CANCELLED)
        assert "alice" not in family_store.families[family.family_id].pending_join_requests


class TestCancelRaces:
    @pytest.mark.asyncio
    async def test_cancel_and_accept_interleaved(
        self, manager, make_family, user_store, family_store, join_request_store
    ):
        user_store.add("alice")
        family = make_family()
        request = await manager.request_to_join("alice", "FAM001")

        await asyncio.gather(
            manager.cancel_join_request("alice", request_id=request.id),
            manager.accept_join_request("head", "alice"),
            return_exceptions=True,
        )

        assert join_request_store.rows[request.id].status in (JoinRequestStatus.ACCEPTED, JoinRequestStatus.CANCELLED)
        assert_consistent(family_store, join_request_store, user_store, family.family_id, "alice")


class TestLeaveRaces:
    @pytest.mark.asyncio
    async def test_last_two_members_leave_together(self, manager, make_family, user_store, family_store):
        family = make_family(members=("member",))

        await asyncio.gather(manager.leave_family("head"), manager.leave_family("member"))

        assert family.family_id not in family_store.families
        assert user_store.users["head"].family_id is None
        assert user_store.users["member"].family_id is None
