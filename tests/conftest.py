"""
Pytest configuration for the family membership tests.

Provides in-memory stores that honour the persistence contract (snapshots,
versioned compare-and-set saves, one PENDING join request per pair), an
injectable clock and a recording notification dispatcher.
"""

import asyncio
from datetime import datetime, timedelta, timezone
import os
import sys
from typing import Dict, List, Optional

# Settings are validated at import time.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-family-tests")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("LOKI_ENABLED", "false")

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from expense_tracker.managers.family_manager import FamilyManager
from expense_tracker.managers.family_notifications import FamilyNotifier
from expense_tracker.managers.join_request_throttle import ThrottlePolicy
from expense_tracker.models.family_models import (
    ExpenseUser,
    Family,
    FamilyNotificationEvent,
    JoinRequest,
    JoinRequestStatus,
)
from expense_tracker.repositories.family_stores import ConcurrentModification

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryFamilyStore:
    def __init__(self):
        self.families: Dict[str, Family] = {}
        self.fail_saves = False

    async def find_by_id(self, family_id: str) -> Optional[Family]:
        await asyncio.sleep(0)
        return self.families.get(family_id)

    async def find_by_alias(self, alias_name: str) -> Optional[Family]:
        await asyncio.sleep(0)
        for family in self.families.values():
            if family.alias_name == alias_name.upper():
                return family
        return None

    async def find_by_name(self, name: str) -> Optional[Family]:
        for family in self.families.values():
            if family.name.lower() == name.lower():
                return family
        return None

    async def alias_exists(self, alias_name: str) -> bool:
        return any(f.alias_name == alias_name.upper() for f in self.families.values())

    async def exists_by_id(self, family_id: str) -> bool:
        return family_id in self.families

    async def find_with_pending_requests(self) -> List[Family]:
        await asyncio.sleep(0)
        return [f for f in self.families.values() if f.pending_join_requests]

    async def save(self, family: Family) -> Family:
        await asyncio.sleep(0)
        if self.fail_saves:
            raise RuntimeError("family store unavailable")
        current = self.families.get(family.family_id)
        if family.version == 0:
            if current is not None or await self.alias_exists(family.alias_name):
                raise ConcurrentModification("Family", family.family_id, 0)
        elif current is None or current.version != family.version:
            raise ConcurrentModification("Family", family.family_id, family.version)
        saved = family.model_copy(update={"version": family.version + 1})
        self.families[family.family_id] = saved
        return saved

    async def delete(self, family: Family) -> None:
        await asyncio.sleep(0)
        current = self.families.get(family.family_id)
        if current is None or current.version != family.version:
            raise ConcurrentModification("Family", family.family_id, family.version)
        del self.families[family.family_id]

    def put(self, family: Family) -> Family:
        stored = family.model_copy(update={"version": max(family.version, 1)})
        self.families[stored.family_id] = stored
        return stored


class InMemoryJoinRequestStore:
    def __init__(self):
        self.rows: Dict[str, JoinRequest] = {}
        self.failing_ids: set = set()
        self.fail_inserts = False

    @staticmethod
    def _newest_first(rows) -> List[JoinRequest]:
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def find_by_id(self, request_id: str) -> Optional[JoinRequest]:
        await asyncio.sleep(0)
        return self.rows.get(request_id)

    async def find_by_requester_and_family(
        self, requester_id: str, family_id: str, status: Optional[JoinRequestStatus] = None
    ) -> List[JoinRequest]:
        await asyncio.sleep(0)
        return self._newest_first(
            r
            for r in self.rows.values()
            if r.requester_id == requester_id and r.family_id == family_id and (status is None or r.status is status)
        )

    async def find_history(self, requester_id: str, family_id: str) -> List[JoinRequest]:
        return await self.find_by_requester_and_family(requester_id, family_id)

    async def find_by_requester(self, requester_id: str, status: Optional[JoinRequestStatus] = None):
        return self._newest_first(
            r for r in self.rows.values() if r.requester_id == requester_id and (status is None or r.status is status)
        )

    async def find_by_family(self, family_id: str, status: Optional[JoinRequestStatus] = None):
        return self._newest_first(
            r for r in self.rows.values() if r.family_id == family_id and (status is None or r.status is status)
        )

    async def find_pending_older_than(self, cutoff: datetime) -> List[JoinRequest]:
        return sorted(
            (r for r in self.rows.values() if r.is_pending and r.created_at < cutoff),
            key=lambda r: r.created_at,
        )

    async def save(self, request: JoinRequest) -> JoinRequest:
        await asyncio.sleep(0)
        if request.id in self.failing_ids:
            raise RuntimeError("join request store unavailable")
        if self.fail_inserts and request.version == 0:
            raise RuntimeError("join request store unavailable")
        current = self.rows.get(request.id)
        if request.version == 0:
            if current is not None:
                raise ConcurrentModification("JoinRequest", request.id, 0)
            # Mirrors the partial unique index on PENDING (requester_id, family_id).
            if request.is_pending and any(
                r.is_pending and r.requester_id == request.requester_id and r.family_id == request.family_id
                for r in self.rows.values()
            ):
                raise ConcurrentModification("JoinRequest", request.id, 0)
        elif current is None or current.version != request.version:
            raise ConcurrentModification("JoinRequest", request.id, request.version)
        saved = request.model_copy(update={"version": request.version + 1})
        self.rows[request.id] = saved
        return saved

    def put(self, request: JoinRequest) -> JoinRequest:
        stored = request.model_copy(update={"version": max(request.version, 1)})
        self.rows[stored.id] = stored
        return stored

    def pending_for(self, requester_id: str, family_id: str) -> List[JoinRequest]:
        return [
            r
            for r in self.rows.values()
            if r.is_pending and r.requester_id == requester_id and r.family_id == family_id
        ]


class InMemoryUserStore:
    def __init__(self):
        self.users: Dict[str, ExpenseUser] = {}

    async def find_by_id(self, user_id: str) -> Optional[ExpenseUser]:
        await asyncio.sleep(0)
        return self.users.get(user_id)

    async def find_by_email(self, email: str) -> Optional[ExpenseUser]:
        for user in self.users.values():
            if user.email == email.lower():
                return user
        return None

    async def find_with_family(self) -> List[ExpenseUser]:
        return [u for u in self.users.values() if u.family_id is not None]

    async def save(self, user: ExpenseUser) -> ExpenseUser:
        await asyncio.sleep(0)
        current = self.users.get(user.id)
        if current is None or current.version != user.version:
            raise ConcurrentModification("User", user.id, user.version)
        saved = user.model_copy(update={"version": user.version + 1})
        self.users[user.id] = saved
        return saved

    def add(self, user_id: str, email: Optional[str] = None, name: str = "", family_id: Optional[str] = None):
        user = ExpenseUser(
            id=user_id, email=(email or f"{user_id}@example.com").lower(), name=name, family_id=family_id, version=1
        )
        self.users[user_id] = user
        return user


class RecordingDispatcher:
    def __init__(self):
        self.events: List[FamilyNotificationEvent] = []
        self.fail = False

    async def dispatch(self, event: FamilyNotificationEvent) -> None:
        if self.fail:
            raise RuntimeError("notification transport down")
        self.events.append(event)

    def of_type(self, notification_type) -> List[FamilyNotificationEvent]:
        return [e for e in self.events if e.type == notification_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def family_store():
    return InMemoryFamilyStore()


@pytest.fixture
def join_request_store():
    return InMemoryJoinRequestStore()


@pytest.fixture
def user_store():
    return InMemoryUserStore()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def throttle_policy():
    return ThrottlePolicy()


@pytest.fixture
def manager(family_store, join_request_store, user_store, dispatcher, throttle_policy, clock):
    return FamilyManager(
        family_store=family_store,
        join_request_store=join_request_store,
        user_store=user_store,
        notifier=FamilyNotifier(dispatcher),
        throttle_policy=throttle_policy,
        clock=clock,
        max_family_size=10,
        write_retries=10,
    )


@pytest.fixture
def make_family(family_store, user_store, clock):
    """Seed a family whose head (and optional members) already point at it."""

    def _make(
        head_id: str = "head",
        members: tuple = (),
        max_size: int = 10,
        alias: str = "FAM001",
        family_id: str = "fam_test",
        name: str = "Test Family",
    ) -> Family:
        for user_id in (head_id, *members):
            existing = user_store.users.get(user_id)
            if existing is None:
                user_store.add(user_id, name=user_id.title(), family_id=family_id)
            else:
                user_store.users[user_id] = existing.model_copy(update={"family_id": family_id})
        return family_store.put(
            Family(
                family_id=family_id,
                head_id=head_id,
                name=name,
                alias_name=alias,
                max_size=max_size,
                members_ids=(head_id, *members),
                created_at=clock(),
                updated_at=clock(),
            )
        )

    return _make
