"""Tests for the MongoDB store implementations against a mocked motor collection."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from bson import ObjectId
import pytest
from pymongo.errors import DuplicateKeyError

from expense_tracker.config import settings
from expense_tracker.database import family_index_specs
from expense_tracker.models.family_models import ExpenseUser, Family, JoinRequest, JoinRequestStatus
from expense_tracker.repositories.family_stores import (
    ConcurrentModification,
    FamilyStore,
    JoinRequestStore,
    MongoFamilyStore,
    MongoJoinRequestStore,
    MongoUserStore,
    UserStore,
    _version_filter,
)

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def mock_db(collection):
    db = MagicMock()
    db.get_collection.return_value = collection
    return db


def make_family(version: int = 0) -> Family:
    return Family(
        family_id="fam_1",
        head_id="head",
        name="Smith Family",
        alias_name="AB12CD",
        members_ids=("head",),
        created_at=NOW,
        updated_at=NOW,
        version=version,
    )


def test_mongo_stores_satisfy_protocols(mock_db):
    assert isinstance(MongoFamilyStore(mock_db), FamilyStore)
    assert isinstance(MongoJoinRequestStore(mock_db), JoinRequestStore)
    assert isinstance(MongoUserStore(mock_db), UserStore)


def test_version_zero_matches_unversioned_documents():
    assert _version_filter(0) == {"$or": [{"version": 0}, {"version": {"$exists": False}}]}
    assert _version_filter(4) == {"version": 4}


class TestMongoFamilyStore:
    @pytest.mark.asyncio
    async def test_insert_new_family(self, mock_db, collection):
        collection.insert_one = AsyncMock()
        store = MongoFamilyStore(mock_db)

        saved = await store.save(make_family())

        assert saved.version == 1
        doc = collection.insert_one.await_args.args[0]
        assert doc["name_lower"] == "smith family"
        assert doc["members_ids"] == ["head"]
        assert doc["version"] == 1

    @pytest.mark.asyncio
    async def test_update_uses_version_filter(self, mock_db, collection):
        collection.find_one_and_update = AsyncMock(return_value={"family_id": "fam_1"})
        store = MongoFamilyStore(mock_db)

        saved = await store.save(make_family(version=3))

        query = collection.find_one_and_update.await_args.args[0]
        assert query == {"family_id": "fam_1", "version": 3}
        assert saved.version == 4

    @pytest.mark.asyncio
    async def test_stale_update_raises(self, mock_db, collection):
        collection.find_one_and_update = AsyncMock(return_value=None)
        store = MongoFamilyStore(mock_db)

        with pytest.raises(ConcurrentModification):
            await store.save(make_family(version=3))

    @pytest.mark.asyncio
    async def test_duplicate_alias_raises(self, mock_db, collection):
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("duplicate alias_name"))
        store = MongoFamilyStore(mock_db)

        with pytest.raises(ConcurrentModification):
            await store.save(make_family())

    @pytest.mark.asyncio
    async def test_find_by_alias_uppercases_and_strips_internal_fields(self, mock_db, collection):
        doc = make_family(version=2).model_dump()
        doc.update({"_id": ObjectId(), "name_lower": "smith family", "members_ids": ["head"]})
        collection.find_one = AsyncMock(return_value=doc)
        store = MongoFamilyStore(mock_db)

        family = await store.find_by_alias("ab12cd")

        collection.find_one.assert_awaited_once_with({"alias_name": "AB12CD"})
        assert family.members_ids == ("head",)
        assert family.version == 2

    @pytest.mark.asyncio
    async def test_find_with_pending_requests_matches_non_empty_lists(self, mock_db, collection):
        doc = make_family(version=3).model_dump()
        doc.update({"_id": ObjectId(), "name_lower": "smith family", "pending_join_requests": ["alice"]})
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[doc])
        collection.find.return_value = cursor
        store = MongoFamilyStore(mock_db)

        families = await store.find_with_pending_requests()

        collection.find.assert_called_once_with({"pending_join_requests.0": {"$exists": True}})
        assert families[0].pending_join_requests == ("alice",)

    @pytest.mark.asyncio
    async def test_delete_of_stale_snapshot_raises(self, mock_db, collection):
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=0))
        store = MongoFamilyStore(mock_db)

        with pytest.raises(ConcurrentModification):
            await store.delete(make_family(version=2))


class TestMongoJoinRequestStore:
    @pytest.mark.asyncio
    async def test_find_by_pair_filters_status_and_sorts_newest_first(self, mock_db, collection):
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.to_list = AsyncMock(
            return_value=[
                {
                    "_id": ObjectId(),
                    "id": "jr_1",
                    "requester_id": "u",
                    "family_id": "fam_1",
                    "status": "PENDING",
                    "created_at": datetime(2024, 3, 1, 9, 0),
                    "updated_at": datetime(2024, 3, 1, 9, 0),
                    "version": 1,
                }
            ]
        )
        collection.find.return_value = cursor
        store = MongoJoinRequestStore(mock_db)

        rows = await store.find_by_requester_and_family("u", "fam_1", JoinRequestStatus.PENDING)

        collection.find.assert_called_once_with({"requester_id": "u", "family_id": "fam_1", "status": "PENDING"})
        cursor.sort.assert_called_once_with("created_at", -1)
        assert rows[0].status is JoinRequestStatus.PENDING
        assert rows[0].created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_pending_row_raises(self, mock_db, collection):
        collection.insert_one = AsyncMock(side_effect=DuplicateKeyError("one_pending_per_pair"))
        store = MongoJoinRequestStore(mock_db)
        row = JoinRequest(id="jr_2", requester_id="u", family_id="fam_1", created_at=NOW, updated_at=NOW)

        with pytest.raises(ConcurrentModification):
            await store.save(row)

    @pytest.mark.asyncio
    async def test_transition_writes_status_value(self, mock_db, collection):
        collection.find_one_and_update = AsyncMock(return_value={"id": "jr_2"})
        store = MongoJoinRequestStore(mock_db)
        row = JoinRequest(id="jr_2", requester_id="u", family_id="fam_1", created_at=NOW, updated_at=NOW, version=1)

        saved = await store.save(row.transitioned(JoinRequestStatus.CANCELLED, NOW))

        update = collection.find_one_and_update.await_args.args[1]
        assert update["$set"]["status"] == "CANCELLED"
        assert saved.version == 2


class TestMongoUserStore:
    @pytest.mark.asyncio
    async def test_find_by_object_id_maps_username(self, mock_db, collection):
        oid = ObjectId()
        collection.find_one = AsyncMock(return_value={"_id": oid, "email": "a@example.com", "username": "alice"})
        store = MongoUserStore(mock_db)

        user = await store.find_by_id(str(oid))

        collection.find_one.assert_awaited_once_with({"_id": {"$in": [oid, str(oid)]}})
        assert user.id == str(oid)
        assert user.name == "alice"
        assert user.family_id is None
        assert user.version == 0

    @pytest.mark.asyncio
    async def test_save_only_touches_membership_fields(self, mock_db, collection):
        collection.update_one = AsyncMock(return_value=MagicMock(matched_count=1))
        store = MongoUserStore(mock_db)
        user = ExpenseUser(id="alice", email="a@example.com", family_id=None, version=2)

        saved = await store.save(user.joined("fam_1", NOW))

        query, update = collection.update_one.await_args.args
        assert query == {"_id": "alice", "version": 2}
        assert set(update["$set"]) == {"family_id", "updated_at", "version"}
        assert saved.family_id == "fam_1"
        assert saved.version == 3

    @pytest.mark.asyncio
    async def test_stale_user_raises(self, mock_db, collection):
        collection.update_one = AsyncMock(return_value=MagicMock(matched_count=0))
        store = MongoUserStore(mock_db)

        with pytest.raises(ConcurrentModification):
            await store.save(ExpenseUser(id="alice", email="a@example.com", version=1))


def test_join_request_indexes_enforce_one_pending_row_per_pair():
    [(_, keys, options)] = [spec for spec in family_index_specs() if spec[2].get("name") == "one_pending_per_pair"]
    assert keys == [("requester_id", 1), ("family_id", 1)]
    assert options["unique"] is True
    assert options["partialFilterExpression"] == {"status": "PENDING"}
    assert (settings.FAMILIES_COLLECTION, "alias_name", {"unique": True}) in family_index_specs()
