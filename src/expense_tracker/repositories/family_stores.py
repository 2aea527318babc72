"""
Persistence contracts and MongoDB stores for families, join requests and users.

Stores only ever hand out and accept immutable snapshots. ``save`` is a
compare-and-set on ``version``: a snapshot whose version no longer matches the
stored document raises ConcurrentModification and nothing is written. A
snapshot with version 0 is an insert. The stored version is incremented on
every successful save and the returned snapshot carries the new version.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from expense_tracker.config import settings
from expense_tracker.database import DatabaseManager, db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models.family_models import ExpenseUser, Family, JoinRequest, JoinRequestStatus
from expense_tracker.utils.datetime_utils import ensure_timezone_aware

logger = get_logger(prefix="[FamilyStores]")


class ConcurrentModification(Exception):
    """The stored document changed (or vanished) since the snapshot was read."""

    def __init__(self, entity: str, entity_id: str, expected_version: Optional[int] = None):
        super().__init__(f"{entity} {entity_id} was modified concurrently (expected version {expected_version})")
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version


@runtime_checkable
class FamilyStore(Protocol):
    async def find_by_id(self, family_id: str) -> Optional[Family]: ...

    async def find_by_alias(self, alias_name: str) -> Optional[Family]: ...

    async def find_by_name(self, name: str) -> Optional[Family]: ...

    async def alias_exists(self, alias_name: str) -> bool: ...

    async def exists_by_id(self, family_id: str) -> bool: ...

    async def find_with_pending_requests(self) -> List[Family]: ...

    async def save(self, family: Family) -> Family: ...

    async def delete(self, family: Family) -> None: ...


@runtime_checkable
class JoinRequestStore(Protocol):
    async def find_by_id(self, request_id: str) -> Optional[JoinRequest]: ...

    async def find_by_requester_and_family(
        self, requester_id: str, family_id: str, status: Optional[JoinRequestStatus] = None
    ) -> List[JoinRequest]: ...

    async def find_history(self, requester_id: str, family_id: str) -> List[JoinRequest]: ...

    async def find_by_requester(
        self, requester_id: str, status: Optional[JoinRequestStatus] = None
    ) -> List[JoinRequest]: ...

    async def find_by_family(self, family_id: str, status: Optional[JoinRequestStatus] = None) -> List[JoinRequest]: ...

    async def find_pending_older_than(self, cutoff: datetime) -> List[JoinRequest]: ...

    async def save(self, request: JoinRequest) -> JoinRequest: ...


@runtime_checkable
class UserStore(Protocol):
    async def find_by_id(self, user_id: str) -> Optional[ExpenseUser]: ...

    async def find_by_email(self, email: str) -> Optional[ExpenseUser]: ...

    async def find_with_family(self) -> List[ExpenseUser]: ...

    async def save(self, user: ExpenseUser) -> ExpenseUser: ...


def _version_filter(version: int) -> Dict[str, Any]:
    # Documents written before versioning existed count as version 0.
    if version == 0:
        return {"$or": [{"version": 0}, {"version": {"$exists": False}}]}
    return {"version": version}


def _aware(doc: Dict[str, Any], *fields: str) -> Dict[str, Any]:
    for field in fields:
        if isinstance(doc.get(field), datetime):
            doc[field] = ensure_timezone_aware(doc[field])
    return doc


class MongoFamilyStore:
    """FamilyStore over the ``families`` collection."""

    def __init__(self, database: DatabaseManager = db_manager, collection_name: Optional[str] = None):
        self.db = database
        self.collection_name = collection_name or settings.FAMILIES_COLLECTION

    @property
    def collection(self):
        return self.db.get_collection(self.collection_name)

    @staticmethod
    def _to_document(family: Family) -> Dict[str, Any]:
        doc = family.model_dump(mode="python")
        doc["members_ids"] = list(family.members_ids)
        doc["pending_join_requests"] = list(family.pending_join_requests)
        doc["pending_member_emails"] = list(family.pending_member_emails)
        doc["name_lower"] = family.name.lower()
        return doc

    @staticmethod
    def _from_document(doc: Optional[Dict[str, Any]]) -> Optional[Family]:
        if doc is None:
            return None
        doc.pop("_id", None)
        doc.pop("name_lower", None)
        return Family.model_validate(_aware(doc, "created_at", "updated_at"))

    async def _find_one(self, operation: str, query: Dict[str, Any]) -> Optional[Family]:
        start_time = self.db.log_query_start(self.collection_name, operation, query)
        try:
            doc = await self.collection.find_one(query)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, operation, start_time, e, query)
            raise
        self.db.log_query_success(self.collection_name, operation, start_time, 1 if doc else 0)
        return self._from_document(doc)

    async def find_by_id(self, family_id: str) -> Optional[Family]:
        return await self._find_one("find_family_by_id", {"family_id": family_id})

    async def find_by_alias(self, alias_name: str) -> Optional[Family]:
        return await self._find_one("find_family_by_alias", {"alias_name": alias_name.upper()})

    async def find_by_name(self, name: str) -> Optional[Family]:
        return await self._find_one("find_family_by_name", {"name_lower": name.lower()})

    async def alias_exists(self, alias_name: str) -> bool:
        return await self.collection.count_documents({"alias_name": alias_name.upper()}, limit=1) > 0

    async def exists_by_id(self, family_id: str) -> bool:
        return await self.collection.count_documents({"family_id": family_id}, limit=1) > 0

    async def find_with_pending_requests(self) -> List[Family]:
        query = {"pending_join_requests.0": {"$exists": True}}
        start_time = self.db.log_query_start(self.collection_name, "find_families_with_pending_requests", query)
        try:
            docs = await self.collection.find(query).to_list(length=None)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "find_families_with_pending_requests", start_time, e, query)
            raise
        self.db.log_query_success(self.collection_name, "find_families_with_pending_requests", start_time, len(docs))
        return [self._from_document(doc) for doc in docs]

    async def save(self, family: Family) -> Family:
        saved = family.model_copy(update={"version": family.version + 1})
        doc = self._to_document(saved)
        start_time = self.db.log_query_start(self.collection_name, "save_family", {"family_id": family.family_id})
        try:
            if family.version == 0:
                await self.collection.insert_one(doc)
            else:
                result = await self.collection.find_one_and_update(
                    {"family_id": family.family_id, **_version_filter(family.version)},
                    {"$set": doc},
                    return_document=ReturnDocument.AFTER,
                )
                if result is None:
                    logger.debug("Family %s version %d is stale", family.family_id, family.version)
                    raise ConcurrentModification("Family", family.family_id, family.version)
        except DuplicateKeyError as e:
            self.db.log_query_error(self.collection_name, "save_family", start_time, e)
            raise ConcurrentModification("Family", family.family_id, family.version) from e
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "save_family", start_time, e)
            raise
        self.db.log_query_success(self.collection_name, "save_family", start_time)
        return saved

    async def delete(self, family: Family) -> None:
        query = {"family_id": family.family_id, **_version_filter(family.version)}
        start_time = self.db.log_query_start(self.collection_name, "delete_family", query)
        try:
            result = await self.collection.delete_one(query)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "delete_family", start_time, e, query)
            raise
        if result.deleted_count == 0:
            raise ConcurrentModification("Family", family.family_id, family.version)
        self.db.log_query_success(self.collection_name, "delete_family", start_time, result.deleted_count)


class MongoJoinRequestStore:
    """JoinRequestStore over the ``family_join_requests`` collection."""

    def __init__(self, database: DatabaseManager = db_manager, collection_name: Optional[str] = None):
        self.db = database
        self.collection_name = collection_name or settings.JOIN_REQUESTS_COLLECTION

    @property
    def collection(self):
        return self.db.get_collection(self.collection_name)

    @staticmethod
    def _from_document(doc: Dict[str, Any]) -> JoinRequest:
        doc.pop("_id", None)
        return JoinRequest.model_validate(_aware(doc, "created_at", "updated_at"))

    async def _find_many(self, operation: str, query: Dict[str, Any], sort_direction: int) -> List[JoinRequest]:
        start_time = self.db.log_query_start(self.collection_name, operation, query)
        try:
            cursor = self.collection.find(query).sort("created_at", sort_direction)
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, operation, start_time, e, query)
            raise
        self.db.log_query_success(self.collection_name, operation, start_time, len(docs))
        return [self._from_document(doc) for doc in docs]

    async def find_by_id(self, request_id: str) -> Optional[JoinRequest]:
        doc = await self.collection.find_one({"id": request_id})
        return self._from_document(doc) if doc else None

    async def find_by_requester_and_family(
        self, requester_id: str, family_id: str, status: Optional[JoinRequestStatus] = None
    ) -> List[JoinRequest]:
        query: Dict[str, Any] = {"requester_id": requester_id, "family_id": family_id}
        if status is not None:
            query["status"] = status.value
        return await self._find_many("find_join_requests_by_pair", query, DESCENDING)

    async def find_history(self, requester_id: str, family_id: str) -> List[JoinRequest]:
        return await self.find_by_requester_and_family(requester_id, family_id)

    async def find_by_requester(
        self, requester_id: str, status: Optional[JoinRequestStatus] = None
    ) -> List[JoinRequest]:
        query: Dict[str, Any] = {"requester_id": requester_id}
        if status is not None:
            query["status"] = status.value
        return await self._find_many("find_join_requests_by_requester", query, DESCENDING)

    async def find_by_family(self, family_id: str, status: Optional[JoinRequestStatus] = None) -> List[JoinRequest]:
        query: Dict[str, Any] = {"family_id": family_id}
        if status is not None:
            query["status"] = status.value
        return await self._find_many("find_join_requests_by_family", query, DESCENDING)

    async def find_pending_older_than(self, cutoff: datetime) -> List[JoinRequest]:
        query = {"status": JoinRequestStatus.PENDING.value, "created_at": {"$lt": cutoff}}
        return await self._find_many("find_stale_join_requests", query, ASCENDING)

    async def save(self, request: JoinRequest) -> JoinRequest:
        saved = request.model_copy(update={"version": request.version + 1})
        doc = saved.model_dump(mode="python")
        doc["status"] = saved.status.value
        start_time = self.db.log_query_start(self.collection_name, "save_join_request", {"id": request.id})
        try:
            if request.version == 0:
                await self.collection.insert_one(doc)
            else:
                result = await self.collection.find_one_and_update(
                    {"id": request.id, **_version_filter(request.version)},
                    {"$set": doc},
                    return_document=ReturnDocument.AFTER,
                )
                if result is None:
                    raise ConcurrentModification("JoinRequest", request.id, request.version)
        except DuplicateKeyError as e:
            # Another PENDING row for the same pair won the race.
            self.db.log_query_error(self.collection_name, "save_join_request", start_time, e)
            raise ConcurrentModification("JoinRequest", request.id, request.version) from e
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "save_join_request", start_time, e)
            raise
        self.db.log_query_success(self.collection_name, "save_join_request", start_time)
        return saved


class MongoUserStore:
    """
    UserStore over the shared ``users`` collection.

    Only the membership pointer (``family_id``), ``updated_at`` and ``version``
    are ever written; the rest of the user document belongs to the account
    service.
    """

    def __init__(self, database: DatabaseManager = db_manager, collection_name: Optional[str] = None):
        self.db = database
        self.collection_name = collection_name or settings.USERS_COLLECTION

    @property
    def collection(self):
        return self.db.get_collection(self.collection_name)

    @staticmethod
    def _id_filter(user_id: str) -> Dict[str, Any]:
        if ObjectId.is_valid(user_id):
            return {"_id": {"$in": [ObjectId(user_id), user_id]}}
        return {"_id": user_id}

    @staticmethod
    def _from_document(doc: Optional[Dict[str, Any]]) -> Optional[ExpenseUser]:
        if doc is None:
            return None
        data = {
            "id": str(doc["_id"]),
            "email": doc.get("email", ""),
            "name": doc.get("name") or doc.get("username") or "",
            "family_id": doc.get("family_id"),
            "version": doc.get("version", 0),
        }
        if isinstance(doc.get("updated_at"), datetime):
            data["updated_at"] = ensure_timezone_aware(doc["updated_at"])
        return ExpenseUser.model_validate(data)

    async def find_by_id(self, user_id: str) -> Optional[ExpenseUser]:
        return self._from_document(await self.collection.find_one(self._id_filter(user_id)))

    async def find_by_email(self, email: str) -> Optional[ExpenseUser]:
        return self._from_document(await self.collection.find_one({"email": email.lower()}))

    async def find_with_family(self) -> List[ExpenseUser]:
        query = {"family_id": {"$ne": None}}
        start_time = self.db.log_query_start(self.collection_name, "find_users_with_family", query)
        try:
            docs = await self.collection.find(query).to_list(length=None)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "find_users_with_family", start_time, e, query)
            raise
        self.db.log_query_success(self.collection_name, "find_users_with_family", start_time, len(docs))
        return [self._from_document(doc) for doc in docs]

    async def save(self, user: ExpenseUser) -> ExpenseUser:
        saved = user.model_copy(update={"version": user.version + 1})
        query = {**self._id_filter(user.id), **_version_filter(user.version)}
        update = {"$set": {"family_id": saved.family_id, "updated_at": saved.updated_at, "version": saved.version}}
        start_time = self.db.log_query_start(self.collection_name, "save_user_family_pointer", {"_id": user.id})
        try:
            result = await self.collection.update_one(query, update)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "save_user_family_pointer", start_time, e)
            raise
        if result.matched_count == 0:
            logger.debug("User %s version %d is stale or the user is gone", user.id, user.version)
            raise ConcurrentModification("User", user.id, user.version)
        self.db.log_query_success(self.collection_name, "save_user_family_pointer", start_time)
        return saved
