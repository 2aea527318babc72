"""
HTTP tests for the family routes.

The routes run against the in-memory stores from conftest; the route rate
limiter is replaced with a mock so no Redis is needed.
"""

from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt
import pytest

from expense_tracker.config import settings
from expense_tracker.managers.family_cleanup import JoinRequestSweeper
from expense_tracker.models.family_models import NotificationType
from expense_tracker.routes.family import router
from expense_tracker.routes.family.dependencies import (
    get_family_manager,
    get_join_request_sweeper,
    get_security_manager,
)


def make_token(user_id: str, role: str = None) -> str:
    claims = {"sub": user_id}
    if role:
        claims["role"] = role
    return jwt.encode(claims, settings.SECRET_KEY.get_secret_value(), algorithm=settings.ALGORITHM)


def auth(user_id: str, role: str = None) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


@pytest.fixture
def security():
    security = MagicMock()
    security.check_rate_limit = AsyncMock()
    return security


@pytest.fixture
def sweeper(join_request_store, family_store, clock):
    return JoinRequestSweeper(join_request_store=join_request_store, family_store=family_store, clock=clock)


@pytest.fixture
def client(manager, security, sweeper):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_family_manager] = lambda: manager
    app.dependency_overrides[get_security_manager] = lambda: security
    app.dependency_overrides[get_join_request_sweeper] = lambda: sweeper
    return TestClient(app)


@pytest.fixture
def family(make_family, user_store):
    user_store.add("requester", name="Requester")
    user_store.add("alice", name="Alice")
    return make_family()


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/family")
        assert response.status_code == 401

    def test_invalid_token(self, client):
        response = client.get("/family", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_unknown_user(self, client):
        response = client.get("/family", headers=auth("ghost"))
        assert response.status_code == 401


class TestFamilyEndpoints:
    def test_create_family(self, client, family, security):
        response = client.post("/family/create", json={"name": "Alice Family"}, headers=auth("alice"))

        assert response.status_code == 201
        body = response.json()
        assert body["head_id"] == "alice"
        assert body["is_head"] is True
        assert body["member_count"] == 1
        assert len(body["alias_name"]) == settings.FAMILY_ALIAS_LENGTH

        security.check_rate_limit.assert_awaited_once()
        kwargs = security.check_rate_limit.await_args.kwargs
        assert kwargs["identity"] == "alice"
        assert kwargs["rate_limit_requests"] == settings.FAMILY_CREATE_RATE_LIMIT

    def test_create_family_while_in_one(self, client, family):
        response = client.post("/family/create", json={"name": "Second Family"}, headers=auth("head"))

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "ALREADY_IN_FAMILY"

    def test_get_details(self, client, family):
        response = client.get("/family", headers=auth("head"))

        assert response.status_code == 200
        body = response.json()
        assert body["family_id"] == family.family_id
        assert [m["user_id"] for m in body["members"]] == ["head"]
        assert body["members"][0]["is_head"] is True

    def test_get_details_without_family(self, client, family):
        response = client.get("/family", headers=auth("alice"))
        assert response.status_code == 404

    def test_leave_as_last_member_deletes_family(self, client, family, family_store):
        response = client.post("/family/leave", headers=auth("head"))

        assert response.status_code == 200
        assert response.json()["family_deleted"] is True
        assert family.family_id not in family_store.families

    def test_unexpected_error_is_a_500(self, client, family, manager):
        with patch.object(manager, "get_family_details", AsyncMock(side_effect=RuntimeError("boom"))):
            response = client.get("/family", headers=auth("head"))

        assert response.status_code == 500
        assert response.json()["detail"]["error"] == "INTERNAL_ERROR"


class TestJoinRequestEndpoints:
    def test_request_and_accept(self, client, family):
        response = client.post(
            "/family/join-requests", json={"family_alias": " fam001 ", "message": "hi"}, headers=auth("requester")
        )
        assert response.status_code == 201
        assert response.json()["status"] == "PENDING"

        received = client.get("/family/join-requests/received", headers=auth("head"))
        assert [row["requester_id"] for row in received.json()] == ["requester"]

        accepted = client.post("/family/join-requests/accept", json={"requester_id": "requester"}, headers=auth("head"))
        assert accepted.status_code == 200
        assert accepted.json()["status"] == "ACCEPTED"
        assert accepted.json()["processed_by"] == "head"

    def test_unknown_alias_is_404(self, client, family):
        response = client.post("/family/join-requests", json={"family_alias": "ZZZ999"}, headers=auth("requester"))

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "FAMILY_NOT_FOUND"

    def test_malformed_alias_is_400(self, client, family):
        response = client.post("/family/join-requests", json={"family_alias": "FAM-01"}, headers=auth("requester"))

        assert response.status_code == 400
        assert response.json()["detail"]["field"] == "family_alias"

    def test_non_string_alias_is_422(self, client, family):
        response = client.post("/family/join-requests", json={"family_alias": 123}, headers=auth("requester"))

        assert response.status_code == 422

    def test_repeat_request_while_pending_is_200(self, client, family, dispatcher):
        first = client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))
        second = client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]
        assert len(dispatcher.of_type(NotificationType.JOIN_FAMILY_REQUEST)) == 1

    def test_overlong_message_is_422(self, client, family):
        response = client.post(
            "/family/join-requests", json={"family_alias": "FAM001", "message": "x" * 501}, headers=auth("requester")
        )
        assert response.status_code == 422

    def test_only_head_can_accept(self, client, family, make_family):
        make_family(head_id="other_head", members=("bob",), alias="FAM002", family_id="fam_other")
        client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))

        response = client.post("/family/join-requests/accept", json={"requester_id": "requester"}, headers=auth("bob"))

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "INSUFFICIENT_PERMISSIONS"

    def test_backoff_denial_carries_retry_after(self, client, family):
        for _ in range(2):
            created = client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))
            assert created.status_code == 201
            cancelled = client.post(
                "/family/join-requests/cancel", json={"request_id": created.json()["id"]}, headers=auth("requester")
            )
            assert cancelled.json()["status"] == "CANCELLED"

        response = client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "JOIN_REQUEST_THROTTLED"
        assert detail["reason"] == "BACKOFF"
        assert response.headers["Retry-After"] == "21600"

    def test_own_pending_requests(self, client, family):
        client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))

        response = client.get("/family/join-requests/mine", headers=auth("requester"))

        assert response.status_code == 200
        [row] = response.json()
        assert row["family_alias"] == "FAM001"
        assert row["member_count"] == 1


class TestAdminSweep:
    def test_requires_admin_role(self, client, family):
        response = client.post("/family/admin/expire-join-requests", headers=auth("head"))

        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "INSUFFICIENT_PERMISSIONS"

    def test_admin_runs_sweep(self, client, family, clock):
        client.post("/family/join-requests", json={"family_alias": "FAM001"}, headers=auth("requester"))
        clock.advance(days=settings.JOIN_REQUEST_TTL_SECONDS // 86400 + 1)

        response = client.post("/family/admin/expire-join-requests", headers=auth("alice", role="admin"))

        assert response.status_code == 200
        body = response.json()
        assert body["expired"] == 1
        assert body["families_touched"] == 1
        assert body["mirrors_repaired"] == 0
