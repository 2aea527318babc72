"""Request and response models for the family membership API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from expense_tracker.models.family_models import (
    Family,
    FamilyDetails,
    FamilyMemberSnapshot,
    JoinRequest,
    JoinRequestStatus,
    PendingJoinRequestView,
)

JOIN_REQUEST_MESSAGE_MAX_LENGTH: int = 500


def _normalize_alias(v: Any) -> Any:
    # Non-strings fall through to the str field, which rejects them with a 422.
    if not isinstance(v, str):
        return v
    return v.strip().upper()


# Request Models
class CreateFamilyRequest(BaseModel):
    """
    Request model for creating a new family.

    The requesting user becomes the family head and its only member.
    """

    name: str = Field(..., description="Family name", json_schema_extra={"example": "Smith Family"})

    model_config = {"json_schema_extra": {"example": {"name": "Smith Family"}}}


class UpdateFamilyNameRequest(BaseModel):
    name: str = Field(..., description="New family name", json_schema_extra={"example": "The Smiths"})


class FamilyAliasRequest(BaseModel):
    """Identifies a family by its public alias (used to accept or reject an invitation)."""

    family_alias: str = Field(..., description="Public family alias", json_schema_extra={"example": "AB12CD"})

    @field_validator("family_alias", mode="before")
    @classmethod
    def normalize_alias(cls, v):
        return _normalize_alias(v)


class InviteMemberRequest(BaseModel):
    email: str = Field(..., description="Email of the user to invite", json_schema_extra={"example": "jo@example.com"})


class RemoveMemberRequest(BaseModel):
    member_id: str = Field(..., description="User id of the member to remove")


class JoinRequestCreate(BaseModel):
    """
    Request model for asking to join a family.

    The optional message is shown to the family head with the request.
    """

    family_alias: str = Field(..., description="Alias of the family to join", json_schema_extra={"example": "AB12CD"})
    message: Optional[str] = Field(
        None,
        max_length=JOIN_REQUEST_MESSAGE_MAX_LENGTH,
        description="Optional note for the family head",
    )

    @field_validator("family_alias", mode="before")
    @classmethod
    def normalize_alias(cls, v):
        return _normalize_alias(v)


class JoinRequestResend(BaseModel):
    """Names the target family by alias or by one of the caller's earlier request ids."""

    family_alias: Optional[str] = Field(None, description="Alias of the family")
    request_id: Optional[str] = Field(None, description="Id of an earlier join request to this family")
    message: Optional[str] = Field(None, max_length=JOIN_REQUEST_MESSAGE_MAX_LENGTH)

    @field_validator("family_alias", mode="before")
    @classmethod
    def normalize_alias(cls, v):
        return _normalize_alias(v)


class JoinRequestCancel(BaseModel):
    family_alias: Optional[str] = Field(None, description="Alias of the family")
    request_id: Optional[str] = Field(None, description="Id of the pending join request")

    @field_validator("family_alias", mode="before")
    @classmethod
    def normalize_alias(cls, v):
        return _normalize_alias(v)


class JoinRequestDecision(BaseModel):
    requester_id: str = Field(..., description="User id of the requester")


# Response Models
class FamilyMemberResponse(BaseModel):
    user_id: str
    name: str
    email: str
    is_head: bool

    @classmethod
    def from_snapshot(cls, snapshot: FamilyMemberSnapshot) -> "FamilyMemberResponse":
        return cls(user_id=snapshot.user_id, name=snapshot.name, email=snapshot.email, is_head=snapshot.is_head)


class FamilyResponse(BaseModel):
    """Family summary as seen by the calling user."""

    family_id: str
    name: str
    alias_name: str
    head_id: str
    max_size: int
    member_count: int
    members_ids: List[str]
    pending_join_requests: List[str] = Field(default_factory=list)
    pending_member_emails: List[str] = Field(default_factory=list)
    is_head: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_family(cls, family: Family, viewer_id: Optional[str] = None) -> "FamilyResponse":
        is_head = viewer_id is not None and family.head_id == viewer_id
        return cls(
            family_id=family.family_id,
            name=family.name,
            alias_name=family.alias_name,
            head_id=family.head_id,
            max_size=family.max_size,
            member_count=len(family.members_ids),
            members_ids=list(family.members_ids),
            # Pending lists are only shown to the head.
            pending_join_requests=list(family.pending_join_requests) if is_head else [],
            pending_member_emails=list(family.pending_member_emails) if is_head else [],
            is_head=is_head,
            created_at=family.created_at,
            updated_at=family.updated_at,
        )


class FamilyDetailsResponse(FamilyResponse):
    members: List[FamilyMemberResponse] = Field(default_factory=list)

    @classmethod
    def from_details(cls, details: FamilyDetails, viewer_id: str) -> "FamilyDetailsResponse":
        summary = FamilyResponse.from_family(details.family, viewer_id)
        return cls(
            **summary.model_dump(),
            members=[FamilyMemberResponse.from_snapshot(m) for m in details.members],
        )


class JoinRequestResponse(BaseModel):
    id: str
    requester_id: str
    family_id: str
    message: Optional[str] = None
    status: JoinRequestStatus
    created_at: datetime
    updated_at: datetime
    processed_by: Optional[str] = None

    @classmethod
    def from_request(cls, request: JoinRequest) -> "JoinRequestResponse":
        return cls(
            id=request.id,
            requester_id=request.requester_id,
            family_id=request.family_id,
            message=request.message,
            status=request.status,
            created_at=request.created_at,
            updated_at=request.updated_at,
            processed_by=request.processed_by,
        )


class OwnPendingJoinRequestResponse(JoinRequestResponse):
    """A caller's pending request with a short summary of the target family."""

    family_name: Optional[str] = None
    family_alias: Optional[str] = None
    member_count: int = 0
    max_size: int = 0

    @classmethod
    def from_view(cls, view: PendingJoinRequestView) -> "OwnPendingJoinRequestResponse":
        return cls(
            **JoinRequestResponse.from_request(view.request).model_dump(),
            family_name=view.family_name,
            family_alias=view.family_alias,
            member_count=view.member_count,
            max_size=view.max_size,
        )


class LeaveFamilyResponse(BaseModel):
    status: str = "success"
    message: str
    family_deleted: bool = False
    family: Optional[FamilyResponse] = None


class SweepResponse(BaseModel):
    status: str = "success"
    message: str
    expired: int
    families_touched: int
    skipped: int
    errors: int
    mirrors_repaired: int = 0
    cutoff: Optional[datetime] = None


class MessageResponse(BaseModel):
    status: str = "success"
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
