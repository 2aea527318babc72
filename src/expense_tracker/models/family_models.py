"""
Domain models for the family membership system.

Family, JoinRequest and ExpenseUser are immutable snapshots. Every change is an
explicit copy (``model_copy(update=...)``) that the caller then hands to the
owning store, whose ``save`` is a compare-and-set on ``version``. Nothing is
ever mutated in place, so a read-modify-write always names the snapshot it
started from.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from expense_tracker.utils.datetime_utils import utc_now


class JoinRequestStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not JoinRequestStatus.PENDING


class NotificationType(str, Enum):
    JOIN_FAMILY_REQUEST = "JOIN_FAMILY_REQUEST"
    JOIN_FAMILY_REQUEST_RESENT = "JOIN_FAMILY_REQUEST_RESENT"
    JOIN_FAMILY_REQUEST_CANCELLED = "JOIN_FAMILY_REQUEST_CANCELLED"
    JOIN_FAMILY_REQUEST_ACCEPTED = "JOIN_FAMILY_REQUEST_ACCEPTED"
    JOIN_FAMILY_REQUEST_REJECTED = "JOIN_FAMILY_REQUEST_REJECTED"
    FAMILY_MEMBER_REMOVED = "FAMILY_MEMBER_REMOVED"
    JOIN_FAMILY_INVITATION = "JOIN_FAMILY_INVITATION"
    JOIN_FAMILY_INVITATION_CANCELLED = "JOIN_FAMILY_INVITATION_CANCELLED"
    JOIN_FAMILY_INVITATION_ACCEPTED = "JOIN_FAMILY_INVITATION_ACCEPTED"
    JOIN_FAMILY_INVITATION_REJECTED = "JOIN_FAMILY_INVITATION_REJECTED"


class Family(BaseModel):
    """A family group. ``members_ids`` keeps insertion order for head succession."""

    model_config = ConfigDict(frozen=True)

    family_id: str
    head_id: str
    name: str
    alias_name: str
    max_size: int = 10
    members_ids: Tuple[str, ...] = ()
    pending_join_requests: Tuple[str, ...] = ()
    pending_member_emails: Tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    @property
    def is_full(self) -> bool:
        return len(self.members_ids) >= self.max_size

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members_ids

    def has_pending_request(self, user_id: str) -> bool:
        return user_id in self.pending_join_requests

    def has_pending_email(self, email: str) -> bool:
        return email.lower() in self.pending_member_emails

    def with_member(self, user_id: str, now: datetime) -> "Family":
        if self.has_member(user_id):
            return self
        return self.model_copy(update={"members_ids": self.members_ids + (user_id,), "updated_at": now})

    def without_member(self, user_id: str, now: datetime) -> "Family":
        members = tuple(m for m in self.members_ids if m != user_id)
        return self.model_copy(update={"members_ids": members, "updated_at": now})

    def with_pending_request(self, user_id: str, now: datetime) -> "Family":
        if self.has_pending_request(user_id):
            return self
        pending = self.pending_join_requests + (user_id,)
        return self.model_copy(update={"pending_join_requests": pending, "updated_at": now})

    def without_pending_request(self, user_id: str, now: datetime) -> "Family":
        if not self.has_pending_request(user_id):
            return self
        pending = tuple(u for u in self.pending_join_requests if u != user_id)
        return self.model_copy(update={"pending_join_requests": pending, "updated_at": now})

    def with_pending_email(self, email: str, now: datetime) -> "Family":
        email = email.lower()
        if email in self.pending_member_emails:
            return self
        emails = self.pending_member_emails + (email,)
        return self.model_copy(update={"pending_member_emails": emails, "updated_at": now})

    def without_pending_email(self, email: str, now: datetime) -> "Family":
        email = email.lower()
        emails = tuple(e for e in self.pending_member_emails if e != email)
        return self.model_copy(update={"pending_member_emails": emails, "updated_at": now})

    def with_head(self, head_id: str, now: datetime) -> "Family":
        return self.model_copy(update={"head_id": head_id, "updated_at": now})

    def renamed(self, name: str, now: datetime) -> "Family":
        return self.model_copy(update={"name": name, "updated_at": now})


class JoinRequest(BaseModel):
    """One attempt by a user to join a family. Rows are never deleted."""

    model_config = ConfigDict(frozen=True)

    id: str
    requester_id: str
    family_id: str
    message: Optional[str] = None
    status: JoinRequestStatus = JoinRequestStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    processed_by: Optional[str] = None
    version: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status is JoinRequestStatus.PENDING

    def transitioned(
        self, status: JoinRequestStatus, now: datetime, processed_by: Optional[str] = None
    ) -> "JoinRequest":
        """Copy moved out of PENDING. Terminal rows cannot change status again."""
        if not self.is_pending:
            raise ValueError(f"Join request {self.id} is already {self.status.value}")
        return self.model_copy(update={"status": status, "updated_at": now, "processed_by": processed_by})


class ExpenseUser(BaseModel):
    """Membership view of a user. ``family_id`` is the authoritative affiliation."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str = ""
    family_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    def joined(self, family_id: str, now: datetime) -> "ExpenseUser":
        return self.model_copy(update={"family_id": family_id, "updated_at": now})

    def detached(self, now: datetime) -> "ExpenseUser":
        return self.model_copy(update={"family_id": None, "updated_at": now})


class FamilyNotificationEvent(BaseModel):
    """Event handed to the notification dispatcher; delivery is out of band."""

    model_config = ConfigDict(frozen=True)

    recipient_user_id: str
    type: NotificationType
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class FamilyMemberSnapshot(BaseModel):
    """Member entry in family details."""

    user_id: str
    name: str
    email: str
    is_head: bool


class FamilyDetails(BaseModel):
    family: Family
    members: Tuple[FamilyMemberSnapshot, ...] = ()


class PendingJoinRequestView(BaseModel):
    """A requester's own PENDING request with a short summary of the target family."""

    request: JoinRequest
    family_name: Optional[str] = None
    family_alias: Optional[str] = None
    member_count: int = 0
    max_size: int = 0
