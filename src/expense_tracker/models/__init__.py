"""
Data models for the expense tracker family service.

Domain snapshots are immutable; state changes produce new snapshots.
"""

from .family_models import (
    ExpenseUser,
    Family,
    FamilyDetails,
    FamilyMemberSnapshot,
    FamilyNotificationEvent,
    JoinRequest,
    JoinRequestStatus,
    NotificationType,
    PendingJoinRequestView,
)

__all__ = [
    "ExpenseUser",
    "Family",
    "FamilyDetails",
    "FamilyMemberSnapshot",
    "FamilyNotificationEvent",
    "JoinRequest",
    "JoinRequestStatus",
    "NotificationType",
    "PendingJoinRequestView",
]
