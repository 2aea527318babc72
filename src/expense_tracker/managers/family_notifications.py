"""
Family notification hand-off.

The family manager never delivers notifications itself. It builds a
FamilyNotificationEvent and passes it to a dispatcher; the Mongo dispatcher
persists the event into ``family_notifications`` where the push transport
picks it up. Dispatch is best effort: a failure is logged and never fails the
membership operation that triggered it.
"""

from typing import Any, Dict, Optional, Protocol, runtime_checkable
import uuid

from pymongo.errors import PyMongoError

from expense_tracker.config import settings
from expense_tracker.database import DatabaseManager, db_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models.family_models import FamilyNotificationEvent, NotificationType

logger = get_logger(prefix="[FamilyNotifications]")

# Title and body templates, formatted with the event's data.
NOTIFICATION_TEMPLATES: Dict[NotificationType, Dict[str, str]] = {
    NotificationType.JOIN_FAMILY_REQUEST: {
        "title": "New join request",
        "body": "{requester_name} wants to join {family_name}",
    },
    NotificationType.JOIN_FAMILY_REQUEST_RESENT: {
        "title": "Join request resent",
        "body": "{requester_name} sent another request to join {family_name}",
    },
    NotificationType.JOIN_FAMILY_REQUEST_CANCELLED: {
        "title": "Join request cancelled",
        "body": "{requester_name} cancelled their request to join {family_name}",
    },
    NotificationType.JOIN_FAMILY_REQUEST_ACCEPTED: {
        "title": "Join request accepted",
        "body": "You are now a member of {family_name}",
    },
    NotificationType.JOIN_FAMILY_REQUEST_REJECTED: {
        "title": "Join request rejected",
        "body": "Your request to join {family_name} was rejected",
    },
    NotificationType.FAMILY_MEMBER_REMOVED: {
        "title": "Removed from family",
        "body": "You were removed from {family_name}",
    },
    NotificationType.JOIN_FAMILY_INVITATION: {
        "title": "Family invitation",
        "body": "{head_name} invited you to join {family_name}",
    },
    NotificationType.JOIN_FAMILY_INVITATION_CANCELLED: {
        "title": "Family invitation cancelled",
        "body": "Your invitation to join {family_name} was cancelled",
    },
    NotificationType.JOIN_FAMILY_INVITATION_ACCEPTED: {
        "title": "Invitation accepted",
        "body": "{member_name} accepted the invitation to join {family_name}",
    },
    NotificationType.JOIN_FAMILY_INVITATION_REJECTED: {
        "title": "Invitation declined",
        "body": "{member_name} declined the invitation to join {family_name}",
    },
}


class _DefaultingDict(dict):
    def __missing__(self, key):
        return "someone"


def build_notification(
    recipient_user_id: str, notification_type: NotificationType, data: Optional[Dict[str, Any]] = None
) -> FamilyNotificationEvent:
    """Build an event whose title and body come from the type's template."""
    data = dict(data or {})
    template = NOTIFICATION_TEMPLATES[notification_type]
    return FamilyNotificationEvent(
        recipient_user_id=recipient_user_id,
        type=notification_type,
        title=template["title"],
        body=template["body"].format_map(_DefaultingDict(data)),
        data=data,
    )


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Anything that can take a notification event off the manager's hands."""

    async def dispatch(self, event: FamilyNotificationEvent) -> None: ...


class MongoNotificationDispatcher:
    """Persists events into the ``family_notifications`` collection."""

    def __init__(self, database: DatabaseManager = db_manager, collection_name: Optional[str] = None):
        self.db = database
        self.collection_name = collection_name or settings.FAMILY_NOTIFICATIONS_COLLECTION

    async def dispatch(self, event: FamilyNotificationEvent) -> None:
        doc = event.model_dump(mode="python")
        doc["notification_id"] = f"not_{uuid.uuid4().hex[:16]}"
        doc["type"] = event.type.value
        doc["status"] = "pending"
        doc["read"] = False

        start_time = self.db.log_query_start(self.collection_name, "insert_notification", {"type": doc["type"]})
        try:
            await self.db.get_collection(self.collection_name).insert_one(doc)
        except PyMongoError as e:
            self.db.log_query_error(self.collection_name, "insert_notification", start_time, e)
            raise
        self.db.log_query_success(self.collection_name, "insert_notification", start_time)


class FamilyNotifier:
    """Best-effort wrapper around a dispatcher."""

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or MongoNotificationDispatcher()

    async def notify(
        self, recipient_user_id: str, notification_type: NotificationType, data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Build and dispatch one notification.

        Returns:
            bool: True if the dispatcher accepted the event
        """
        event = build_notification(recipient_user_id, notification_type, data)
        try:
            await self.dispatcher.dispatch(event)
        except Exception as e:
            logger.error(
                "Failed to dispatch %s notification to user %s: %s",
                notification_type.value,
                recipient_user_id,
                e,
                extra={"notification_type": notification_type.value, "recipient_user_id": recipient_user_id},
            )
            return False
        logger.debug("Dispatched %s notification to user %s", notification_type.value, recipient_user_id)
        return True

