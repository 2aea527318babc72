"""
Family membership manager.

Owns the family membership lifecycle: creating families, the head's
invitation flow, and the requester-driven join-request flow with its
throttle. Every operation reads fresh snapshots, re-validates its
preconditions against them, and writes through the stores' compare-and-set
``save``. A ConcurrentModification sends the operation back to the top of its
retry loop, so all preconditions are checked again against whatever the
other actor committed.

Accepting a join request touches three records. They are written in a fixed
order and the join-request row is always last:

    1. family (member added; the capacity check is guarded by the family version)
    2. requester's user pointer (only while the requester is unaffiliated)
    3. join-request row PENDING -> ACCEPTED

If step 2 or 3 loses a race, the earlier steps are undone before the retry.
A cancel or an expiry sweep that reaches the row first therefore wins, and no
membership is left behind.

Notifications are handed to the FamilyNotifier after the state change has been
committed; a notification failure never fails the operation.
"""

from datetime import datetime, timezone
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar
import uuid

from expense_tracker.config import settings
from expense_tracker.managers.family_notifications import FamilyNotifier
from expense_tracker.managers.join_request_throttle import ThrottleDecision, ThrottlePolicy, evaluate
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.models.family_models import (
    ExpenseUser,
    Family,
    FamilyDetails,
    FamilyMemberSnapshot,
    JoinRequest,
    JoinRequestStatus,
    NotificationType,
    PendingJoinRequestView,
)
from expense_tracker.repositories.family_stores import (
    ConcurrentModification,
    FamilyStore,
    JoinRequestStore,
    MongoFamilyStore,
    MongoJoinRequestStore,
    MongoUserStore,
    UserStore,
)
from expense_tracker.utils.alias_generator import AliasGenerationError, generate_unique_alias, is_valid_alias
from expense_tracker.utils.datetime_utils import Clock, utc_now
from expense_tracker.utils.logging_utils import log_error_with_context, mask_email

T = TypeVar("T")

FAMILY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_]+$")
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
MAX_EMAIL_LENGTH = 254


class FamilyError(Exception):
    """Base family management exception with context."""

    def __init__(self, message: str, error_code: str = None, context: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "FAMILY_ERROR"
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)


class FamilyNotFound(FamilyError):
    """Family does not exist or the user is not in one."""

    def __init__(self, message: str, family_id: str = None, alias: str = None):
        super().__init__(message, "FAMILY_NOT_FOUND", {"family_id": family_id, "alias": alias})


class JoinRequestNotFound(FamilyError):
    """Join request does not exist, or no PENDING request matches."""

    def __init__(self, message: str, request_id: str = None, family_id: str = None):
        super().__init__(message, "JOIN_REQUEST_NOT_FOUND", {"request_id": request_id, "family_id": family_id})


class InvitationNotFound(FamilyError):
    """No pending invitation for the email in this family."""

    def __init__(self, message: str, family_id: str = None, email: str = None):
        super().__init__(message, "INVITATION_NOT_FOUND", {"family_id": family_id, "email": email})


class UserNotFound(FamilyError):
    def __init__(self, message: str, user_id: str = None, email: str = None):
        super().__init__(message, "USER_NOT_FOUND", {"user_id": user_id, "email": email})


class FamilyConflict(FamilyError):
    """The operation contradicts current state (already a member, family full, not pending, ...)."""

    def __init__(self, message: str, error_code: str = "FAMILY_CONFLICT", context: Dict[str, Any] = None):
        super().__init__(message, error_code, context)


class JoinRequestThrottled(FamilyConflict):
    """The throttle denied a new join-request attempt."""

    def __init__(self, message: str, decision: ThrottleDecision):
        super().__init__(
            message,
            "JOIN_REQUEST_THROTTLED",
            {"reason": decision.reason.value, **decision.details},
        )
        self.reason = decision.reason
        self.details = dict(decision.details)
        self.retry_after = decision.retry_after
        self.retry_after_seconds = decision.retry_after_seconds


class InsufficientPermissions(FamilyError):
    """User lacks required permissions for the operation."""

    def __init__(self, message: str, required_role: str = None, user_id: str = None):
        super().__init__(message, "INSUFFICIENT_PERMISSIONS", {"required_role": required_role, "user_id": user_id})


class ValidationError(FamilyError):
    """Input validation failed with field-specific details."""

    def __init__(self, message: str, field: str = None, value: Any = None, constraint: str = None):
        super().__init__(
            message,
            "VALIDATION_ERROR",
            {"field": field, "value": str(value) if value is not None else None, "constraint": constraint},
        )


THROTTLE_MESSAGES = {
    "MAX_RETRIES": "Max retries over. Ask the family head to send an invitation",
    "WEEKLY_LIMIT": "Join request limit for this period reached",
    "BACKOFF": "Please wait before sending another join request",
}


class FamilyManager:
    """
    Orchestrates family membership changes across the family, join-request
    and user stores.

    All collaborators are injectable; by default the MongoDB stores and the
    Mongo-backed notifier are used.
    """

    def __init__(
        self,
        family_store: Optional[FamilyStore] = None,
        join_request_store: Optional[JoinRequestStore] = None,
        user_store: Optional[UserStore] = None,
        notifier: Optional[FamilyNotifier] = None,
        throttle_policy: Optional[ThrottlePolicy] = None,
        clock: Optional[Clock] = None,
        max_family_size: Optional[int] = None,
        write_retries: Optional[int] = None,
    ):
        self.family_store = family_store or MongoFamilyStore()
        self.join_request_store = join_request_store or MongoJoinRequestStore()
        self.user_store = user_store or MongoUserStore()
        self.notifier = notifier or FamilyNotifier()
        self.throttle_policy = throttle_policy or ThrottlePolicy.from_settings()
        self.clock = clock or utc_now
        self.max_family_size = max_family_size or settings.FAMILY_MAX_SIZE
        self.write_retries = write_retries or settings.FAMILY_WRITE_RETRIES
        self.logger = get_logger(prefix="[FamilyManager]")

    # ------------------------------------------------------------------
    # Family CRUD
    # ------------------------------------------------------------------

    async def create_family(self, user_id: str, name: str) -> Family:
        """
        Create a family with the user as head and only member.

        Raises:
            ValidationError: Invalid family name
            UserNotFound: Unknown user
            FamilyConflict: User already belongs to a family
        """
        self._validate_family_name(name)

        async def attempt() -> Family:
            user = await self._require_user(user_id)
            if user.family_id is not None:
                raise FamilyConflict("Already in a family", "ALREADY_IN_FAMILY", {"family_id": user.family_id})

            try:
                alias = await generate_unique_alias(self.family_store.alias_exists)
            except AliasGenerationError as e:
                raise FamilyError(str(e), "ALIAS_GENERATION_FAILED") from e

            now = self.clock()
            family = Family(
                family_id=f"fam_{uuid.uuid4().hex[:16]}",
                head_id=user_id,
                name=name,
                alias_name=alias,
                max_size=self.max_family_size,
                members_ids=(user_id,),
                created_at=now,
                updated_at=now,
            )
            saved = await self.family_store.save(family)
            try:
                await self.user_store.save(user.joined(saved.family_id, now))
            except ConcurrentModification:
                await self.family_store.delete(saved)
                raise
            return saved

        family = await self._retrying("create_family", attempt)
        self.logger.info(
            "Family created: %s (alias %s) by user %s",
            family.family_id,
            family.alias_name,
            user_id,
            extra={"family_id": family.family_id, "user_id": user_id},
        )
        return family

    async def get_family_details(self, user_id: str) -> FamilyDetails:
        user = await self._require_user(user_id)
        if user.family_id is None:
            raise FamilyNotFound("Not in a family")
        family = await self.family_store.find_by_id(user.family_id)
        if family is None:
            raise FamilyNotFound("Family not found", family_id=user.family_id)
        return FamilyDetails(family=family, members=tuple(await self._member_snapshots(family)))

    async def update_family_name(self, head_id: str, name: str) -> Family:
        self._validate_family_name(name)

        async def attempt() -> Family:
            _, family = await self._head_family(head_id)
            other = await self.family_store.find_by_name(name)
            if other is not None and other.family_id != family.family_id:
                raise FamilyConflict("Family name already in use", "FAMILY_NAME_TAKEN", {"name": name})
            if family.name == name:
                return family
            return await self.family_store.save(family.renamed(name, self.clock()))

        family = await self._retrying("update_family_name", attempt)
        self.logger.info("Family %s renamed by head %s", family.family_id, head_id)
        return family

    async def leave_family(self, user_id: str) -> Optional[Family]:
        """
        Leave the current family.

        The head may leave too: the first remaining member in insertion order
        becomes head. The last member leaving deletes the family.

        Returns:
            Optional[Family]: The updated family, or None if it was deleted
        """

        async def attempt() -> Tuple[Family, Optional[Family]]:
            user = await self._require_user(user_id)
            if user.family_id is None:
                raise ValidationError("Not in a family", field="user_id", value=user_id)
            family = await self.family_store.find_by_id(user.family_id)
            if family is None:
                raise FamilyNotFound("Family not found", family_id=user.family_id)
            if not family.has_member(user_id):
                raise ValidationError("Not a member of this family", field="user_id", value=user_id)

            now = self.clock()
            remaining = family.without_member(user_id, now)
            if not remaining.members_ids:
                await self.family_store.delete(family)
                return family, None
            if family.head_id == user_id:
                remaining = remaining.with_head(remaining.members_ids[0], now)
            return family, await self.family_store.save(remaining)

        original, updated = await self._retrying("leave_family", attempt)
        await self._detach_user(user_id, original.family_id)

        if updated is None:
            await self._cancel_pending_requests_of_deleted_family(original.family_id)
            self.logger.info(
                "Last member %s left family %s; family deleted",
                user_id,
                original.family_id,
                extra={"family_id": original.family_id, "user_id": user_id},
            )
        elif updated.head_id != original.head_id:
            self.logger.info(
                "Head %s left family %s; headship transferred to %s",
                user_id,
                original.family_id,
                updated.head_id,
                extra={"family_id": original.family_id, "new_head_id": updated.head_id},
            )
        else:
            self.logger.info("User %s left family %s", user_id, original.family_id)
        return updated

    async def remove_member(self, head_id: str, member_id: str) -> Family:
        """Head removes another member. The head leaves through leave_family instead."""
        if head_id == member_id:
            raise ValidationError("Head cannot remove self; leave the family instead", field="member_id")

        async def attempt() -> Tuple[Family, ExpenseUser]:
            _, family = await self._head_family(head_id)
            member = await self._require_user(member_id)
            if not family.has_member(member_id):
                raise ValidationError("Member not in this family", field="member_id", value=member_id)
            return await self.family_store.save(family.without_member(member_id, self.clock())), member

        family, _ = await self._retrying("remove_member", attempt)
        await self._detach_user(member_id, family.family_id)
        self.logger.info(
            "Member %s removed from family %s by head %s",
            member_id,
            family.family_id,
            head_id,
            extra={"family_id": family.family_id, "member_id": member_id},
        )
        await self.notifier.notify(
            member_id,
            NotificationType.FAMILY_MEMBER_REMOVED,
            self._family_data(family, head_id=head_id),
        )
        return family

    # ------------------------------------------------------------------
    # Invitations (head-initiated, not throttled)
    # ------------------------------------------------------------------

    async def invite_member(self, head_id: str, email: str) -> Family:
        email = self._validate_email(email)

        async def attempt() -> Tuple[ExpenseUser, Family, ExpenseUser]:
            head, family = await self._head_family(head_id)
            invitee = await self.user_store.find_by_email(email)
            if invitee is None:
                raise UserNotFound("User not found", email=email)
            if invitee.family_id is not None:
                raise FamilyConflict("User already in a family", "ALREADY_IN_FAMILY", {"email": email})
            if family.has_pending_email(email):
                raise FamilyConflict("Already invited", "ALREADY_INVITED", {"email": email})
            return head, await self.family_store.save(family.with_pending_email(email, self.clock())), invitee

        head, family, invitee = await self._retrying("invite_member", attempt)
        self.logger.info("Invitation sent to %s for family %s", mask_email(email), family.family_id)
        await self.notifier.notify(
            invitee.id, NotificationType.JOIN_FAMILY_INVITATION, self._family_data(family, head_name=head.name)
        )
        return family

    async def resend_invitation(self, head_id: str, email: str) -> Family:
        email = self._validate_email(email)
        head, family = await self._head_family(head_id)
        invitee = await self.user_store.find_by_email(email)
        if invitee is None:
            raise UserNotFound("User not found", email=email)
        if invitee.family_id is not None:
            raise FamilyConflict("User already in a family", "ALREADY_IN_FAMILY", {"email": email})
        if not family.has_pending_email(email):
            raise InvitationNotFound("No pending invitation. Send a new one", family_id=family.family_id, email=email)
        await self.notifier.notify(
            invitee.id, NotificationType.JOIN_FAMILY_INVITATION, self._family_data(family, head_name=head.name)
        )
        self.logger.info("Invitation resent to %s for family %s", mask_email(email), family.family_id)
        return family

    async def cancel_invitation(self, head_id: str, email: str) -> Family:
        email = self._validate_email(email)

        async def attempt() -> Family:
            _, family = await self._head_family(head_id)
            if not family.has_pending_email(email):
                raise InvitationNotFound("No pending invitation", family_id=family.family_id, email=email)
            return await self.family_store.save(family.without_pending_email(email, self.clock()))

        family = await self._retrying("cancel_invitation", attempt)
        self.logger.info("Invitation to %s cancelled for family %s", mask_email(email), family.family_id)
        invitee = await self.user_store.find_by_email(email)
        if invitee is not None:
            await self.notifier.notify(
                invitee.id, NotificationType.JOIN_FAMILY_INVITATION_CANCELLED, self._family_data(family)
            )
        return family

    async def accept_invitation(self, user_id: str, family_alias: str) -> Family:
        self._validate_alias(family_alias)

        async def attempt() -> Family:
            user = await self._require_user(user_id)
            if user.family_id is not None:
                raise FamilyConflict("Already in a family", "ALREADY_IN_FAMILY", {"family_id": user.family_id})
            family = await self._family_by_alias(family_alias)
            if not family.has_pending_email(user.email):
                raise InvitationNotFound("No pending invitation", family_id=family.family_id, email=user.email)
            if family.is_full:
                raise FamilyConflict("Family full", "FAMILY_FULL", {"max_size": family.max_size})

            now = self.clock()
            joined = (
                family.with_member(user_id, now)
                .without_pending_email(user.email, now)
                .without_pending_request(user_id, now)
            )
            saved = await self.family_store.save(joined)
            try:
                await self.user_store.save(user.joined(family.family_id, now))
            except ConcurrentModification:
                await self._undo_family_join(family.family_id, user_id, restore_email=user.email)
                raise
            return saved

        family = await self._retrying("accept_invitation", attempt)
        # An invitation supersedes any join request the user still had open here.
        await self._cancel_open_requests(user_id, family.family_id)
        self.logger.info(
            "User %s accepted invitation to family %s",
            user_id,
            family.family_id,
            extra={"family_id": family.family_id, "user_id": user_id},
        )
        user = await self.user_store.find_by_id(user_id)
        await self.notifier.notify(
            family.head_id,
            NotificationType.JOIN_FAMILY_INVITATION_ACCEPTED,
            self._family_data(family, member_name=self._display_name(user)),
        )
        return family

    async def reject_invitation(self, user_id: str, family_alias: str) -> Family:
        self._validate_alias(family_alias)

        async def attempt() -> Tuple[ExpenseUser, Family]:
            user = await self._require_user(user_id)
            family = await self._family_by_alias(family_alias)
            if not family.has_pending_email(user.email):
                raise InvitationNotFound("No pending invitation", family_id=family.family_id, email=user.email)
            return user, await self.family_store.save(family.without_pending_email(user.email, self.clock()))

        user, family = await self._retrying("reject_invitation", attempt)
        self.logger.info("User %s rejected invitation to family %s", user_id, family.family_id)
        await self.notifier.notify(
            family.head_id,
            NotificationType.JOIN_FAMILY_INVITATION_REJECTED,
            self._family_data(family, member_name=self._display_name(user)),
        )
        return family

    # ------------------------------------------------------------------
    # Join requests (requester-initiated, throttled)
    # ------------------------------------------------------------------

    async def evaluate_join_throttle(self, requester_id: str, family_id: str) -> ThrottleDecision:
        history = await self.join_request_store.find_history(requester_id, family_id)
        return evaluate(history, self.clock(), self.throttle_policy)

    async def request_to_join(self, requester_id: str, family_alias: str, message: Optional[str] = None) -> JoinRequest:
        request, _ = await self.submit_join_request(requester_id, family_alias, message)
        return request

    async def submit_join_request(
        self, requester_id: str, family_alias: str, message: Optional[str] = None
    ) -> Tuple[JoinRequest, bool]:
        """
        Ask to join the family with the given alias.

        Idempotent while a PENDING request for the pair exists: the existing
        row is returned, no new attempt is recorded and the head is not
        notified again. Use resend_join_request to remind the head.

        Returns:
            (request, created): created is False when an existing PENDING row was returned

        Raises:
            ValidationError: Malformed alias
            FamilyNotFound: No family with this alias
            UserNotFound: Unknown requester
            FamilyConflict: Requester already in a family, or family full
            JoinRequestThrottled: Throttle denied a new attempt
        """
        self._validate_alias(family_alias)

        async def attempt() -> Tuple[ExpenseUser, Family, JoinRequest, bool]:
            requester = await self._require_user(requester_id)
            family = await self._family_by_alias(family_alias)
            self._check_can_request(requester, family)
            await self._enforce_throttle(requester_id, family)

            pending = await self.join_request_store.find_by_requester_and_family(
                requester_id, family.family_id, JoinRequestStatus.PENDING
            )
            if pending:
                return requester, family, pending[0], False
            request = await self.join_request_store.save(self._new_request(requester_id, family.family_id, message))
            return requester, family, request, True

        requester, family, request, created = await self._retrying("request_to_join", attempt)
        family = await self._ensure_pending_mirror(family.family_id, request) or family

        if not created:
            self.logger.info(
                "Join request from %s to family %s already pending (%s)", requester_id, family.family_id, request.id
            )
            return request, False

        self.logger.info(
            "Join request %s created: user %s -> family %s",
            request.id,
            requester_id,
            family.family_id,
            extra={"request_id": request.id, "family_id": family.family_id, "requester_id": requester_id},
        )
        await self.notifier.notify(
            family.head_id,
            NotificationType.JOIN_FAMILY_REQUEST,
            self._request_data(family, request, requester),
        )
        return request, True

    async def resend_join_request(
        self,
        requester_id: str,
        family_alias: Optional[str] = None,
        message: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> JoinRequest:
        """
        Replace the requester's PENDING request with a fresh one.

        The previous PENDING row is cancelled and a new row is created, so every
        resend counts as a new attempt for the throttle. The target family is
        named by alias or by one of the requester's earlier request ids.
        """
        family_id = await self._resolve_family_for_request(requester_id, family_alias, request_id, for_resend=True)

        async def attempt() -> Tuple[ExpenseUser, Family, JoinRequest]:
            requester = await self._require_user(requester_id)
            family = await self.family_store.find_by_id(family_id)
            if family is None:
                raise FamilyNotFound("Family not found", family_id=family_id)
            if family.has_member(requester_id) or requester.family_id == family.family_id:
                raise FamilyConflict("Already a member of this family", "ALREADY_MEMBER", {"family_id": family_id})
            self._check_can_request(requester, family)
            await self._enforce_throttle(requester_id, family)

            now = self.clock()
            previous = await self.join_request_store.find_by_requester_and_family(
                requester_id, family.family_id, JoinRequestStatus.PENDING
            )
            for row in previous:
                await self.join_request_store.save(row.transitioned(JoinRequestStatus.CANCELLED, now))
            try:
                request = await self.join_request_store.save(self._new_request(requester_id, family.family_id, message))
            except ConcurrentModification:
                raise
            except Exception:
                # The old row is already cancelled; do not leave the requester listed as pending.
                if previous:
                    await self._release_pending_mirror(family.family_id, requester_id)
                raise
            return requester, family, request

        requester, family, request = await self._retrying("resend_join_request", attempt)
        family = await self._ensure_pending_mirror(family.family_id, request) or family
        self.logger.info(
            "Join request resent: %s (user %s -> family %s)",
            request.id,
            requester_id,
            family.family_id,
            extra={"request_id": request.id, "family_id": family.family_id, "requester_id": requester_id},
        )
        await self.notifier.notify(
            family.head_id,
            NotificationType.JOIN_FAMILY_REQUEST_RESENT,
            self._request_data(family, request, requester),
        )
        return request

    async def cancel_join_request(
        self, requester_id: str, request_id: Optional[str] = None, family_alias: Optional[str] = None
    ) -> JoinRequest:
        """
        Cancel the requester's PENDING request, addressed by id or by family alias.

        Raises:
            JoinRequestNotFound: Unknown id, or no PENDING request for the alias
            InsufficientPermissions: The request belongs to someone else
            FamilyConflict: The request is no longer PENDING
        """
        if request_id is None:
            family_id = await self._resolve_family_for_request(requester_id, family_alias, None)
        else:
            row = await self._own_request(requester_id, request_id)
            if not row.is_pending:
                raise FamilyConflict(
                    "Join request is not pending", "JOIN_REQUEST_NOT_PENDING", {"status": row.status.value}
                )
            family_id = row.family_id

        async def attempt() -> JoinRequest:
            if request_id is not None:
                row = await self._own_request(requester_id, request_id)
                if not row.is_pending:
                    raise FamilyConflict(
                        "Join request is not pending", "JOIN_REQUEST_NOT_PENDING", {"status": row.status.value}
                    )
            else:
                pending = await self.join_request_store.find_by_requester_and_family(
                    requester_id, family_id, JoinRequestStatus.PENDING
                )
                if not pending:
                    raise JoinRequestNotFound("No pending join request to cancel", family_id=family_id)
                row = pending[0]
            return await self.join_request_store.save(row.transitioned(JoinRequestStatus.CANCELLED, self.clock()))

        cancelled = await self._retrying("cancel_join_request", attempt)
        family = await self._release_pending_mirror(cancelled.family_id, requester_id)
        self.logger.info(
            "Join request %s cancelled by requester %s",
            cancelled.id,
            requester_id,
            extra={"request_id": cancelled.id, "family_id": cancelled.family_id},
        )
        if family is not None:
            requester = await self.user_store.find_by_id(requester_id)
            await self.notifier.notify(
                family.head_id,
                NotificationType.JOIN_FAMILY_REQUEST_CANCELLED,
                self._request_data(family, cancelled, requester),
            )
        return cancelled

    async def accept_join_request(self, head_id: str, requester_id: str) -> JoinRequest:
        """
        Head accepts the requester's PENDING request.

        Raises:
            InsufficientPermissions: Caller is not the family head
            UserNotFound: Requester does not exist
            FamilyConflict: Requester already in a family, family full, or no PENDING request
        """

        async def attempt() -> Tuple[Family, JoinRequest]:
            _, family = await self._head_family(head_id)
            requester = await self._require_user(requester_id)
            if family.has_member(requester_id):
                raise FamilyConflict("User is already a member of this family", "ALREADY_MEMBER")
            if requester.family_id is not None:
                raise FamilyConflict("User already in a family", "ALREADY_IN_FAMILY")
            pending = await self.join_request_store.find_by_requester_and_family(
                requester_id, family.family_id, JoinRequestStatus.PENDING
            )
            if not pending:
                raise FamilyConflict("No pending join request", "JOIN_REQUEST_NOT_PENDING")
            if family.is_full:
                raise FamilyConflict(
                    "Family is already at maximum capacity", "FAMILY_FULL", {"max_size": family.max_size}
                )

            now = self.clock()
            saved_family = await self.family_store.save(
                family.with_member(requester_id, now).without_pending_request(requester_id, now)
            )
            try:
                await self.user_store.save(requester.joined(family.family_id, now))
            except ConcurrentModification:
                await self._undo_family_join(family.family_id, requester_id)
                raise
            try:
                accepted = await self.join_request_store.save(
                    pending[0].transitioned(JoinRequestStatus.ACCEPTED, now, processed_by=head_id)
                )
            except ConcurrentModification:
                await self._detach_user(requester_id, family.family_id)
                await self._undo_family_join(family.family_id, requester_id)
                raise
            return saved_family, accepted

        family, accepted = await self._retrying("accept_join_request", attempt)
        self.logger.info(
            "Join request %s accepted: user %s joined family %s",
            accepted.id,
            requester_id,
            family.family_id,
            extra={"request_id": accepted.id, "family_id": family.family_id, "head_id": head_id},
        )
        await self.notifier.notify(
            requester_id, NotificationType.JOIN_FAMILY_REQUEST_ACCEPTED, self._family_data(family, head_id=head_id)
        )
        return accepted

    async def reject_join_request(self, head_id: str, requester_id: str) -> JoinRequest:
        async def attempt() -> Tuple[Family, JoinRequest]:
            _, family = await self._head_family(head_id)
            pending = await self.join_request_store.find_by_requester_and_family(
                requester_id, family.family_id, JoinRequestStatus.PENDING
            )
            if not pending:
                raise FamilyConflict("No pending join request", "JOIN_REQUEST_NOT_PENDING")
            rejected = await self.join_request_store.save(
                pending[0].transitioned(JoinRequestStatus.REJECTED, self.clock(), processed_by=head_id)
            )
            return family, rejected

        family, rejected = await self._retrying("reject_join_request", attempt)
        family = await self._release_pending_mirror(family.family_id, requester_id) or family
        self.logger.info(
            "Join request %s rejected by head %s",
            rejected.id,
            head_id,
            extra={"request_id": rejected.id, "family_id": family.family_id},
        )
        await self.notifier.notify(
            requester_id, NotificationType.JOIN_FAMILY_REQUEST_REJECTED, self._family_data(family, head_id=head_id)
        )
        return rejected

    async def get_own_pending_join_requests(self, user_id: str) -> List[PendingJoinRequestView]:
        """Latest PENDING request per family for the user, with a family summary."""
        pending = await self.join_request_store.find_by_requester(user_id, JoinRequestStatus.PENDING)
        latest: Dict[str, JoinRequest] = {}
        for row in pending:
            current = latest.get(row.family_id)
            if current is None or row.created_at > current.created_at:
                latest[row.family_id] = row

        views = []
        for row in sorted(latest.values(), key=lambda r: r.created_at, reverse=True):
            family = await self.family_store.find_by_id(row.family_id)
            if family is None:
                continue
            views.append(
                PendingJoinRequestView(
                    request=row,
                    family_name=family.name,
                    family_alias=family.alias_name,
                    member_count=len(family.members_ids),
                    max_size=family.max_size,
                )
            )
        return views

    async def get_received_join_requests(self, head_id: str) -> List[JoinRequest]:
        _, family = await self._head_family(head_id)
        rows = await self.join_request_store.find_by_family(family.family_id, JoinRequestStatus.PENDING)
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _retrying(self, operation: str, attempt: Callable[[], Awaitable[T]]) -> T:
        for attempt_number in range(1, self.write_retries + 1):
            try:
                return await attempt()
            except ConcurrentModification as e:
                self.logger.warning(
                    "Concurrent modification during %s (attempt %d/%d): %s",
                    operation,
                    attempt_number,
                    self.write_retries,
                    e,
                )
        raise FamilyConflict(
            "The family changed while the operation was running; please retry",
            "CONCURRENT_MODIFICATION",
            {"operation": operation},
        )

    async def _update_family(
        self, family_id: str, mutate: Callable[[Family], Family], operation: str
    ) -> Optional[Family]:
        """Re-read, mutate and CAS-save a family until it sticks. None if the family is gone."""

        async def attempt() -> Optional[Family]:
            family = await self.family_store.find_by_id(family_id)
            if family is None:
                return None
            updated = mutate(family)
            if updated is family:
                return family
            return await self.family_store.save(updated)

        return await self._retrying(operation, attempt)

    async def _ensure_pending_mirror(self, family_id: str, request: JoinRequest) -> Optional[Family]:
        """Put the requester into pending_join_requests while their request is still PENDING."""
        requester_id = request.requester_id

        async def attempt() -> Optional[Family]:
            family = await self.family_store.find_by_id(family_id)
            if family is None or family.has_pending_request(requester_id) or family.has_member(requester_id):
                return family
            current = await self.join_request_store.find_by_id(request.id)
            if current is None or not current.is_pending:
                return family
            return await self.family_store.save(family.with_pending_request(requester_id, self.clock()))

        family = await self._retrying("ensure_pending_mirror", attempt)
        # The request may have been cancelled or expired between the check and the save.
        current = await self.join_request_store.find_by_id(request.id)
        if family is not None and current is not None and not current.is_pending:
            family = await self._remove_pending_mirror(family_id, requester_id)
        return family

    async def _remove_pending_mirror(self, family_id: str, requester_id: str) -> Optional[Family]:
        return await self._update_family(
            family_id,
            lambda family: family.without_pending_request(requester_id, self.clock()),
            "remove_pending_mirror",
        )

    async def _release_pending_mirror(self, family_id: str, requester_id: str) -> Optional[Family]:
        """
        Drop the requester from pending_join_requests after their row left PENDING.

        The row transition has already been committed, so a failure here is
        logged rather than raised; the expiry sweep removes entries that no
        PENDING row backs. Returns None if the family is gone or the write failed.
        """
        try:
            pending = await self.join_request_store.find_by_requester_and_family(
                requester_id, family_id, JoinRequestStatus.PENDING
            )
            if pending:
                return await self.family_store.find_by_id(family_id)
            return await self._remove_pending_mirror(family_id, requester_id)
        except Exception as e:
            log_error_with_context(
                e, {"family_id": family_id, "requester_id": requester_id}, operation="release_pending_mirror"
            )
            self.logger.warning(
                "Pending entry for user %s left in family %s; the expiry sweep will remove it", requester_id, family_id
            )
            return None

    async def _undo_family_join(self, family_id: str, user_id: str, restore_email: Optional[str] = None) -> None:
        """Compensate a committed family write whose follow-up write lost a race."""
        pending = await self.join_request_store.find_by_requester_and_family(
            user_id, family_id, JoinRequestStatus.PENDING
        )

        def undo(family: Family) -> Family:
            now = self.clock()
            reverted = family.without_member(user_id, now)
            if pending:
                reverted = reverted.with_pending_request(user_id, now)
            if restore_email:
                reverted = reverted.with_pending_email(restore_email, now)
            return reverted

        try:
            await self._update_family(family_id, undo, "undo_family_join")
        except FamilyError as e:
            log_error_with_context(e, {"family_id": family_id, "user_id": user_id}, operation="undo_family_join")
            raise
        self.logger.warning("Rolled back membership of %s in family %s after a lost race", user_id, family_id)

    async def _detach_user(self, user_id: str, family_id: str) -> None:
        """Clear the user's family pointer if it still points at family_id."""

        async def attempt() -> None:
            user = await self.user_store.find_by_id(user_id)
            if user is None or user.family_id != family_id:
                return
            await self.user_store.save(user.detached(self.clock()))

        await self._retrying("detach_user", attempt)

    async def _cancel_open_requests(self, requester_id: str, family_id: str) -> None:
        rows = await self.join_request_store.find_by_requester_and_family(
            requester_id, family_id, JoinRequestStatus.PENDING
        )
        for row in rows:
            try:
                await self.join_request_store.save(row.transitioned(JoinRequestStatus.CANCELLED, self.clock()))
            except ConcurrentModification:
                self.logger.info("Join request %s changed concurrently; leaving it as is", row.id)

    async def _cancel_pending_requests_of_deleted_family(self, family_id: str) -> None:
        rows = await self.join_request_store.find_by_family(family_id, JoinRequestStatus.PENDING)
        for row in rows:
            try:
                await self.join_request_store.save(row.transitioned(JoinRequestStatus.CANCELLED, self.clock()))
            except ConcurrentModification:
                self.logger.info("Join request %s changed concurrently; leaving it as is", row.id)
        if rows:
            self.logger.info("Cancelled %d pending join requests of deleted family %s", len(rows), family_id)

    async def _enforce_throttle(self, requester_id: str, family: Family) -> None:
        decision = await self.evaluate_join_throttle(requester_id, family.family_id)
        if decision.allowed:
            return
        self.logger.info(
            "Join request throttled: user %s -> family %s (%s)",
            requester_id,
            family.family_id,
            decision.reason.value,
            extra={"requester_id": requester_id, "family_id": family.family_id, "reason": decision.reason.value},
        )
        raise JoinRequestThrottled(THROTTLE_MESSAGES[decision.reason.value], decision)

    def _check_can_request(self, requester: ExpenseUser, family: Family) -> None:
        if requester.family_id is not None:
            raise FamilyConflict("Already in a family", "ALREADY_IN_FAMILY", {"family_id": requester.family_id})
        if family.is_full:
            raise FamilyConflict("Family full", "FAMILY_FULL", {"max_size": family.max_size})

    async def _resolve_family_for_request(
        self,
        requester_id: str,
        family_alias: Optional[str],
        request_id: Optional[str],
        for_resend: bool = False,
    ) -> str:
        if request_id is not None:
            row = await self._own_request(requester_id, request_id)
            if for_resend and row.status is JoinRequestStatus.ACCEPTED:
                raise FamilyConflict("Join request was already accepted", "JOIN_REQUEST_NOT_PENDING")
            return row.family_id
        if family_alias is None:
            raise ValidationError("Either a request id or a family alias is required", field="family_alias")
        self._validate_alias(family_alias)
        family = await self._family_by_alias(family_alias)
        return family.family_id

    async def _own_request(self, requester_id: str, request_id: str) -> JoinRequest:
        row = await self.join_request_store.find_by_id(request_id)
        if row is None:
            raise JoinRequestNotFound("Join request not found", request_id=request_id)
        if row.requester_id != requester_id:
            raise InsufficientPermissions("Not owner of request", required_role="requester", user_id=requester_id)
        return row

    async def _require_user(self, user_id: str) -> ExpenseUser:
        user = await self.user_store.find_by_id(user_id)
        if user is None:
            raise UserNotFound("User not found", user_id=user_id)
        return user

    async def _family_by_alias(self, family_alias: str) -> Family:
        family = await self.family_store.find_by_alias(family_alias)
        if family is None:
            raise FamilyNotFound("Family not found", alias=family_alias)
        return family

    async def _head_family(self, head_id: str) -> Tuple[ExpenseUser, Family]:
        head = await self._require_user(head_id)
        if head.family_id is None:
            raise FamilyNotFound("Not in a family")
        family = await self.family_store.find_by_id(head.family_id)
        if family is None:
            raise FamilyNotFound("Family not found", family_id=head.family_id)
        if family.head_id != head_id:
            raise InsufficientPermissions("Only the family head can do this", required_role="head", user_id=head_id)
        return head, family

    async def _member_snapshots(self, family: Family) -> List[FamilyMemberSnapshot]:
        members = []
        for member_id in family.members_ids:
            user = await self.user_store.find_by_id(member_id)
            if user is None:
                continue
            members.append(
                FamilyMemberSnapshot(
                    user_id=user.id, name=user.name, email=user.email, is_head=user.id == family.head_id
                )
            )
        return members

    def _new_request(self, requester_id: str, family_id: str, message: Optional[str]) -> JoinRequest:
        now = self.clock()
        return JoinRequest(
            id=f"jr_{uuid.uuid4().hex[:16]}",
            requester_id=requester_id,
            family_id=family_id,
            message=message,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _display_name(user: Optional[ExpenseUser]) -> str:
        if user is None:
            return "A user"
        return user.name or user.email

    @staticmethod
    def _family_data(family: Family, **extra: Any) -> Dict[str, Any]:
        return {
            "family_id": family.family_id,
            "family_name": family.name,
            "family_alias": family.alias_name,
            **extra,
        }

    def _request_data(self, family: Family, request: JoinRequest, requester: Optional[ExpenseUser]) -> Dict[str, Any]:
        return self._family_data(
            family,
            request_id=request.id,
            requester_id=request.requester_id,
            requester_name=self._display_name(requester),
            message=request.message,
        )

    @staticmethod
    def _validate_family_name(name: str) -> None:
        if name is None or not name.strip():
            raise ValidationError("Family name cannot be blank", field="name", constraint="not_empty")
        if len(name) < settings.FAMILY_NAME_MIN_LENGTH:
            raise ValidationError(
                f"Family name must be at least {settings.FAMILY_NAME_MIN_LENGTH} characters",
                field="name",
                value=name,
                constraint="min_length",
            )
        if len(name) > settings.FAMILY_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Family name cannot exceed {settings.FAMILY_NAME_MAX_LENGTH} characters",
                field="name",
                value=name,
                constraint="max_length",
            )
        if name.strip() != name:
            raise ValidationError(
                "Family name cannot have leading or trailing spaces", field="name", value=name, constraint="trimmed"
            )
        if not FAMILY_NAME_PATTERN.match(name):
            raise ValidationError(
                "Family name contains invalid characters", field="name", value=name, constraint="charset"
            )

    @staticmethod
    def _validate_email(email: str) -> str:
        if email is None or not email.strip():
            raise ValidationError("Email cannot be blank", field="email", constraint="not_empty")
        email = email.strip()
        if len(email) > MAX_EMAIL_LENGTH:
            raise ValidationError("Email is too long", field="email", constraint="max_length")
        if not EMAIL_PATTERN.match(email):
            raise ValidationError("Invalid email format", field="email", value=email, constraint="format")
        return email.lower()

    @staticmethod
    def _validate_alias(alias: Optional[str]) -> None:
        if not alias or not alias.strip():
            raise ValidationError("Alias name cannot be blank", field="family_alias", constraint="not_empty")
        if not is_valid_alias(alias):
            raise ValidationError(
                f"Alias name must be exactly {settings.FAMILY_ALIAS_LENGTH} uppercase letters or digits",
                field="family_alias",
                value=alias,
                constraint="format",
            )


# Global family manager instance
family_manager = FamilyManager()
