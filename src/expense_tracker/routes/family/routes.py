"""
Family membership API routes.

Every endpoint authenticates the caller, applies the per-user route rate
limit and delegates to the FamilyManager. Family exceptions are translated
into HTTP errors with a ``{"error": CODE, "message": ...}`` detail:

    FamilyNotFound, JoinRequestNotFound,
    InvitationNotFound, UserNotFound        -> 404
    JoinRequestThrottled                    -> 409 (+ reason, retry metadata, Retry-After)
    FamilyConflict                          -> 409
    InsufficientPermissions                 -> 403
    ValidationError                         -> 400
"""

from typing import Awaitable, List, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from expense_tracker.config import settings
from expense_tracker.managers.family_cleanup import JoinRequestSweeper
from expense_tracker.managers.family_manager import (
    FamilyConflict,
    FamilyError,
    FamilyManager,
    FamilyNotFound,
    InsufficientPermissions,
    InvitationNotFound,
    JoinRequestNotFound,
    JoinRequestThrottled,
    UserNotFound,
    ValidationError,
)
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.security_manager import SecurityManager
from expense_tracker.models.family_models import ExpenseUser
from expense_tracker.routes.family.dependencies import (
    get_current_user_dep,
    get_family_manager,
    get_join_request_sweeper,
    get_security_manager,
    require_admin,
)
from expense_tracker.routes.family.models import (
    CreateFamilyRequest,
    FamilyAliasRequest,
    FamilyDetailsResponse,
    FamilyResponse,
    InviteMemberRequest,
    JoinRequestCancel,
    JoinRequestCreate,
    JoinRequestDecision,
    JoinRequestResend,
    JoinRequestResponse,
    LeaveFamilyResponse,
    MessageResponse,
    OwnPendingJoinRequestResponse,
    RemoveMemberRequest,
    SweepResponse,
    UpdateFamilyNameRequest,
)
from expense_tracker.utils.logging_utils import log_error_with_context

T = TypeVar("T")

logger = get_logger(prefix="[Family Routes]")

router = APIRouter(prefix="/family", tags=["Family"])

RATE_LIMIT_PERIOD_SECONDS = 3600
NOT_FOUND_ERRORS = (FamilyNotFound, JoinRequestNotFound, InvitationNotFound, UserNotFound)


def _to_http(e: FamilyError) -> HTTPException:
    """Translate a family exception into the matching HTTPException."""
    detail = {"error": e.error_code, "message": e.message}

    if isinstance(e, JoinRequestThrottled):
        detail.update({"reason": e.reason.value, **e.details})
        headers = None
        if e.retry_after_seconds is not None:
            headers = {"Retry-After": str(e.retry_after_seconds)}
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail, headers=headers)

    if isinstance(e, NOT_FOUND_ERRORS):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    if isinstance(e, FamilyConflict):
        if e.context:
            detail["context"] = e.context
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail)
    if isinstance(e, InsufficientPermissions):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    if isinstance(e, ValidationError):
        if e.context.get("field"):
            detail["field"] = e.context["field"]
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


async def _call(operation: str, user_id: str, awaitable: Awaitable[T]) -> T:
    try:
        return await awaitable
    except FamilyError as e:
        logger.info("%s failed for user %s: %s (%s)", operation, user_id, e.message, e.error_code)
        raise _to_http(e)
    except Exception as e:
        log_error_with_context(e, {"user_id": user_id}, operation=operation)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
        )


async def _rate_limit(security: SecurityManager, request: Request, action: str, limit: int, user_id: str) -> None:
    await security.check_rate_limit(
        request,
        f"family_{action}",
        rate_limit_requests=limit,
        rate_limit_period=RATE_LIMIT_PERIOD_SECONDS,
        identity=user_id,
    )


# ----------------------------------------------------------------------
# Family
# ----------------------------------------------------------------------


@router.post("/create", response_model=FamilyResponse, status_code=status.HTTP_201_CREATED)
async def create_family(
    request: Request,
    family_request: CreateFamilyRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> FamilyResponse:
    """
    Create a new family with the current user as head.

    **Rate Limiting:** FAMILY_CREATE_RATE_LIMIT requests per hour per user

    **Returns:**
    - Family summary including the generated public alias
    """
    await _rate_limit(security, request, "create", settings.FAMILY_CREATE_RATE_LIMIT, current_user.id)
    family = await _call("create_family", current_user.id, manager.create_family(current_user.id, family_request.name))
    return FamilyResponse.from_family(family, current_user.id)


@router.get("", response_model=FamilyDetailsResponse)
async def get_my_family(
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> FamilyDetailsResponse:
    """Return the caller's family with a snapshot of every member."""
    details = await _call("get_family_details", current_user.id, manager.get_family_details(current_user.id))
    return FamilyDetailsResponse.from_details(details, current_user.id)


@router.put("/name", response_model=FamilyResponse)
async def update_family_name(
    request: Request,
    name_request: UpdateFamilyNameRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> FamilyResponse:
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    family = await _call(
        "update_family_name", current_user.id, manager.update_family_name(current_user.id, name_request.name)
    )
    return FamilyResponse.from_family(family, current_user.id)


@router.post("/leave", response_model=LeaveFamilyResponse)
async def leave_family(
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> LeaveFamilyResponse:
    """
    Leave the current family.

    A leaving head hands headship to the longest-standing remaining member;
    the last member leaving deletes the family.
    """
    family = await _call("leave_family", current_user.id, manager.leave_family(current_user.id))
    if family is None:
        return LeaveFamilyResponse(message="Left family; the family was deleted", family_deleted=True)
    return LeaveFamilyResponse(message="Left family", family=FamilyResponse.from_family(family))


@router.post("/members/remove", response_model=FamilyResponse)
async def remove_member(
    request: Request,
    remove_request: RemoveMemberRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> FamilyResponse:
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    family = await _call(
        "remove_member", current_user.id, manager.remove_member(current_user.id, remove_request.member_id)
    )
    return FamilyResponse.from_family(family, current_user.id)


# ----------------------------------------------------------------------
# Invitations
# ----------------------------------------------------------------------


@router.post("/invitations", response_model=FamilyResponse, status_code=status.HTTP_201_CREATED)
async def invite_member(
    request: Request,
    invite_request: InviteMemberRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> FamilyResponse:
    """Head invites an unaffiliated user by email. Invitations are not throttled."""
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    family = await _call("invite_member", current_user.id, manager.invite_member(current_user.id, invite_request.email))
    return FamilyResponse.from_family(family, current_user.id)


@router.post("/invitations/resend", response_model=FamilyResponse)
async def resend_invitation(
    request: Request,
    invite_request: InviteMemberRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> FamilyResponse:
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    family = await _call(
        "resend_invitation", current_user.id, manager.resend_invitation(current_user.id, invite_request.email)
    )
    return FamilyResponse.from_family(family, current_user.id)


@router.post("/invitations/cancel", response_model=FamilyResponse)
async def cancel_invitation(
    request: Request,
    invite_request: InviteMemberRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> FamilyResponse:
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    family = await _call(
        "cancel_invitation", current_user.id, manager.cancel_invitation(current_user.id, invite_request.email)
    )
    return FamilyResponse.from_family(family, current_user.id)


@router.post("/invitations/accept", response_model=FamilyResponse)
async def accept_invitation(
    alias_request: FamilyAliasRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> FamilyResponse:
    family = await _call(
        "accept_invitation", current_user.id, manager.accept_invitation(current_user.id, alias_request.family_alias)
    )
    return FamilyResponse.from_family(family, current_user.id)


@router.post("/invitations/reject", response_model=MessageResponse)
async def reject_invitation(
    alias_request: FamilyAliasRequest,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> MessageResponse:
    family = await _call(
        "reject_invitation", current_user.id, manager.reject_invitation(current_user.id, alias_request.family_alias)
    )
    return MessageResponse(message="Invitation rejected", data={"family_alias": family.alias_name})


# ----------------------------------------------------------------------
# Join requests
# ----------------------------------------------------------------------


@router.post("/join-requests", response_model=JoinRequestResponse, status_code=status.HTTP_201_CREATED)
async def request_to_join(
    request: Request,
    response: Response,
    join_request: JoinRequestCreate,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> JoinRequestResponse:
    """
    Ask to join a family by its alias.

    Repeating the call while a request is pending returns that request
    unchanged with a 200 instead of a 201, and the head is not notified
    again. New attempts are throttled per family; a denial is a 409 with
    ``reason`` set to ``MAX_RETRIES``, ``WEEKLY_LIMIT`` or ``BACKOFF``.
    """
    await _rate_limit(security, request, "join_request", settings.FAMILY_JOIN_REQUEST_RATE_LIMIT, current_user.id)
    row, created = await _call(
        "request_to_join",
        current_user.id,
        manager.submit_join_request(current_user.id, join_request.family_alias, join_request.message),
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return JoinRequestResponse.from_request(row)


@router.post("/join-requests/resend", response_model=JoinRequestResponse, status_code=status.HTTP_201_CREATED)
async def resend_join_request(
    request: Request,
    resend_request: JoinRequestResend,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> JoinRequestResponse:
    await _rate_limit(security, request, "join_request", settings.FAMILY_JOIN_REQUEST_RATE_LIMIT, current_user.id)
    row = await _call(
        "resend_join_request",
        current_user.id,
        manager.resend_join_request(
            current_user.id,
            family_alias=resend_request.family_alias,
            message=resend_request.message,
            request_id=resend_request.request_id,
        ),
    )
    return JoinRequestResponse.from_request(row)


@router.post("/join-requests/cancel", response_model=JoinRequestResponse)
async def cancel_join_request(
    cancel_request: JoinRequestCancel,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> JoinRequestResponse:
    row = await _call(
        "cancel_join_request",
        current_user.id,
        manager.cancel_join_request(
            current_user.id, request_id=cancel_request.request_id, family_alias=cancel_request.family_alias
        ),
    )
    return JoinRequestResponse.from_request(row)


@router.post("/join-requests/accept", response_model=JoinRequestResponse)
async def accept_join_request(
    request: Request,
    decision: JoinRequestDecision,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> JoinRequestResponse:
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    row = await _call(
        "accept_join_request", current_user.id, manager.accept_join_request(current_user.id, decision.requester_id)
    )
    return JoinRequestResponse.from_request(row)


@router.post("/join-requests/reject", response_model=JoinRequestResponse)
async def reject_join_request(
    request: Request,
    decision: JoinRequestDecision,
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
    security: SecurityManager = Depends(get_security_manager),
) -> JoinRequestResponse:
    await _rate_limit(security, request, "head_action", settings.FAMILY_HEAD_ACTION_RATE_LIMIT, current_user.id)
    row = await _call(
        "reject_join_request", current_user.id, manager.reject_join_request(current_user.id, decision.requester_id)
    )
    return JoinRequestResponse.from_request(row)


@router.get("/join-requests/mine", response_model=List[OwnPendingJoinRequestResponse])
async def get_own_pending_join_requests(
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> List[OwnPendingJoinRequestResponse]:
    views = await _call(
        "get_own_pending_join_requests", current_user.id, manager.get_own_pending_join_requests(current_user.id)
    )
    return [OwnPendingJoinRequestResponse.from_view(view) for view in views]


@router.get("/join-requests/received", response_model=List[JoinRequestResponse])
async def get_received_join_requests(
    current_user: ExpenseUser = Depends(get_current_user_dep),
    manager: FamilyManager = Depends(get_family_manager),
) -> List[JoinRequestResponse]:
    """Pending requests addressed to the caller's family, newest first. Head only."""
    rows = await _call(
        "get_received_join_requests", current_user.id, manager.get_received_join_requests(current_user.id)
    )
    return [JoinRequestResponse.from_request(row) for row in rows]


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------


@router.post("/admin/expire-join-requests", response_model=SweepResponse)
async def expire_join_requests(
    current_user: ExpenseUser = Depends(require_admin),
    sweeper: JoinRequestSweeper = Depends(get_join_request_sweeper),
) -> SweepResponse:
    """
    Run the join-request expiry sweep now.

    Normally the sweep runs as a scheduled background task.
    """
    result = await _call("expire_join_requests", current_user.id, sweeper.sweep())
    logger.info("Manual join request sweep triggered by user %s", current_user.id)
    return SweepResponse(
        message="Join request expiry sweep completed",
        expired=result.expired,
        families_touched=result.families_touched,
        skipped=result.skipped,
        errors=result.errors,
        mirrors_repaired=result.mirrors_repaired,
        cutoff=result.cutoff,
    )
