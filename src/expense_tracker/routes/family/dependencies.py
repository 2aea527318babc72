"""
Authentication and service dependencies for the family routes.

Access tokens are issued by the expense tracker's auth service; this module
only verifies them. The ``sub`` claim carries the user id, and an optional
``role`` claim marks operators allowed to trigger maintenance endpoints.

The manager, sweeper and security manager are provided through dependency
functions so that they can be replaced with ``app.dependency_overrides``.
"""

from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from expense_tracker.config import settings
from expense_tracker.managers.family_cleanup import JoinRequestSweeper, join_request_sweeper
from expense_tracker.managers.family_manager import FamilyManager, family_manager
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.security_manager import SecurityManager, security_manager
from expense_tracker.models.family_models import ExpenseUser
from expense_tracker.utils.logging_utils import get_client_ip, log_security_event

logger = get_logger(prefix="[Family Dependencies]")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

ADMIN_ROLE = "admin"


def get_family_manager() -> FamilyManager:
    return family_manager


def get_join_request_sweeper() -> JoinRequestSweeper:
    return join_request_sweeper


def get_security_manager() -> SecurityManager:
    return security_manager


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Verify a JWT access token and return its claims.

    Raises:
        HTTPException: 401 if the token is expired, malformed or has no subject.
    """
    secret_key = settings.SECRET_KEY
    if hasattr(secret_key, "get_secret_value"):
        secret_key = secret_key.get_secret_value()
    if not secret_key:
        logger.error("JWT secret key is missing or invalid. Check your settings.SECRET_KEY.")
        raise _credentials_exception()

    try:
        payload = jwt.decode(token, secret_key, algorithms=[settings.ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        raise _credentials_exception("Token has expired")
    except JWTError as e:
        logger.warning("JWT decode failed: %s", e)
        raise _credentials_exception()

    if payload.get("sub") is None:
        logger.warning("JWT payload missing 'sub' claim")
        raise _credentials_exception()
    return payload


async def get_current_user_dep(
    request: Request,
    token: str = Depends(oauth2_scheme),
    manager: FamilyManager = Depends(get_family_manager),
) -> ExpenseUser:
    """
    Resolve the authenticated user for a family endpoint.

    The token claims are kept on ``request.state.token_claims`` for
    dependencies further down the chain.
    """
    claims = decode_access_token(token)
    user_id = str(claims["sub"])
    user: Optional[ExpenseUser] = await manager.user_store.find_by_id(user_id)
    if user is None:
        logger.warning("User not found for JWT 'sub' claim: %s", user_id)
        log_security_event(
            event_type="family_access",
            user_id=user_id,
            ip_address=get_client_ip(request),
            success=False,
            details={"reason": "unknown_user", "endpoint": f"{request.method} {request.url.path}"},
        )
        raise _credentials_exception()

    request.state.token_claims = claims
    logger.debug("Family user authenticated: %s on %s %s", user_id, request.method, request.url.path)
    return user


async def require_admin(request: Request, current_user: ExpenseUser = Depends(get_current_user_dep)) -> ExpenseUser:
    """Only operators with the ``admin`` role claim may pass."""
    claims = getattr(request.state, "token_claims", {}) or {}
    if claims.get("role") != ADMIN_ROLE:
        log_security_event(
            event_type="admin_access_denied",
            user_id=current_user.id,
            ip_address=get_client_ip(request),
            success=False,
            details={"endpoint": f"{request.method} {request.url.path}", "role": claims.get("role")},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "INSUFFICIENT_PERMISSIONS", "message": "Admin role required"},
        )
    return current_user
