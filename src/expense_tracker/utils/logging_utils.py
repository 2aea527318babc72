"""
Logging helpers shared across the application.

Provides the request logging middleware, lifecycle and security event
logging, and error logging with sanitized context. Invitee emails and
credentials never reach the log stream in clear text.
"""

from datetime import datetime, timezone
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger

SENSITIVE_KEYS = {"password", "token", "secret", "key", "auth", "credential", "private"}
EMAIL_KEYS = {"email", "invitee_email", "pending_member_emails"}
MAX_LOGGED_VALUE_LENGTH = 100
SLOW_REQUEST_SECONDS = 1.0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request and response with timing.

    The authenticated user id is added to the response event when the auth
    dependency stored token claims on ``request.state``.
    """

    def __init__(self, app: ASGIApp, slow_request_seconds: float = SLOW_REQUEST_SECONDS):
        super().__init__(app)
        self.logger = get_logger(name="requests", prefix="[REQUEST]")
        self.slow_request_seconds = slow_request_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        start_time = time.time()
        event = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client_ip": get_client_ip(request),
            "app": settings.APP_NAME,
            "env": settings.ENV,
        }
        self.logger.info({"event": "request_received", "timestamp": _now_iso(), **event})

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                {
                    "event": "request_error",
                    "timestamp": _now_iso(),
                    **event,
                    "duration": time.time() - start_time,
                    "exception": str(e),
                    "stack_trace": traceback.format_exc(),
                }
            )
            raise

        duration = time.time() - start_time
        claims = getattr(request.state, "token_claims", None) or {}
        response_event = {
            "event": "response_sent",
            "timestamp": _now_iso(),
            **event,
            "user_id": claims.get("sub"),
            "status_code": response.status_code,
            "duration": duration,
        }
        self.logger.info(response_event)
        if duration > self.slow_request_seconds:
            self.logger.warning({**response_event, "event": "slow_request"})
        return response


def get_client_ip(request: Request) -> str:
    """Client IP, honouring the proxy headers set by the ingress."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return getattr(request.client, "host", "unknown")


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log a security-relevant event.

    Args:
        event_type: Event name (rate_limited, family_access, admin_access_denied, ...)
        user_id: Acting user, if known
        ip_address: Client IP, if known
        success: Whether the guarded action was allowed
        details: Extra context; sanitized before logging
    """
    logger = get_logger(name="security", prefix="[SECURITY]")

    event_data = {
        "event_type": event_type,
        "timestamp": _now_iso(),
        "success": success,
        "user_id": user_id or "anonymous",
        "ip_address": ip_address or "unknown",
    }
    if details:
        event_data["details"] = sanitize_log_context(details)

    logger.info("SECURITY EVENT [%s]: %s - %s", "SUCCESS" if success else "FAILURE", event_type, event_data)


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """Log a startup/shutdown milestone."""
    logger = get_logger(name="lifecycle", prefix="[LIFECYCLE]")
    event_data = {"event": event, "timestamp": _now_iso(), **(details or {})}
    logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log an unexpected error with its traceback.

    Args:
        error: The exception that occurred
        context: Additional context; sanitized before logging
        operation: Name of the operation that failed
    """
    logger = get_logger(name="errors", prefix="[ERROR]")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": _now_iso(),
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if operation:
        error_data["operation"] = operation
    if context:
        error_data["context"] = sanitize_log_context(context)

    logger.error("ERROR OCCURRED: %s", error_data)


def mask_email(email: str) -> str:
    """``jane.doe@example.com`` -> ``j***@example.com``."""
    local, sep, domain = str(email).partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def sanitize_log_context(details: Dict[str, Any]) -> Dict[str, Any]:
    """Redact credentials, mask emails and truncate long values."""
    sanitized: Dict[str, Any] = {}
    for key, value in details.items():
        lowered = key.lower()
        if any(sensitive in lowered for sensitive in SENSITIVE_KEYS):
            sanitized[key] = "<REDACTED>"
        elif lowered in EMAIL_KEYS:
            if isinstance(value, (list, tuple)):
                sanitized[key] = [mask_email(v) for v in value]
            else:
                sanitized[key] = mask_email(value) if value is not None else None
        elif isinstance(value, dict):
            sanitized[key] = sanitize_log_context(value)
        else:
            str_value = str(value)
            if len(str_value) > MAX_LOGGED_VALUE_LENGTH:
                str_value = str_value[:MAX_LOGGED_VALUE_LENGTH] + "..."
            sanitized[key] = str_value
    return sanitized
