"""Utility modules for the expense tracker family service."""

from .logging_utils import (
    RequestLoggingMiddleware,
    get_client_ip,
    log_application_lifecycle,
    log_error_with_context,
    log_security_event,
    mask_email,
    sanitize_log_context,
)

__all__ = [
    "RequestLoggingMiddleware",
    "get_client_ip",
    "log_application_lifecycle",
    "log_error_with_context",
    "log_security_event",
    "mask_email",
    "sanitize_log_context",
]
