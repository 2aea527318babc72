"""
Route rate limiting backed by Redis.

Fixed-window counters keyed by action and caller. This protects the HTTP
surface from bursts; the join-request throttle in the family manager is a
separate, domain-level policy.
"""

from typing import Optional

from fastapi import HTTPException, Request, status
from redis.exceptions import RedisError

from expense_tracker.config import settings
from expense_tracker.managers.logging_manager import get_logger
from expense_tracker.managers.redis_manager import RedisManager, redis_manager
from expense_tracker.utils.logging_utils import get_client_ip, log_security_event

RATE_LIMIT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return {count, redis.call('TTL', KEYS[1])}
"""


class SecurityManager:
    """Manages per-route rate limiting for API endpoints using Redis."""

    def __init__(self, redis: Optional[RedisManager] = None) -> None:
        self.redis = redis or redis_manager
        self.rate_limit_requests: int = settings.RATE_LIMIT_REQUESTS
        self.rate_limit_period: int = settings.RATE_LIMIT_PERIOD_SECONDS
        self.env_prefix: str = settings.ENV
        self.logger = get_logger(prefix="[SecurityManager]")

    def is_trusted_ip(self, ip: str) -> bool:
        """Return True if the IP is localhost."""
        return ip in ("127.0.0.1", "::1")

    async def check_rate_limit(
        self,
        request: Request,
        action: str = "default",
        rate_limit_requests: Optional[int] = None,
        rate_limit_period: Optional[int] = None,
        identity: Optional[str] = None,
    ) -> None:
        """
        Check rate limit for a given action and caller.

        Args:
            request: The FastAPI request object.
            action: The action/route name for rate limiting.
            rate_limit_requests: Custom requests allowed per period.
            rate_limit_period: Custom period in seconds.
            identity: Caller key (user id); the client IP is used when absent.

        Raises:
            HTTPException: 429 if the rate limit is exceeded.
        """
        ip = get_client_ip(request)
        if identity is None and self.is_trusted_ip(ip):
            return

        requests_allowed = rate_limit_requests if rate_limit_requests is not None else self.rate_limit_requests
        period = rate_limit_period if rate_limit_period is not None else self.rate_limit_period
        key = f"{self.env_prefix}:ratelimit:{action}:{identity or ip}"

        redis_conn = await self.redis.get_redis()
        try:
            count, ttl = await redis_conn.eval(RATE_LIMIT_SCRIPT, 1, key, period)
        except RedisError as e:
            self.logger.error("Rate limit script failed for %s: %s", key, e, exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Rate limiting service unavailable. Please try again later.",
            ) from e

        if int(count) > requests_allowed:
            self.logger.warning("Rate limit exceeded for %s (action: %s, count: %s)", identity or ip, action, count)
            log_security_event(
                "rate_limited",
                user_id=identity,
                ip_address=ip,
                success=False,
                details={"action": action, "limit": requests_allowed, "period": period},
            )
            retry_after = max(int(ttl), 1) if ttl is not None else period
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later.",
                headers={"Retry-After": str(retry_after)},
            )


security_manager = SecurityManager()
