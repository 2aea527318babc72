"""
Join request throttling.

Decides whether a requester may open a new join-request attempt against a
family, given every earlier attempt for that (requester, family) pair. The
evaluation is a pure function of the history and the current time; loading
the history is the caller's job.

Three rules apply in order and the first denial wins:

1. Lifetime cap: once ``max_attempts_per_family`` rows exist (any status,
   cancelled included) the pair is denied for good with ``MAX_RETRIES``.
2. Rolling window cap: at most ``max_attempts_per_window`` non-cancelled rows
   created within the trailing ``attempt_window``. Denied with
   ``WEEKLY_LIMIT`` until the oldest counted row leaves the window.
3. Backoff: with ``k`` rows of any status in the window, the latest attempt
   must be at least ``backoff_schedule[max(k - 1, 0)]`` old (the last entry
   is reused for larger ``k``). Denied with ``BACKOFF``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from expense_tracker.config import settings
from expense_tracker.models.family_models import JoinRequest, JoinRequestStatus
from expense_tracker.utils.datetime_utils import ceil_seconds, ensure_timezone_aware


class ThrottleReason(str, Enum):
    MAX_RETRIES = "MAX_RETRIES"
    WEEKLY_LIMIT = "WEEKLY_LIMIT"
    BACKOFF = "BACKOFF"


@dataclass(frozen=True)
class ThrottlePolicy:
    """Tunable limits for join-request attempts on a single family."""

    max_attempts_per_family: int = 5
    attempt_window: timedelta = timedelta(days=7)
    max_attempts_per_window: int = 3
    backoff_schedule: Tuple[timedelta, ...] = (
        timedelta(0),
        timedelta(hours=6),
        timedelta(hours=12),
        timedelta(hours=24),
    )

    def __post_init__(self):
        if self.max_attempts_per_family <= 0 or self.max_attempts_per_window <= 0:
            raise ValueError("Attempt limits must be positive")
        if not self.backoff_schedule:
            raise ValueError("Backoff schedule must contain at least one entry")

    @classmethod
    def from_settings(cls) -> "ThrottlePolicy":
        return cls(
            max_attempts_per_family=settings.JOIN_REQUEST_MAX_ATTEMPTS_PER_FAMILY,
            attempt_window=timedelta(seconds=settings.JOIN_REQUEST_ATTEMPT_WINDOW_SECONDS),
            max_attempts_per_window=settings.JOIN_REQUEST_MAX_ATTEMPTS_PER_WINDOW,
            backoff_schedule=tuple(timedelta(seconds=s) for s in settings.JOIN_REQUEST_BACKOFF_SCHEDULE_SECONDS),
        )

    def backoff_for(self, attempts_in_window: int) -> timedelta:
        index = min(max(attempts_in_window - 1, 0), len(self.backoff_schedule) - 1)
        return self.backoff_schedule[index]


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    reason: Optional[ThrottleReason] = None
    retry_after: Optional[datetime] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def retry_after_seconds(self) -> Optional[int]:
        """Seconds until a retry may succeed, for the Retry-After header."""
        return self.details.get("retry_after_seconds")


ALLOWED = ThrottleDecision(allowed=True)


def evaluate(history: Sequence[JoinRequest], now: datetime, policy: Optional[ThrottlePolicy] = None) -> ThrottleDecision:
    """
    Evaluate the throttle for one (requester, family) pair.

    Args:
        history: Every join request row for the pair, in any order
        now: Current time (timezone-aware)
        policy: Limits to apply; defaults to the configured policy

    Returns:
        ThrottleDecision: ``allowed`` or a denial with reason and retry metadata
    """
    policy = policy or ThrottlePolicy.from_settings()
    if not history:
        return ALLOWED

    now = ensure_timezone_aware(now)
    total_attempts = len(history)
    if total_attempts >= policy.max_attempts_per_family:
        return ThrottleDecision(
            allowed=False,
            reason=ThrottleReason.MAX_RETRIES,
            details={"attempts": total_attempts, "max_attempts": policy.max_attempts_per_family},
        )

    window_start = now - policy.attempt_window
    in_window = sorted(
        (r for r in history if ensure_timezone_aware(r.created_at) > window_start),
        key=lambda r: r.created_at,
    )
    counted = [r for r in in_window if r.status is not JoinRequestStatus.CANCELLED]
    if len(counted) >= policy.max_attempts_per_window:
        next_allowed_at = ensure_timezone_aware(counted[0].created_at) + policy.attempt_window
        return ThrottleDecision(
            allowed=False,
            reason=ThrottleReason.WEEKLY_LIMIT,
            retry_after=next_allowed_at,
            details={
                "attempts_in_window": len(counted),
                "max_attempts_per_window": policy.max_attempts_per_window,
                "next_allowed_at": next_allowed_at.isoformat(),
                "retry_after_seconds": ceil_seconds(next_allowed_at - now),
            },
        )

    if in_window:
        required = policy.backoff_for(len(in_window))
        latest = ensure_timezone_aware(in_window[-1].created_at)
        if now - latest < required:
            retry_after = latest + required
            return ThrottleDecision(
                allowed=False,
                reason=ThrottleReason.BACKOFF,
                retry_after=retry_after,
                details={
                    "cooldown_seconds": int(required.total_seconds()),
                    "retry_after": retry_after.isoformat(),
                    "retry_after_seconds": ceil_seconds(retry_after - now),
                },
            )

    return ALLOWED
