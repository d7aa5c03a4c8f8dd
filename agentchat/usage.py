"""Usage policy for free-tier users and anonymous callers.

These functions are pure: callers load the usage record and the daily
session count from the store and pass them in.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from agentchat.config import FREE_MESSAGE_QUOTA, DAILY_SESSION_LIMIT
from agentchat.errors import ErrorCode, UsageLimitError, AccessDeniedError
from agentchat.identity import AuthenticatedIdentity, AnonymousIdentity, FREE_TIER


@dataclass(frozen=True)
class UsageDecision:
    allowed: bool
    code: Optional[ErrorCode] = None
    reason: Optional[str] = None


ALLOW = UsageDecision(allowed=True)


def evaluate_usage(identity, usage_record=None, sessions_today: int = 0) -> UsageDecision:
    if isinstance(identity, AuthenticatedIdentity):
        if identity.subscription_tier == FREE_TIER and sessions_today >= DAILY_SESSION_LIMIT:
            return UsageDecision(
                allowed=False,
                code=ErrorCode.LIMIT_REACHED,
                reason="Daily session limit reached. Upgrade to Premium for unlimited sessions.",
            )
        return ALLOW

    if isinstance(identity, AnonymousIdentity) and usage_record is not None:
        if usage_record.free_messages_used >= FREE_MESSAGE_QUOTA:
            return UsageDecision(
                allowed=False,
                code=ErrorCode.FREE_LIMIT_EXCEEDED,
                reason="Free message limit exceeded. Please log in to continue.",
            )
        return ALLOW

    return UsageDecision(allowed=False, code=ErrorCode.ACCESS_DENIED, reason="Session access denied")


def check_usage_limits(identity, usage_record=None, sessions_today: int = 0) -> None:
    decision = evaluate_usage(identity, usage_record, sessions_today)
    if decision.allowed:
        return
    if decision.code == ErrorCode.ACCESS_DENIED:
        raise AccessDeniedError(decision.reason)
    raise UsageLimitError(decision.code, decision.reason)


def free_messages_remaining(usage_record) -> Optional[int]:
    if usage_record is None:
        return None
    return max(0, FREE_MESSAGE_QUOTA - usage_record.free_messages_used)


def start_of_local_day(now: datetime) -> datetime:
    """Local midnight of the day containing `now`, as naive UTC.

    `now` is a naive UTC timestamp, the convention used for stored rows.
    """
    local_now = now.replace(tzinfo=timezone.utc).astimezone()
    local_midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return local_midnight.astimezone(timezone.utc).replace(tzinfo=None)
