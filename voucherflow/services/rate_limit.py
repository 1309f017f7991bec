"""
Rate Limiter - Fixed-window attempt budget per caller and action.

One atomic INSERT ... ON CONFLICT DO UPDATE ... RETURNING per attempt: the
counter is bumped (or its window restarted) and read back in a single
statement, so concurrent attempts cannot slip past the budget.
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import case
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from voucherflow.config import settings
from voucherflow.db.models import RateLimit
from voucherflow.exceptions import RateLimitExceededError

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    """Attempt budget for one action."""

    action: str
    max_attempts: int
    window_minutes: int


ACCOUNT_CREATE = RateLimitRule(
    "account_create",
    settings.rate_limit_account_create_attempts,
    settings.rate_limit_account_create_window_minutes,
)
ACCOUNT_LINK = RateLimitRule(
    "account_link",
    settings.rate_limit_account_link_attempts,
    settings.rate_limit_account_link_window_minutes,
)
PAYMENT_CREATE = RateLimitRule(
    "payment_create",
    settings.rate_limit_payment_create_attempts,
    settings.rate_limit_payment_create_window_minutes,
)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class RateLimiter:
    """Counts attempts in the rate_limits table."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def _record_attempt(self, key: str, window: timedelta) -> int:
        """Bump the counter for key and return the attempts in the current window."""
        now = _utc_now()
        window_expired = RateLimit.window_started_at <= now - window

        stmt = insert(RateLimit).values(
            key=key, attempts=1, window_started_at=now, last_attempt_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RateLimit.key],
            set_={
                "attempts": case((window_expired, 1), else_=RateLimit.attempts + 1),
                "window_started_at": case(
                    (window_expired, now), else_=RateLimit.window_started_at
                ),
                "last_attempt_at": now,
            },
        ).returning(RateLimit.attempts)

        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def hit(self, caller_id: str, rule: RateLimitRule) -> None:
        """
        Count one attempt and enforce the budget.

        The attempt is committed immediately so that it counts even when the
        operation it guards fails later. Call before any other write in the
        session.

        Raises:
            RateLimitExceededError: Budget for this window is used up
        """
        key = f"{caller_id}:{rule.action}"
        attempts = await self._record_attempt(key, timedelta(minutes=rule.window_minutes))
        await self.session.commit()

        if attempts > rule.max_attempts:
            logger.warning(
                "rate_limit_exceeded",
                caller_id=caller_id,
                action=rule.action,
                attempts=attempts,
                max_attempts=rule.max_attempts,
            )
            raise RateLimitExceededError(rule.action, rule.window_minutes)
