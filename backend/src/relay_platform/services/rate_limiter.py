"""Rate Limiter for the delivery orchestrator.

Enforces:
- Daily message limits (default: 10/day)
- Hourly message limits (default: 2/hour)
- Quiet hours (default: 10pm-8am local time)
- Active-user exception (user texted in within the last 10 minutes)

Budgets count delivery units: a multi-part sequence is one message.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from relay_platform.app.config import Settings, get_settings
from relay_platform.domain.contracts import RateLimitResult
from relay_platform.domain.enums import RateLimitReason
from relay_platform.domain.models import User
from relay_platform.infra.clock import (
    Clock,
    as_utc,
    next_local_hour,
    parse_hour,
    resolve_timezone,
    start_of_next_utc_day,
    utcnow,
)
from relay_platform.services.budget_store import BudgetStore, trailing_hour

logger = logging.getLogger(__name__)


class RateLimiter:
    """Answers "may this user be messaged now?" against the Budget Store."""

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        store: BudgetStore | None = None,
        settings: Settings | None = None,
    ):
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()
        self.store = store or BudgetStore(db, self.settings)

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    async def check_limits(self, user_id: str) -> RateLimitResult:
        """Check today's daily budget, then the trailing-hour budget."""
        now = self.clock()
        try:
            async with self.db.begin_nested():
                budget = await self.store.get_or_create(user_id, now.date())
                if budget.messages_sent >= budget.daily_limit:
                    return RateLimitResult.block(
                        RateLimitReason.DAILY_LIMIT_REACHED,
                        start_of_next_utc_day(now),
                    )

                sent_last_hour = await self.store.count_units_sent_since(user_id, trailing_hour(now))
                if sent_last_hour >= budget.hourly_limit:
                    last_message_at = as_utc(budget.last_message_at) or now
                    return RateLimitResult.block(
                        RateLimitReason.HOURLY_LIMIT_REACHED,
                        last_message_at + timedelta(hours=1),
                    )

            return RateLimitResult.allow()
        except Exception as exc:
            logger.error("Rate limit check failed for user %s: %s", user_id, exc)
            if self.settings.rate_limit_fail_open:
                return RateLimitResult.allow()
            return RateLimitResult.block(
                RateLimitReason.STORE_UNAVAILABLE,
                now + timedelta(seconds=self.settings.poll_interval_seconds),
            )

    async def increment_message_budget(self, user_id: str) -> None:
        """Count one dispatched unit against today's budget.

        Errors propagate: the caller's transaction must not commit a sent
        unit without its budget increment.
        """
        now = self.clock()
        await self.store.increment(user_id, now.date(), now)

    # ------------------------------------------------------------------
    # Quiet hours
    # ------------------------------------------------------------------

    async def is_user_active(self, user_id: str) -> bool:
        """True if the user sent an inbound message within the active window."""
        since = self.clock() - timedelta(minutes=self.settings.active_user_window_minutes)
        try:
            async with self.db.begin_nested():
                return await self.store.has_inbound_since(user_id, since)
        except Exception as exc:
            logger.error("Activity check failed for user %s: %s", user_id, exc)
            return False

    async def is_quiet_hours(self, user_id: str) -> bool:
        """True if delivery to the user is currently suppressed by quiet hours.

        Returns False when quiet hours are disabled for the user or the user
        is active right now.
        """
        now = self.clock()
        try:
            async with self.db.begin_nested():
                budget = await self.store.get_or_create(user_id, now.date())
                user = await self.db.get(User, user_id)
            if not budget.quiet_hours_enabled:
                return False

            if await self.is_user_active(user_id):
                return False

            start, end, tz = self._quiet_window(user)
            hour = as_utc(now).astimezone(tz).hour

            if start > end:
                # Window spans midnight (e.g. 22:00 to 08:00)
                return hour >= start or hour < end
            return start <= hour < end
        except Exception as exc:
            logger.error("Quiet hours check failed for user %s: %s", user_id, exc)
            return not self.settings.rate_limit_fail_open

    async def quiet_hours_end_at(self, user_id: str) -> datetime:
        """When the user's current quiet window ends, in UTC."""
        user = await self.db.get(User, user_id)
        _, end, tz = self._quiet_window(user)
        return next_local_hour(self.clock(), end, tz)

    def _quiet_window(self, user: User | None):
        start = self.settings.default_quiet_hours_start
        end = self.settings.default_quiet_hours_end
        tz_name = None
        if user is not None:
            user_start = parse_hour(user.quiet_hours_start)
            user_end = parse_hour(user.quiet_hours_end)
            if user_start is not None:
                start = user_start
            if user_end is not None:
                end = user_end
            tz_name = user.timezone
        return start, end, resolve_timezone(tz_name, self.settings.default_timezone)
