"""Budget Store: per-user, per-day delivery counters and activity lookups."""

import logging
import uuid
from datetime import date, datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from relay_platform.app.config import Settings, get_settings
from relay_platform.domain.enums import Direction, MessageStatus
from relay_platform.domain.models import Message, MessageQueue, UserMessageBudget
from relay_platform.infra.database import dialect_name

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class BudgetStore:
    """Reads and writes ``user_message_budget`` rows.

    Rows are keyed by (user_id, UTC date) and created lazily. Both creation
    and increment are single ``INSERT ... ON CONFLICT`` statements so
    concurrent callers never lose or double count an update.
    """

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    def _insert(self):
        name = dialect_name(self.db)
        try:
            return _UPSERT_DIALECTS[name](UserMessageBudget)
        except KeyError:
            raise NotImplementedError(f"No atomic upsert for dialect {name!r}") from None

    def _new_row_values(self, user_id: str, day: date) -> dict:
        return {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "date": day,
            "messages_sent": 0,
            "daily_limit": self.settings.default_daily_limit,
            "hourly_limit": self.settings.default_hourly_limit,
            "quiet_hours_enabled": True,
        }

    async def get_or_create(self, user_id: str, day: date) -> UserMessageBudget:
        """Return the budget row for ``day``, inserting defaults if absent."""
        stmt = (
            self._insert()
            .values(**self._new_row_values(user_id, day))
            .on_conflict_do_nothing(index_elements=["user_id", "date"])
        )
        await self.db.execute(stmt)

        result = await self.db.execute(
            select(UserMessageBudget)
            .where(
                UserMessageBudget.user_id == user_id,
                UserMessageBudget.date == day,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def increment(self, user_id: str, day: date, sent_at: datetime) -> None:
        """Insert today's row with a count of one, or add one to it."""
        values = self._new_row_values(user_id, day)
        values["messages_sent"] = 1
        values["last_message_at"] = sent_at

        stmt = self._insert().values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "date"],
            set_={
                "messages_sent": UserMessageBudget.messages_sent + 1,
                "last_message_at": stmt.excluded.last_message_at,
            },
        )
        await self.db.execute(stmt)
        logger.debug("Budget incremented for user %s on %s", user_id, day)

    async def count_units_sent_since(self, user_id: str, since: datetime) -> int:
        """Dispatched units (a sequence counts once) for the user since ``since``."""
        unit_key = func.coalesce(MessageQueue.sequence_id, MessageQueue.id)
        result = await self.db.execute(
            select(func.count(func.distinct(unit_key))).where(
                and_(
                    MessageQueue.user_id == user_id,
                    MessageQueue.status == MessageStatus.SENT.value,
                    MessageQueue.sent_at >= since,
                )
            )
        )
        return result.scalar_one() or 0

    async def has_inbound_since(self, user_id: str, since: datetime) -> bool:
        result = await self.db.execute(
            select(Message.id)
            .where(
                Message.user_id == user_id,
                Message.direction == Direction.INBOUND.value,
                Message.created_at >= since,
            )
            .limit(1)
        )
        return result.first() is not None


def trailing_hour(now: datetime) -> datetime:
    return now - timedelta(hours=1)
