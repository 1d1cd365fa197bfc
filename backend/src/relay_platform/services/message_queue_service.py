"""Queue Store: every state transition on the ``message_queue`` table.

Producers call ``queue_message`` / ``cancel_message`` / ``supersede_message``.
The processor calls the fetch, claim and update methods. Methods flush but
never commit; transaction boundaries belong to the caller.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay_platform.app.config import Settings, get_settings
from relay_platform.domain.contracts import DeliveryUnit, DispatchResult, QueuedPart
from relay_platform.domain.enums import AgentTaskStatus, Direction, MessageStatus, Priority
from relay_platform.domain.errors import MessageNotFoundError, QueueValidationError
from relay_platform.domain.models import AgentTask, Message, MessageQueue, User
from relay_platform.infra.clock import Clock, as_utc, utcnow
from relay_platform.services.rate_limiter import RateLimiter
from relay_platform.services.send_time import calculate_optimal_send_time

logger = logging.getLogger(__name__)

# Unknown priorities sort with medium, matching QueuedPart.from_row
_PRIORITY_ORDER = case(
    {priority.value: priority.rank for priority in Priority},
    value=MessageQueue.priority,
    else_=Priority.MEDIUM.rank,
)


@dataclass
class QueueMessageParams:
    user_id: str
    agent_id: str
    message_data: dict = field(default_factory=dict)
    priority: str = Priority.MEDIUM.value
    can_delay: bool = True
    final_message: str | None = None
    conversation_id: str | None = None
    sequence_id: str | None = None
    sequence_position: int | None = None
    sequence_total: int | None = None
    requires_fresh_context: bool = False

    def validate(self) -> None:
        if not self.user_id or not self.agent_id:
            raise QueueValidationError("user_id and agent_id are required")
        if not self.message_data and not self.final_message:
            raise QueueValidationError("message_data or final_message is required")
        try:
            Priority(self.priority)
        except ValueError:
            raise QueueValidationError(
                f"Invalid priority {self.priority!r}; expected one of {[p.value for p in Priority]}"
            ) from None

        sequence_fields = (self.sequence_id, self.sequence_position, self.sequence_total)
        if any(v is not None for v in sequence_fields) and not all(v is not None for v in sequence_fields):
            raise QueueValidationError(
                "sequence_id, sequence_position and sequence_total must be given together"
            )
        if self.sequence_id is not None:
            if self.sequence_total < 1:
                raise QueueValidationError("sequence_total must be at least 1")
            if not 1 <= self.sequence_position <= self.sequence_total:
                raise QueueValidationError(
                    f"sequence_position must be within 1..{self.sequence_total}"
                )


def agent_role(agent_id: str) -> str:
    """Agent role from an instance id like ``concierge_7f3a``."""
    return agent_id.split("_")[0] if agent_id else "system"


class MessageQueueService:
    """Reads and writes ``message_queue`` rows."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow, settings: Settings | None = None):
        self.db = db
        self.clock = clock
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def queue_message(self, params: QueueMessageParams) -> str:
        """Insert a queued row and return its id."""
        params.validate()
        now = self.clock()

        user = await self.db.get(User, params.user_id)
        if user is None:
            raise QueueValidationError(f"Unknown user {params.user_id}")

        scheduled_for = await self._initial_schedule(params, user, now)

        row = MessageQueue(
            id=str(uuid.uuid4()),
            user_id=params.user_id,
            agent_id=params.agent_id,
            conversation_id=params.conversation_id,
            message_data=params.message_data or {},
            final_message=params.final_message,
            scheduled_for=scheduled_for,
            priority=params.priority,
            can_delay=params.can_delay,
            status=MessageStatus.QUEUED.value,
            sequence_id=params.sequence_id,
            sequence_position=params.sequence_position,
            sequence_total=params.sequence_total,
            requires_fresh_context=params.requires_fresh_context,
            attempt_count=0,
            created_at=now,
        )
        self.db.add(row)
        await self.db.flush()

        logger.info(
            "Queued message %s for user %s (priority=%s, scheduled_for=%s%s)",
            row.id,
            params.user_id,
            params.priority,
            scheduled_for.isoformat(),
            f", sequence {params.sequence_id} {params.sequence_position}/{params.sequence_total}"
            if params.sequence_id else "",
        )
        return row.id

    async def _initial_schedule(self, params: QueueMessageParams, user: User, now: datetime) -> datetime:
        # Later parts of a sequence join the schedule of the parts already queued
        if params.sequence_id:
            result = await self.db.execute(
                select(MessageQueue.scheduled_for)
                .where(
                    MessageQueue.sequence_id == params.sequence_id,
                    MessageQueue.status == MessageStatus.QUEUED.value,
                )
                .order_by(MessageQueue.scheduled_for)
                .limit(1)
            )
            sibling_time = result.scalar_one_or_none()
            if sibling_time is not None:
                return as_utc(sibling_time)

        if not params.can_delay:
            return now

        limiter = RateLimiter(self.db, clock=self.clock, settings=self.settings)
        if await limiter.is_user_active(params.user_id):
            return now
        return calculate_optimal_send_time(user, now, self.settings.default_timezone)

    async def cancel_message(self, message_id: str) -> int:
        """Cancel a queued message; a sequence part cancels its whole sequence."""
        return await self._withdraw(message_id, MessageStatus.CANCELLED, reason=None)

    async def supersede_message(self, message_id: str, reason: str) -> int:
        """Mark a queued message (or its whole sequence) as superseded."""
        return await self._withdraw(message_id, MessageStatus.SUPERSEDED, reason=reason)

    async def _withdraw(self, message_id: str, status: MessageStatus, reason: str | None) -> int:
        row = await self.db.get(MessageQueue, message_id)
        if row is None:
            raise MessageNotFoundError(message_id)

        if row.sequence_id:
            target = MessageQueue.sequence_id == row.sequence_id
        else:
            target = MessageQueue.id == row.id

        result = await self.db.execute(
            update(MessageQueue)
            .where(and_(target, MessageQueue.status == MessageStatus.QUEUED.value))
            .values(status=status.value, superseded_reason=reason)
            .execution_options(synchronize_session=False)
        )
        affected = result.rowcount or 0
        logger.info("Message %s %s (%d rows, reason=%s)", message_id, status.value, affected, reason)
        return affected

    # ------------------------------------------------------------------
    # Processor side
    # ------------------------------------------------------------------

    async def fetch_due_parts(self, now: datetime, limit: int) -> list[QueuedPart]:
        """Queued rows due at ``now``, plus due siblings of any sequence in the batch."""
        due = and_(
            MessageQueue.status == MessageStatus.QUEUED.value,
            MessageQueue.scheduled_for <= now,
        )
        result = await self.db.execute(
            select(MessageQueue)
            .where(due)
            .order_by(
                _PRIORITY_ORDER,
                MessageQueue.scheduled_for,
                MessageQueue.created_at,
                MessageQueue.id,
            )
            .limit(limit)
        )
        rows = list(result.scalars().all())

        seen = {row.id for row in rows}
        sequence_ids = {row.sequence_id for row in rows if row.sequence_id}
        if sequence_ids:
            siblings = await self.db.execute(
                select(MessageQueue).where(
                    due,
                    MessageQueue.sequence_id.in_(sequence_ids),
                )
            )
            for row in siblings.scalars().all():
                if row.id not in seen:
                    rows.append(row)
                    seen.add(row.id)

        return [QueuedPart.from_row(row) for row in rows]

    async def claim(self, part_ids: list[str]) -> list[str]:
        """Lock the unit's rows that are still queued; returns the claimed ids.

        ``SKIP LOCKED`` keeps a second processor instance off rows this one
        holds. Dialects without row locks (SQLite) render a plain SELECT.
        """
        result = await self.db.execute(
            select(MessageQueue.id)
            .where(
                MessageQueue.id.in_(part_ids),
                MessageQueue.status == MessageStatus.QUEUED.value,
            )
            .with_for_update(skip_locked=True)
        )
        return [row_id for (row_id,) in result.all()]

    async def statuses(self, part_ids: list[str]) -> dict[str, str]:
        result = await self.db.execute(
            select(MessageQueue.id, MessageQueue.status).where(MessageQueue.id.in_(part_ids))
        )
        return {row_id: status for row_id, status in result.all()}

    async def set_status(self, part_ids: list[str], status: MessageStatus, reason: str | None = None) -> None:
        await self.db.execute(
            update(MessageQueue)
            .where(
                MessageQueue.id.in_(part_ids),
                MessageQueue.status == MessageStatus.QUEUED.value,
            )
            .values(status=status.value, superseded_reason=reason)
            .execution_options(synchronize_session=False)
        )

    async def reschedule(self, part_ids: list[str], scheduled_for: datetime) -> None:
        """Give every row of a unit the same new scheduled_for."""
        await self.db.execute(
            update(MessageQueue)
            .where(MessageQueue.id.in_(part_ids))
            .values(scheduled_for=scheduled_for)
            .execution_options(synchronize_session=False)
        )

    async def save_rendered(self, rendered: dict[str, str]) -> None:
        for part_id, text in rendered.items():
            await self.db.execute(
                update(MessageQueue)
                .where(MessageQueue.id == part_id)
                .values(final_message=text)
                .execution_options(synchronize_session=False)
            )

    async def mark_sent(self, unit: DeliveryUnit, dispatch: DispatchResult, sent_at: datetime) -> None:
        """Record every part as sent and log one outbound message per part."""
        for part in unit.parts:
            message = Message(
                id=str(uuid.uuid4()),
                user_id=part.user_id,
                conversation_id=part.conversation_id,
                role=agent_role(part.agent_id),
                content=dispatch.rendered[part.id],
                direction=Direction.OUTBOUND.value,
                status="sent",
                created_at=sent_at,
                sent_at=sent_at,
            )
            self.db.add(message)
            await self.db.flush()

            await self.db.execute(
                update(MessageQueue)
                .where(MessageQueue.id == part.id)
                .values(
                    status=MessageStatus.SENT.value,
                    final_message=dispatch.rendered[part.id],
                    sent_at=sent_at,
                    delivered_message_id=message.id,
                    last_attempt_at=sent_at,
                    attempt_count=MessageQueue.attempt_count + 1,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )

    async def record_failure(
        self,
        part_ids: list[str],
        error: str,
        attempted_at: datetime,
        retry_at: datetime,
    ) -> None:
        """Keep the unit queued, bump its attempt count and push it to ``retry_at``."""
        await self.db.execute(
            update(MessageQueue)
            .where(
                MessageQueue.id.in_(part_ids),
                MessageQueue.status == MessageStatus.QUEUED.value,
            )
            .values(
                attempt_count=MessageQueue.attempt_count + 1,
                last_error=error[:1000],
                last_attempt_at=attempted_at,
                scheduled_for=retry_at,
            )
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Relevance
    # ------------------------------------------------------------------

    async def inbound_since(self, user_id: str, since: datetime, limit: int) -> list[dict]:
        """The user's inbound texts since ``since``, newest first."""
        result = await self.db.execute(
            select(Message.role, Message.content, Message.created_at)
            .where(
                Message.user_id == user_id,
                Message.direction == Direction.INBOUND.value,
                Message.created_at > since,
            )
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        return [
            {"role": role, "content": content, "created_at": as_utc(created_at)}
            for role, content, created_at in result.all()
        ]

    async def request_reformulation(self, unit: DeliveryUnit, reason: str) -> str:
        """Ask the producing agent for a fresh version of a superseded unit."""
        head = unit.head
        task = AgentTask(
            id=str(uuid.uuid4()),
            task_type="reformulate_message",
            agent_type=agent_role(head.agent_id),
            user_id=head.user_id,
            scheduled_for=self.clock(),
            priority=Priority.HIGH.value,
            status=AgentTaskStatus.PENDING.value,
            context_json={
                "original_message_id": head.id,
                "original_message_data": head.message_data,
                "sequence_id": unit.sequence_id,
                "reason": "context_changed",
                "detail": reason,
            },
        )
        self.db.add(task)
        await self.db.flush()
        logger.info("Requested reformulation of %s from %s (%s)", unit.label, task.agent_type, reason)
        return task.id
