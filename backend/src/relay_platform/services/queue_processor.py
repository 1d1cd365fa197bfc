"""Queue Processor: one polling tick of the outbound delivery pipeline.

Each tick:
1. Fetches queued rows that are due (batch capped, sequences kept whole)
2. Groups them into delivery units and orders the units
   (priority, then scheduled_for, then created_at)
3. Per unit, in its own transaction: claims the rows, checks budgets and
   quiet hours, supersedes units that went stale while waiting, then either
   reschedules the whole unit or dispatches it, marks every part sent and
   counts the unit once against the budget

A failure in one unit is logged, recorded on its rows and never stops the
rest of the batch.
"""

import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay_platform.app.config import Settings, get_settings
from relay_platform.domain.contracts import DeliveryUnit, TickSummary
from relay_platform.domain.enums import (
    IncompleteSequencePolicy,
    MessageStatus,
    RateLimitReason,
    UnitOutcome,
)
from relay_platform.domain.errors import UnknownUserError
from relay_platform.domain.models import User
from relay_platform.infra.clock import Clock, utcnow
from relay_platform.services.delivery_metrics import DeliveryMetrics
from relay_platform.services.dispatcher import (
    Dispatcher,
    MessageSender,
    RelevanceGate,
    TextRenderer,
)
from relay_platform.services.message_queue_service import MessageQueueService
from relay_platform.services.rate_limiter import RateLimiter
from relay_platform.services.sequence_grouper import group_due_units, order_units

logger = logging.getLogger(__name__)

_WITHDRAWN = {MessageStatus.CANCELLED.value, MessageStatus.SUPERSEDED.value}


def _relevance_payload(unit: DeliveryUnit) -> dict:
    if not unit.is_sequence:
        return unit.head.message_data or {"text": unit.head.final_message}
    return {
        "sequence": [part.message_data or {"text": part.final_message} for part in unit.parts],
    }


class QueueProcessor:
    """Processes due messages; the composition root of the scheduler."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        renderer: TextRenderer,
        sender: MessageSender,
        metrics: DeliveryMetrics | None = None,
        clock: Clock = utcnow,
        settings: Settings | None = None,
        relevance: RelevanceGate | None = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = Dispatcher(renderer, sender)
        self.relevance = relevance
        self.metrics = metrics or DeliveryMetrics()
        self.clock = clock
        self.settings = settings or get_settings()

    @property
    def sequence_policy(self) -> IncompleteSequencePolicy:
        try:
            return IncompleteSequencePolicy(self.settings.incomplete_sequence_policy)
        except ValueError:
            logger.warning(
                "Unknown incomplete_sequence_policy %r, using deliver_partial",
                self.settings.incomplete_sequence_policy,
            )
            return IncompleteSequencePolicy.DELIVER_PARTIAL

    async def process_due_messages(self) -> TickSummary:
        """Run one tick over everything currently due."""
        now = self.clock()
        summary = TickSummary(started_at=now)
        self.metrics.record_tick(now)

        async with self.session_factory() as db:
            parts = await MessageQueueService(db, self.clock, self.settings).fetch_due_parts(
                now, self.settings.queue_batch_size
            )
        summary.rows_fetched = len(parts)
        if not parts:
            logger.debug("No due messages to process")
            return summary

        units, withheld = group_due_units(
            parts,
            policy=self.sequence_policy,
            now=now,
            withhold_timeout=timedelta(minutes=self.settings.incomplete_sequence_timeout_minutes),
        )
        for unit in withheld:
            self.metrics.record_withheld()
            summary.record(unit, UnitOutcome.WITHHELD)

        ordered = order_units(units)
        summary.units = len(ordered) + len(withheld)
        logger.info("Found %d due rows in %d units", len(parts), summary.units)

        for unit in ordered:
            outcome = await self._process_unit(unit)
            summary.record(unit, outcome)

        logger.info("Tick complete: %s", summary.as_dict())
        return summary

    # ------------------------------------------------------------------
    # Per unit
    # ------------------------------------------------------------------

    async def _process_unit(self, unit: DeliveryUnit) -> UnitOutcome:
        try:
            async with self.session_factory() as db:
                outcome = await self._deliver_unit(db, unit)
                await db.commit()
                return outcome
        except Exception as exc:
            logger.error("Error processing %s for user %s: %s", unit.label, unit.user_id, exc)
            await self._record_failure_in_new_session(unit, str(exc))
            return UnitOutcome.FAILED

    async def _deliver_unit(self, db: AsyncSession, unit: DeliveryUnit) -> UnitOutcome:
        queue = MessageQueueService(db, self.clock, self.settings)

        # Re-check status at claim time so last-moment cancellations win
        claimed = await queue.claim(unit.part_ids)
        if not claimed:
            logger.info("%s no longer queued, skipping", unit.label)
            return UnitOutcome.SKIPPED

        if len(claimed) < len(unit.parts):
            return await self._handle_partial_claim(queue, unit, claimed)

        user = await db.get(User, unit.user_id)
        if user is None:
            raise UnknownUserError(unit.user_id)

        limiter = RateLimiter(db, clock=self.clock, settings=self.settings)

        limits = await limiter.check_limits(unit.user_id)
        if not limits.allowed:
            return await self._reschedule(queue, unit, limits.reason, limits.next_available_at)

        if await limiter.is_quiet_hours(unit.user_id):
            quiet_end = await limiter.quiet_hours_end_at(unit.user_id)
            return await self._reschedule(queue, unit, RateLimitReason.QUIET_HOURS, quiet_end)

        if unit.requires_fresh_context and self.relevance is not None:
            if await self._supersede_if_stale(db, queue, unit):
                return UnitOutcome.SUPERSEDED

        result = await self.dispatcher.dispatch(unit, user)
        if not result.ok:
            await queue.save_rendered(result.rendered)
            await self._record_failure(queue, unit, result.error or "dispatch_failed")
            return UnitOutcome.FAILED

        sent_at = self.clock()
        await queue.mark_sent(unit, result, sent_at)
        # One increment per unit, however many parts it has
        await limiter.increment_message_budget(unit.user_id)

        self.metrics.record_sent(len(unit.parts))
        logger.info(
            "Delivered %s to user %s (counted as 1 against budget)",
            unit.label, unit.user_id,
        )
        return UnitOutcome.SENT

    async def _handle_partial_claim(
        self,
        queue: MessageQueueService,
        unit: DeliveryUnit,
        claimed: list[str],
    ) -> UnitOutcome:
        missing = [part_id for part_id in unit.part_ids if part_id not in claimed]
        statuses = await queue.statuses(missing)
        withdrawn = sorted({s for s in statuses.values() if s in _WITHDRAWN})

        if withdrawn:
            # A sequence never goes out with holes the producer cut into it
            status = MessageStatus(withdrawn[0])
            await queue.set_status(claimed, status, reason="sequence_part_withdrawn")
            logger.warning(
                "%s: parts %s were %s, marking remaining %d parts %s",
                unit.label, missing, withdrawn, len(claimed), status.value,
            )
            return UnitOutcome.CANCELLED

        logger.info("%s partially held elsewhere (%s), skipping this tick", unit.label, missing)
        return UnitOutcome.SKIPPED

    async def _supersede_if_stale(
        self,
        db: AsyncSession,
        queue: MessageQueueService,
        unit: DeliveryUnit,
    ) -> bool:
        """Check the unit against what the user said since it was queued.

        A stale unit is superseded whole. Errors let the unit through.
        """
        try:
            async with db.begin_nested():
                recent = await queue.inbound_since(
                    unit.user_id, unit.created_at, self.settings.relevance_context_limit
                )
            verdict = await self.relevance.check_relevance(
                _relevance_payload(unit), unit.created_at, recent
            )
        except Exception as exc:
            logger.error("Relevance check failed for %s, sending anyway: %s", unit.label, exc)
            return False

        if verdict.relevant:
            return False

        await queue.set_status(unit.part_ids, MessageStatus.SUPERSEDED, reason=verdict.reason[:100])
        self.metrics.record_superseded()
        logger.info("%s for user %s no longer relevant: %s", unit.label, unit.user_id, verdict.reason)

        if verdict.should_reformulate:
            try:
                async with db.begin_nested():
                    await queue.request_reformulation(unit, verdict.reason)
            except Exception as exc:
                logger.error("Could not request reformulation of %s: %s", unit.label, exc)
        return True

    async def _reschedule(self, queue, unit: DeliveryUnit, reason: RateLimitReason, when) -> UnitOutcome:
        await queue.reschedule(unit.part_ids, when)
        self.metrics.record_rescheduled(reason.value)
        logger.info(
            "Rescheduled %s for user %s: %s, next attempt %s",
            unit.label, unit.user_id, reason.value, when.isoformat(),
        )
        return UnitOutcome.RESCHEDULED

    # ------------------------------------------------------------------
    # Failures
    # ------------------------------------------------------------------

    def _retry_delay(self, attempts: int) -> timedelta:
        base = self.settings.dispatch_retry_base_seconds
        cap = self.settings.dispatch_retry_max_seconds
        return timedelta(seconds=min(base * 2 ** max(attempts - 1, 0), cap))

    async def _record_failure(self, queue: MessageQueueService, unit: DeliveryUnit, error: str) -> None:
        attempts = unit.attempt_count + 1
        now = self.clock()
        retry_at = now + self._retry_delay(attempts)
        await queue.record_failure(unit.part_ids, error, now, retry_at)
        self.metrics.record_dispatch_failure()

        if attempts >= self.settings.dispatch_failure_alert_threshold:
            logger.error(
                "%s for user %s has failed %d times (last error: %s); retrying at %s",
                unit.label, unit.user_id, attempts, error, retry_at.isoformat(),
            )
        else:
            logger.warning(
                "%s for user %s failed (attempt %d): %s; retrying at %s",
                unit.label, unit.user_id, attempts, error, retry_at.isoformat(),
            )

    async def _record_failure_in_new_session(self, unit: DeliveryUnit, error: str) -> None:
        try:
            async with self.session_factory() as db:
                await self._record_failure(MessageQueueService(db, self.clock, self.settings), unit, error)
                await db.commit()
        except Exception as exc:
            # Rows stay queued at their old time and are picked up next tick
            logger.error("Could not record failure for %s: %s", unit.label, exc)
