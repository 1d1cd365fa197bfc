"""Tests for enqueueing, withdrawing and fetching queue rows."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from relay_platform.domain.errors import MessageNotFoundError, QueueValidationError
from relay_platform.domain.contracts import DeliveryUnit, QueuedPart
from relay_platform.domain.models import AgentTask, MessageQueue
from relay_platform.infra.clock import as_utc
from relay_platform.services.message_queue_service import (
    MessageQueueService,
    QueueMessageParams,
    agent_role,
)


def _utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def clock(fixed_clock):
    # 11:30 in New York
    return fixed_clock(2026, 1, 14, 16, 30)


def _params(user_id, **kwargs) -> QueueMessageParams:
    defaults = {"agent_id": "concierge_7f3a", "message_data": {"type": "update", "text": "hi"}}
    defaults.update(kwargs)
    return QueueMessageParams(user_id=user_id, **defaults)


async def _reload(db, row_id) -> MessageQueue:
    return await db.get(MessageQueue, row_id, populate_existing=True)


class TestQueueMessage:
    async def test_non_delayable_is_due_now(self, db_session, make_user, clock):
        user = await make_user()
        service = MessageQueueService(db_session, clock)

        row_id = await service.queue_message(_params(user.id, can_delay=False, priority="urgent"))

        row = await _reload(db_session, row_id)
        assert row.status == "queued"
        assert row.priority == "urgent"
        assert row.attempt_count == 0
        assert as_utc(row.scheduled_for) == clock.now
        assert as_utc(row.created_at) == clock.now

    async def test_delayable_without_pattern_waits_for_ten_local(self, db_session, make_user, clock):
        user = await make_user()
        service = MessageQueueService(db_session, clock)

        row_id = await service.queue_message(_params(user.id))

        row = await _reload(db_session, row_id)
        assert as_utc(row.scheduled_for) == _utc(2026, 1, 15, 15, 0)

    async def test_active_user_gets_delayable_message_now(
        self, db_session, make_user, make_inbound, clock,
    ):
        user = await make_user()
        await make_inbound(user.id, clock.now - timedelta(minutes=2))
        service = MessageQueueService(db_session, clock)

        row_id = await service.queue_message(_params(user.id))

        assert as_utc((await _reload(db_session, row_id)).scheduled_for) == clock.now

    async def test_later_sequence_parts_join_first_part_schedule(self, db_session, make_user, clock):
        user = await make_user()
        service = MessageQueueService(db_session, clock)

        first = await service.queue_message(_params(user.id, sequence_id="s1", sequence_position=1, sequence_total=2))
        second = await service.queue_message(
            _params(user.id, can_delay=False, sequence_id="s1", sequence_position=2, sequence_total=2)
        )

        rows = [await _reload(db_session, first), await _reload(db_session, second)]
        assert rows[0].scheduled_for == rows[1].scheduled_for
        assert rows[1].sequence_position == 2

    async def test_pre_rendered_text_without_data(self, db_session, make_user, clock):
        user = await make_user()
        service = MessageQueueService(db_session, clock)

        row_id = await service.queue_message(
            _params(user.id, message_data={}, final_message="See you at 3", can_delay=False)
        )

        assert (await _reload(db_session, row_id)).final_message == "See you at 3"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"priority": "critical"},
            {"sequence_id": "s1"},
            {"sequence_id": "s1", "sequence_position": 3, "sequence_total": 2},
            {"sequence_id": "s1", "sequence_position": 1, "sequence_total": 0},
            {"message_data": {}},
            {"agent_id": ""},
        ],
    )
    async def test_rejects_malformed_params(self, db_session, make_user, clock, overrides):
        user = await make_user()
        service = MessageQueueService(db_session, clock)

        with pytest.raises(QueueValidationError):
            await service.queue_message(_params(user.id, **overrides))

    async def test_rejects_unknown_user(self, db_session, clock):
        service = MessageQueueService(db_session, clock)

        with pytest.raises(QueueValidationError, match="Unknown user"):
            await service.queue_message(_params("no-such-user"))


class TestWithdraw:
    async def test_cancel_standalone(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        row = await make_queued(user.id, clock.now)
        service = MessageQueueService(db_session, clock)

        affected = await service.cancel_message(row.id)

        assert affected == 1
        assert (await _reload(db_session, row.id)).status == "cancelled"

    async def test_cancel_one_part_cancels_sequence(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        parts = [await make_queued(user.id, clock.now, sequence=("s2", i, 3)) for i in (1, 2, 3)]
        service = MessageQueueService(db_session, clock)

        affected = await service.cancel_message(parts[1].id)

        assert affected == 3
        for part in parts:
            assert (await _reload(db_session, part.id)).status == "cancelled"

    async def test_supersede_records_reason(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        row = await make_queued(user.id, clock.now)
        service = MessageQueueService(db_session, clock)

        await service.supersede_message(row.id, "newer_context")

        reloaded = await _reload(db_session, row.id)
        assert reloaded.status == "superseded"
        assert reloaded.superseded_reason == "newer_context"

    async def test_sent_rows_are_left_alone(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        row = await make_queued(user.id, clock.now, status="sent")
        service = MessageQueueService(db_session, clock)

        assert await service.cancel_message(row.id) == 0
        assert (await _reload(db_session, row.id)).status == "sent"

    async def test_unknown_id(self, db_session, clock):
        with pytest.raises(MessageNotFoundError):
            await MessageQueueService(db_session, clock).cancel_message("missing")


class TestFetchDue:
    async def test_batch_cap_does_not_split_sequences(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        for i in (1, 2, 3):
            await make_queued(user.id, clock.now - timedelta(minutes=i), sequence=("s3", i, 3))
        await make_queued(user.id, clock.now)

        parts = await MessageQueueService(db_session, clock).fetch_due_parts(clock.now, limit=1)

        assert sorted(p.position for p in parts) == [1, 2, 3]
        assert {p.sequence_id for p in parts} == {"s3"}

    async def test_only_queued_and_due(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        due = await make_queued(user.id, clock.now)
        await make_queued(user.id, clock.now + timedelta(seconds=1))
        await make_queued(user.id, clock.now - timedelta(hours=1), status="cancelled")

        parts = await MessageQueueService(db_session, clock).fetch_due_parts(clock.now, limit=50)

        assert [p.id for p in parts] == [due.id]

    async def test_batch_cap_takes_most_urgent_first(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        await make_queued(user.id, clock.now - timedelta(hours=2), priority="low")
        await make_queued(user.id, clock.now - timedelta(hours=1), priority="medium")
        urgent = await make_queued(user.id, clock.now, priority="urgent")

        parts = await MessageQueueService(db_session, clock).fetch_due_parts(clock.now, limit=1)

        assert [p.id for p in parts] == [urgent.id]

    async def test_unknown_priority_ranks_with_medium(self, db_session, make_user, make_queued, clock):
        user = await make_user()
        odd = await make_queued(user.id, clock.now - timedelta(hours=1), priority="whenever")
        await make_queued(user.id, clock.now - timedelta(hours=2), priority="low")

        parts = await MessageQueueService(db_session, clock).fetch_due_parts(clock.now, limit=1)

        assert [p.id for p in parts] == [odd.id]


class TestRelevanceSupport:
    async def test_fresh_context_flag_is_stored(self, db_session, make_user, clock):
        user = await make_user()
        service = MessageQueueService(db_session, clock)

        row_id = await service.queue_message(_params(user.id, requires_fresh_context=True))

        row = await _reload(db_session, row_id)
        assert row.requires_fresh_context is True
        assert QueuedPart.from_row(row).requires_fresh_context is True

    async def test_inbound_since_newest_first_and_capped(
        self, db_session, make_user, make_inbound, clock,
    ):
        user = await make_user()
        queued_at = clock.now - timedelta(hours=1)
        await make_inbound(user.id, queued_at - timedelta(minutes=5), content="before")
        for minute in (10, 20, 30):
            await make_inbound(user.id, queued_at + timedelta(minutes=minute), content=f"after {minute}")

        recent = await MessageQueueService(db_session, clock).inbound_since(user.id, queued_at, limit=2)

        assert [m["content"] for m in recent] == ["after 30", "after 20"]
        assert recent[0]["created_at"] == queued_at + timedelta(minutes=30)

    async def test_request_reformulation_creates_agent_task(
        self, db_session, make_user, make_queued, clock,
    ):
        user = await make_user()
        row = await make_queued(
            user.id, clock.now, message_data={"type": "tour_reminder"}, agent_id="concierge_7f3a",
        )
        unit = DeliveryUnit(parts=[QueuedPart.from_row(row)])
        service = MessageQueueService(db_session, clock)

        task_id = await service.request_reformulation(unit, "user cancelled the tour")

        result = await db_session.execute(select(AgentTask).where(AgentTask.id == task_id))
        task = result.scalar_one()
        assert task.task_type == "reformulate_message"
        assert task.agent_type == "concierge"
        assert task.priority == "high"
        assert task.status == "pending"
        assert task.context_json["original_message_id"] == row.id
        assert task.context_json["original_message_data"] == {"type": "tour_reminder"}
        assert task.context_json["reason"] == "context_changed"


def test_agent_role():
    assert agent_role("concierge_7f3a") == "concierge"
    assert agent_role("scheduler") == "scheduler"
    assert agent_role("") == "system"
