"""Shared test infrastructure for the Relay orchestrator test suite.

Provides:
- session_factory: async_sessionmaker over a fresh in-memory SQLite database
- db_session: a session from that factory, for single-session service tests
- make_user / make_queued / make_inbound: row factories (committed)
- fixed_clock: factory for a settable clock
- renderer_fake / sender_fake / relevance_fake: recording stand-ins for the LLM and SMS
  collaborators
"""

import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Import Base first, then models to register all tables
from relay_platform.infra.database import Base

import relay_platform.domain.models  # noqa: F401

from relay_platform.domain.contracts import RelevanceResult
from relay_platform.domain.models import AgentTask, Message, MessageQueue, User, UserMessageBudget


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FixedClock:
    """Callable clock pinned to ``now`` until moved."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


@pytest.fixture
def fixed_clock():
    """Factory for a FixedClock.

    Usage:
        clock = fixed_clock(2026, 3, 10, 15, 0)   # 15:00 UTC, 11:00 New York
    """
    def _factory(*args) -> FixedClock:
        return FixedClock(datetime(*args, tzinfo=timezone.utc))

    return _factory


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def session_factory():
    """Session factory over an in-memory database with all tables created.

    StaticPool shares the single connection, so every session sees the same
    database. Tests commit their setup before running the processor.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    """Async SQLite in-memory session with all tables created."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(session_factory):
    """Factory that creates a User row.

    Usage:
        user = await make_user(timezone="America/Chicago")
    """
    async def _factory(
        phone_number: str = "+15551234567",
        first_name: str = "Sam",
        timezone: str | None = "America/New_York",
        quiet_hours_start: str | None = None,
        quiet_hours_end: str | None = None,
        response_pattern: dict | None = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            phone_number=phone_number,
            first_name=first_name,
            timezone=timezone,
            quiet_hours_start=quiet_hours_start,
            quiet_hours_end=quiet_hours_end,
            response_pattern=response_pattern,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _factory


@pytest.fixture
def make_queued(session_factory):
    """Factory that inserts a queued MessageQueue row directly, bypassing scheduling.

    Usage:
        row = await make_queued(user.id, scheduled_for=now, sequence=("seq-1", 2, 3))
    """
    async def _factory(
        user_id: str,
        scheduled_for: datetime,
        priority: str = "medium",
        final_message: str | None = "hello",
        message_data: dict | None = None,
        sequence: tuple[str, int, int] | None = None,
        created_at: datetime | None = None,
        status: str = "queued",
        attempt_count: int = 0,
        agent_id: str = "concierge_1",
        requires_fresh_context: bool = False,
    ) -> MessageQueue:
        sequence_id, position, total = sequence or (None, None, None)
        row = MessageQueue(
            id=str(uuid.uuid4()),
            user_id=user_id,
            agent_id=agent_id,
            message_data=message_data or {"type": "update"},
            final_message=final_message,
            scheduled_for=scheduled_for,
            priority=priority,
            can_delay=True,
            status=status,
            sequence_id=sequence_id,
            sequence_position=position,
            sequence_total=total,
            attempt_count=attempt_count,
            requires_fresh_context=requires_fresh_context,
            created_at=created_at or scheduled_for,
        )
        async with session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    return _factory


@pytest.fixture
def make_inbound(session_factory):
    """Factory that logs an inbound text from a user at ``created_at``."""
    async def _factory(user_id: str, created_at: datetime, content: str = "hi") -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            user_id=user_id,
            role="user",
            content=content,
            direction="inbound",
            created_at=created_at,
        )
        async with session_factory() as session:
            session.add(message)
            await session.commit()
        return message

    return _factory


@pytest.fixture
def load_queue(session_factory):
    """Read MessageQueue rows back by id, in the order given."""
    async def _load(*ids: str) -> list[MessageQueue]:
        async with session_factory() as session:
            result = await session.execute(select(MessageQueue).where(MessageQueue.id.in_(ids)))
            rows = {row.id: row for row in result.scalars().all()}
        return [rows[row_id] for row_id in ids]

    return _load


@pytest.fixture
def load_budget(session_factory):
    """Read a user's budget row for a day (None if absent)."""
    async def _load(user_id: str, day) -> UserMessageBudget | None:
        async with session_factory() as session:
            result = await session.execute(
                select(UserMessageBudget).where(
                    UserMessageBudget.user_id == user_id,
                    UserMessageBudget.date == day,
                )
            )
            return result.scalar_one_or_none()

    return _load


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

class RecordingSender:
    """SMS sender fake: records (to_number, text) and can fail on chosen texts."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_on: set[str] = set()
        self.raise_on: set[str] = set()

    async def send_sms(self, to_number: str, message: str) -> dict:
        if message in self.raise_on:
            raise ConnectionError("provider unreachable")
        if message in self.fail_on:
            return {"ok": False, "error": "http_500"}
        self.sent.append((to_number, message))
        return {"ok": True, "sid": f"SM{len(self.sent)}"}

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


class RecordingRenderer:
    """Renderer fake: echoes ``payload["text"]`` and records every call."""

    def __init__(self):
        self.calls: list[dict] = []
        self.fail = False

    async def render_text(self, payload: dict, user=None) -> str:
        self.calls.append(payload)
        if self.fail:
            raise RuntimeError("model unavailable")
        return payload.get("text", "rendered")


@pytest.fixture
def sender_fake():
    return RecordingSender()


@pytest.fixture
def renderer_fake():
    return RecordingRenderer()


@pytest.fixture
def load_agent_tasks(session_factory):
    """Every agent_tasks row for a user."""
    async def _load(user_id: str) -> list[AgentTask]:
        async with session_factory() as session:
            result = await session.execute(select(AgentTask).where(AgentTask.user_id == user_id))
            return list(result.scalars().all())

    return _load


class RecordingRelevance:
    """Relevance checker fake: returns ``verdict`` and records every call."""

    def __init__(self):
        self.calls: list[tuple[dict, datetime, list[dict]]] = []
        self.verdict = RelevanceResult(relevant=True, reason="no_new_context")
        self.fail = False

    async def check_relevance(self, payload: dict, queued_at: datetime, recent_messages: list[dict]):
        self.calls.append((payload, queued_at, recent_messages))
        if self.fail:
            raise RuntimeError("model unavailable")
        return self.verdict


@pytest.fixture
def relevance_fake():
    return RecordingRelevance()
