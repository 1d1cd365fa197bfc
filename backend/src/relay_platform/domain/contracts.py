"""Typed dataclasses for the scheduler's in-memory view of the queue.

Queue rows are snapshotted into immutable parts as soon as they are fetched,
so a rolled-back unit never leaves expired ORM instances behind for the rest
of the batch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from relay_platform.domain.enums import (
    Priority,
    RateLimitReason,
    RelevanceClassification,
    UnitOutcome,
)
from relay_platform.infra.clock import as_utc


@dataclass(frozen=True)
class StandalonePart:
    """A single-part message."""


@dataclass(frozen=True)
class SequencePart:
    """Position of a part inside a multi-part sequence."""

    sequence_id: str
    position: int
    total: int


PartKind = Union[StandalonePart, SequencePart]


@dataclass(frozen=True)
class QueuedPart:
    id: str
    user_id: str
    agent_id: str
    message_data: dict
    final_message: str | None
    scheduled_for: datetime
    priority: Priority
    kind: PartKind
    created_at: datetime
    conversation_id: str | None = None
    attempt_count: int = 0
    requires_fresh_context: bool = False

    @property
    def sequence_id(self) -> str | None:
        return self.kind.sequence_id if isinstance(self.kind, SequencePart) else None

    @property
    def position(self) -> int:
        return self.kind.position if isinstance(self.kind, SequencePart) else 1

    @classmethod
    def from_row(cls, row) -> "QueuedPart":
        """Snapshot a MessageQueue row."""
        if row.sequence_id:
            kind: PartKind = SequencePart(
                sequence_id=row.sequence_id,
                position=row.sequence_position or 0,
                total=row.sequence_total or 0,
            )
        else:
            kind = StandalonePart()

        try:
            priority = Priority(row.priority or Priority.MEDIUM.value)
        except ValueError:
            priority = Priority.MEDIUM

        scheduled_for = as_utc(row.scheduled_for)
        return cls(
            id=row.id,
            user_id=row.user_id,
            agent_id=row.agent_id,
            message_data=dict(row.message_data or {}),
            final_message=row.final_message,
            scheduled_for=scheduled_for,
            priority=priority,
            kind=kind,
            created_at=as_utc(row.created_at) or scheduled_for,
            conversation_id=row.conversation_id,
            attempt_count=row.attempt_count or 0,
            requires_fresh_context=bool(row.requires_fresh_context),
        )


@dataclass
class DeliveryUnit:
    """The atomic scheduling grouping: one standalone part or one sequence."""

    parts: list[QueuedPart]
    complete: bool = True
    missing_positions: list[int] = field(default_factory=list)

    @property
    def head(self) -> QueuedPart:
        return self.parts[0]

    @property
    def user_id(self) -> str:
        return self.head.user_id

    @property
    def sequence_id(self) -> str | None:
        return self.head.sequence_id

    @property
    def is_sequence(self) -> bool:
        return self.sequence_id is not None

    @property
    def priority(self) -> Priority:
        return self.head.priority

    @property
    def scheduled_for(self) -> datetime:
        return min(part.scheduled_for for part in self.parts)

    @property
    def created_at(self) -> datetime:
        return min(part.created_at for part in self.parts)

    @property
    def part_ids(self) -> list[str]:
        return [part.id for part in self.parts]

    @property
    def attempt_count(self) -> int:
        return max(part.attempt_count for part in self.parts)

    @property
    def requires_fresh_context(self) -> bool:
        return any(part.requires_fresh_context for part in self.parts)

    @property
    def label(self) -> str:
        if self.is_sequence:
            return f"sequence {self.sequence_id} ({len(self.parts)} parts)"
        return f"message {self.head.id}"

    def sort_key(self) -> tuple:
        return (self.priority.rank, self.scheduled_for, self.created_at, self.head.id)


@dataclass
class RateLimitResult:
    allowed: bool
    reason: RateLimitReason | None = None
    next_available_at: datetime | None = None

    @classmethod
    def allow(cls) -> "RateLimitResult":
        return cls(allowed=True)

    @classmethod
    def block(cls, reason: RateLimitReason, next_available_at: datetime) -> "RateLimitResult":
        return cls(allowed=False, reason=reason, next_available_at=next_available_at)


@dataclass
class RelevanceResult:
    """Verdict on whether a queued unit still fits the conversation."""

    relevant: bool
    reason: str
    classification: RelevanceClassification | None = None
    should_reformulate: bool = False


@dataclass
class DispatchResult:
    """Outcome of sending one unit.

    ``rendered`` maps part id to final text for every part that rendered,
    including on failure, so the text can be persisted and reused on retry.
    """

    ok: bool
    rendered: dict[str, str] = field(default_factory=dict)
    sent_part_ids: list[str] = field(default_factory=list)
    provider_responses: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    failed_part_id: str | None = None


@dataclass
class TickSummary:
    """What one processing tick did, keyed by unit label."""

    started_at: datetime
    rows_fetched: int = 0
    units: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)

    def record(self, unit: DeliveryUnit, outcome: UnitOutcome) -> None:
        self.outcomes[unit.label] = outcome.value

    def count(self, outcome: UnitOutcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome.value)

    def as_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "rows_fetched": self.rows_fetched,
            "units": self.units,
            "sent": self.count(UnitOutcome.SENT),
            "rescheduled": self.count(UnitOutcome.RESCHEDULED),
            "withheld": self.count(UnitOutcome.WITHHELD),
            "skipped": self.count(UnitOutcome.SKIPPED),
            "cancelled": self.count(UnitOutcome.CANCELLED),
            "superseded": self.count(UnitOutcome.SUPERSEDED),
            "failed": self.count(UnitOutcome.FAILED),
        }
