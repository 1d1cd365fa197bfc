"""Domain enumerations for the Relay delivery orchestrator.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class Priority(str, Enum):
    """Delivery priority of a queued message. Declaration order is rank order."""

    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        """0 for urgent through 3 for low; lower ranks are delivered first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {priority: idx for idx, priority in enumerate(Priority)}


class MessageStatus(str, Enum):
    """Lifecycle of a message_queue row."""

    QUEUED = "queued"
    SENT = "sent"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class Direction(str, Enum):
    """Direction of a conversation message."""

    INBOUND = "inbound"
    OUTBOUND = "outbound"


class RateLimitReason(str, Enum):
    """Why a unit may not be delivered right now."""

    DAILY_LIMIT_REACHED = "daily_limit_reached"
    HOURLY_LIMIT_REACHED = "hourly_limit_reached"
    QUIET_HOURS = "quiet_hours"
    STORE_UNAVAILABLE = "store_unavailable"


class IncompleteSequencePolicy(str, Enum):
    """What to do with a sequence whose parts do not cover 1..total."""

    DELIVER_PARTIAL = "deliver_partial"
    WITHHOLD = "withhold"


class UnitOutcome(str, Enum):
    """Result of processing one delivery unit during a tick."""

    SENT = "sent"
    RESCHEDULED = "rescheduled"
    WITHHELD = "withheld"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"
    FAILED = "failed"


class RelevanceClassification(str, Enum):
    """How a queued message relates to what the user said after it was queued."""

    RELEVANT = "RELEVANT"
    STALE = "STALE"
    CONTEXTUAL = "CONTEXTUAL"


class AgentTaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
