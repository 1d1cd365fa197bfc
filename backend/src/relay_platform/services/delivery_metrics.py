"""Delivery Metrics: counters for the processor, owned by the running process.

One instance is created per process (at app startup) and injected into the
processor and routes; nothing here is module-global. Values reset with the
process and are meant to be scraped or aggregated externally.
"""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class DeliveryMetrics:
    messages_queued: int = 0
    ticks: int = 0
    units_sent: int = 0
    parts_sent: int = 0
    units_rescheduled: int = 0
    units_withheld: int = 0
    units_superseded: int = 0
    dispatch_failures: int = 0
    tick_failures: int = 0
    last_process_time: datetime | None = None
    reschedule_reasons: dict[str, int] = field(default_factory=dict)

    def record_queued(self, count: int = 1) -> None:
        self.messages_queued += count

    def record_tick(self, started_at: datetime) -> None:
        self.ticks += 1
        self.last_process_time = started_at

    def record_sent(self, parts: int) -> None:
        self.units_sent += 1
        self.parts_sent += parts

    def record_rescheduled(self, reason: str) -> None:
        self.units_rescheduled += 1
        self.reschedule_reasons[reason] = self.reschedule_reasons.get(reason, 0) + 1

    def record_withheld(self) -> None:
        self.units_withheld += 1

    def record_superseded(self) -> None:
        self.units_superseded += 1

    def record_dispatch_failure(self) -> None:
        self.dispatch_failures += 1

    def record_tick_failure(self) -> None:
        self.tick_failures += 1

    def snapshot(self) -> dict:
        return {
            "messagesQueued": self.messages_queued,
            "messagesProcessed": self.ticks,
            "lastProcessTime": self.last_process_time.isoformat() if self.last_process_time else None,
            "unitsSent": self.units_sent,
            "partsSent": self.parts_sent,
            "unitsRescheduled": self.units_rescheduled,
            "unitsWithheld": self.units_withheld,
            "unitsSuperseded": self.units_superseded,
            "dispatchFailures": self.dispatch_failures,
            "tickFailures": self.tick_failures,
            "rescheduleReasons": dict(self.reschedule_reasons),
        }
