"""Sequence Grouper: turns due queue parts into ordered delivery units."""

import logging
from datetime import datetime, timedelta

from relay_platform.domain.contracts import DeliveryUnit, QueuedPart, SequencePart
from relay_platform.domain.enums import IncompleteSequencePolicy

logger = logging.getLogger(__name__)


def _missing_positions(parts: list[QueuedPart]) -> tuple[bool, list[int]]:
    """Check that parts cover 1..total exactly once with one agreed total."""
    totals = {part.kind.total for part in parts if isinstance(part.kind, SequencePart)}
    positions = [part.position for part in parts]
    if len(totals) != 1:
        return False, []

    total = totals.pop()
    expected = set(range(1, total + 1))
    missing = sorted(expected - set(positions))
    complete = (
        not missing
        and len(positions) == total
        and len(set(positions)) == len(positions)
    )
    return complete, missing


def group_due_units(
    parts: list[QueuedPart],
    policy: IncompleteSequencePolicy = IncompleteSequencePolicy.DELIVER_PARTIAL,
    now: datetime | None = None,
    withhold_timeout: timedelta = timedelta(minutes=30),
) -> tuple[list[DeliveryUnit], list[DeliveryUnit]]:
    """Group parts by sequence id and validate each sequence.

    Returns ``(units, withheld)``. Standalone parts become singleton units.
    Sequence parts are sorted by position regardless of fetch order.
    Incomplete sequences are logged and either delivered with the parts
    present (``deliver_partial``) or withheld until complete or until their
    oldest part is older than ``withhold_timeout`` (``withhold``).
    """
    units: list[DeliveryUnit] = []
    withheld: list[DeliveryUnit] = []
    sequences: dict[str, list[QueuedPart]] = {}

    for part in parts:
        if part.sequence_id is None:
            units.append(DeliveryUnit(parts=[part]))
        else:
            sequences.setdefault(part.sequence_id, []).append(part)

    for sequence_id, members in sequences.items():
        members.sort(key=lambda p: (p.position, p.created_at, p.id))
        complete, missing = _missing_positions(members)
        unit = DeliveryUnit(parts=members, complete=complete, missing_positions=missing)

        if complete:
            units.append(unit)
            continue

        logger.warning(
            "Incomplete sequence %s for user %s: have positions %s, missing %s (totals %s)",
            sequence_id,
            unit.user_id,
            [p.position for p in members],
            missing,
            sorted({p.kind.total for p in members}),
        )

        if policy == IncompleteSequencePolicy.WITHHOLD:
            timed_out = now is not None and now - unit.created_at >= withhold_timeout
            if not timed_out:
                withheld.append(unit)
                continue
            logger.warning(
                "Sequence %s still incomplete after %s, delivering %d parts present",
                sequence_id, withhold_timeout, len(members),
            )

        units.append(unit)

    return units, withheld


def order_units(units: list[DeliveryUnit]) -> list[DeliveryUnit]:
    """Total order: priority (urgent first), scheduled_for, created_at, id."""
    return sorted(units, key=lambda unit: unit.sort_key())
