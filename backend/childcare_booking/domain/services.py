from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from ..models import Slot, SlotStatus
from .errors import (
    IncompleteCoverageError,
    InsufficientCapacityError,
    InvalidBookingRequestError,
    InvalidWindowError,
    InvariantViolationError,
    SlotConflictError,
)


@dataclass(frozen=True)
class SlotSnapshot:
    slot_id: int
    status: SlotStatus
    capacity: int
    available: int

    @classmethod
    def of(cls, slot: Slot) -> "SlotSnapshot":
        return cls(slot_id=slot.id, status=slot.status, capacity=slot.capacity, available=slot.available)


@dataclass(frozen=True)
class SlotAdjustment:
    slot_id: int
    available_before: int
    available_after: int
    clamped: bool = False

    @property
    def delta(self) -> int:
        return self.available_after - self.available_before


def adjust(snapshot: SlotSnapshot, delta: int) -> SlotAdjustment:
    """Apply `delta` to a slot's free units, refusing to leave [0, capacity]."""
    after = snapshot.available + delta
    if after < 0 or after > snapshot.capacity:
        raise InvariantViolationError(
            f"slot {snapshot.slot_id}: available {snapshot.available} {delta:+d} "
            f"leaves range [0, {snapshot.capacity}]"
        )
    return SlotAdjustment(slot_id=snapshot.slot_id, available_before=snapshot.available, available_after=after)


def plan_acquire(snapshots: Sequence[SlotSnapshot], *, expected: int, units: int) -> list[SlotAdjustment]:
    """
    Pure admission check for reserving `units` on every slot of a window.
    `expected` is how many slots the window must cover. Returns the per-slot decrements.
    """
    if units <= 0:
        raise InvalidBookingRequestError("units must be positive")
    open_slots = [s for s in snapshots if s.status == SlotStatus.OPEN]
    if expected <= 0 or len(open_slots) < expected:
        raise IncompleteCoverageError(
            f"requested window needs {expected} open slot(s), found {len(open_slots)}"
        )
    short = [s.slot_id for s in open_slots if s.available < units]
    if short:
        raise InsufficientCapacityError(f"not enough free places for {units} unit(s) in slot(s) {short}")
    return [adjust(s, -units) for s in open_slots]


def plan_release(snapshots: Iterable[SlotSnapshot], *, units: int) -> list[SlotAdjustment]:
    """Per-slot increments returning `units`, clamped at capacity."""
    adjustments: list[SlotAdjustment] = []
    for snapshot in snapshots:
        raw = snapshot.available + units
        after = min(raw, snapshot.capacity)
        adjustments.append(
            SlotAdjustment(
                slot_id=snapshot.slot_id,
                available_before=snapshot.available,
                available_after=after,
                clamped=raw != after,
            )
        )
    return adjustments


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap; touching intervals do not overlap."""
    return a_start < b_end and a_end > b_start


def check_slot_conflict(starts_at: datetime, ends_at: datetime, existing: Iterable[Slot]) -> None:
    """Reject an empty range, an exact duplicate or an overlap with same-day slots."""
    if ends_at <= starts_at:
        raise InvalidWindowError("slot end must be later than its start")
    candidates = list(existing)
    for slot in candidates:
        if slot.starts_at == starts_at and slot.ends_at == ends_at:
            raise SlotConflictError(f"slot {slot.id} already covers exactly this date and time")
    for slot in candidates:
        if overlaps(slot.starts_at, slot.ends_at, starts_at, ends_at):
            raise SlotConflictError(f"slot overlaps existing slot {slot.id}")
