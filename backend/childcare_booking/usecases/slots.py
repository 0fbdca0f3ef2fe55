from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from ..domain.errors import (
    InvalidBookingRequestError,
    InvalidWindowError,
    SlotConflictError,
    SlotNotFoundError,
    TerminalStateViolationError,
)
from ..domain.identity import CallerIdentity
from ..domain.keys import HourlySlotKey
from ..domain.services import check_slot_conflict
from ..domain.transactions import TransactionRunner, UnitOfWork
from ..models import Slot, SlotKind, SlotStatus
from ..utils.time import local_zone, to_local, to_utc_naive, utc_now_naive
from .transactions import read_options, run_guarded

logger = logging.getLogger(__name__)

# Mon..Thu
DAYCARE_WEEKDAYS = frozenset({0, 1, 2, 3})


@dataclass(frozen=True)
class SlotTimes:
    day: date
    hour: Optional[int]
    starts_at: datetime
    ends_at: datetime


@dataclass
class SlotBatchResult:
    created: List[Slot] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def slot_times(kind: SlotKind, starts_at: datetime, ends_at: datetime) -> SlotTimes:
    """Normalise an aware range into the stored local day, hour and UTC instants."""
    if starts_at.tzinfo is None or ends_at.tzinfo is None:
        raise InvalidWindowError("slot times must carry a timezone")
    local_start, local_end = to_local(starts_at), to_local(ends_at)
    if local_end <= local_start:
        raise InvalidWindowError("slot end must be later than its start")
    hour: Optional[int] = None
    if kind.is_hourly:
        keys = HourlySlotKey.span(local_start, local_end)
        if len(keys) != 1:
            raise InvalidWindowError("a daycare slot covers exactly one hour")
        hour = keys[0].hour
    elif local_start.date() != local_end.date():
        raise InvalidWindowError("a slot must start and end on the same day")
    return SlotTimes(
        day=local_start.date(),
        hour=hour,
        starts_at=to_utc_naive(starts_at),
        ends_at=to_utc_naive(ends_at),
    )


def _capacity_for(kind: SlotKind, capacity: Optional[int]) -> int:
    if kind.is_hourly:
        if capacity is None or capacity < 1:
            raise InvalidBookingRequestError("daycare slots need a capacity of at least 1")
        return capacity
    if capacity not in (None, 1):
        raise InvalidBookingRequestError(f"{kind.value} slots hold a single booking")
    return 1


async def check_no_conflict(
    uow: UnitOfWork,
    *,
    kind: SlotKind,
    times: SlotTimes,
    exclude_id: Optional[int] = None,
) -> None:
    existing = await uow.slots.list_on_day(kind, times.day, exclude_id=exclude_id)
    check_slot_conflict(times.starts_at, times.ends_at, existing)


def _new_slot(kind: SlotKind, times: SlotTimes, capacity: int, status: SlotStatus, now: datetime) -> Slot:
    return Slot(
        kind=kind,
        day=times.day,
        hour=times.hour,
        starts_at=times.starts_at,
        ends_at=times.ends_at,
        capacity=capacity,
        available=capacity,
        status=status,
        created_at=now,
        updated_at=now,
    )


async def create_slot(
    runner: TransactionRunner,
    caller: CallerIdentity,
    *,
    kind: SlotKind,
    starts_at: datetime,
    ends_at: datetime,
    capacity: Optional[int] = None,
    status: SlotStatus = SlotStatus.OPEN,
    now: Optional[datetime] = None,
) -> Slot:
    caller.require_admin("create slots")
    times = slot_times(kind, starts_at, ends_at)
    slot_capacity = _capacity_for(kind, capacity)
    now_naive = to_utc_naive(now) if now is not None else utc_now_naive()

    async def work(uow: UnitOfWork) -> Slot:
        await check_no_conflict(uow, kind=kind, times=times)
        return await uow.slots.add(_new_slot(kind, times, slot_capacity, status, now_naive))

    return await run_guarded(runner, work, operation="create slot")


async def create_daycare_slot_batch(
    runner: TransactionRunner,
    caller: CallerIdentity,
    *,
    start_date: date,
    open_hour: int,
    close_hour: int,
    capacity: int,
    days: int,
    now: Optional[datetime] = None,
) -> SlotBatchResult:
    """
    Generate hourly daycare slots for every Mon-Thu in [start_date, start_date + days).

    Hours run over [open_hour, close_hour). Slots the conflict check rejects,
    typically because they already exist, are skipped and reported.
    """
    caller.require_admin("generate slots")
    if not 0 <= open_hour < close_hour <= 23:
        raise InvalidWindowError("opening hours must satisfy 0 <= open < close <= 23")
    if days < 1:
        raise InvalidBookingRequestError("days must be at least 1")
    slot_capacity = _capacity_for(SlotKind.DAYCARE, capacity)
    now_naive = to_utc_naive(now) if now is not None else utc_now_naive()
    zone = local_zone()

    async def work(uow: UnitOfWork) -> SlotBatchResult:
        result = SlotBatchResult()
        for offset in range(days):
            day = start_date + timedelta(days=offset)
            if day.weekday() not in DAYCARE_WEEKDAYS:
                continue
            for hour in range(open_hour, close_hour):
                starts_at = datetime.combine(day, time(hour), tzinfo=zone)
                times = slot_times(SlotKind.DAYCARE, starts_at, starts_at.replace(hour=hour + 1))
                try:
                    await check_no_conflict(uow, kind=SlotKind.DAYCARE, times=times)
                except SlotConflictError as exc:
                    result.skipped.append(f"{day.isoformat()} {hour:02d}:00: {exc}")
                    continue
                slot = await uow.slots.add(_new_slot(SlotKind.DAYCARE, times, slot_capacity, SlotStatus.OPEN, now_naive))
                result.created.append(slot)
        return result

    result = await run_guarded(runner, work, operation="generate daycare slots")
    logger.info("daycare slot batch created=%d skipped=%d", len(result.created), len(result.skipped))
    return result


async def _apply_update(
    uow: UnitOfWork,
    slot: Slot,
    *,
    capacity: Optional[int],
    available: Optional[int],
    status: Optional[SlotStatus],
    times: Optional[SlotTimes],
    now: datetime,
) -> Slot:
    held = await uow.bookings.sum_active_units(slot.id)
    new_capacity = slot.capacity
    if capacity is not None:
        new_capacity = _capacity_for(slot.kind, capacity)
        if new_capacity < held:
            raise InvalidBookingRequestError(
                f"slot {slot.id} has {held} place(s) booked, capacity cannot drop to {new_capacity}"
            )

    free = new_capacity - held
    if available is not None:
        if not 0 <= available <= free:
            raise InvalidBookingRequestError(f"available for slot {slot.id} must lie within [0, {free}]")
        new_available = available
    elif new_capacity != slot.capacity:
        new_available = free
    else:
        new_available = slot.available

    if times is not None:
        if await uow.bookings.count_active_on_slots([slot.id]):
            raise TerminalStateViolationError(f"slot {slot.id} has active bookings, its time cannot change")
        await check_no_conflict(uow, kind=slot.kind, times=times, exclude_id=slot.id)
        slot.day = times.day
        slot.hour = times.hour
        slot.starts_at = times.starts_at
        slot.ends_at = times.ends_at

    slot.capacity = new_capacity
    slot.available = new_available
    if status is not None:
        slot.status = status
    slot.updated_at = now
    return slot


async def update_slot(
    runner: TransactionRunner,
    caller: CallerIdentity,
    slot_id: int,
    *,
    capacity: Optional[int] = None,
    available: Optional[int] = None,
    status: Optional[SlotStatus] = None,
    starts_at: Optional[datetime] = None,
    ends_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> Slot:
    caller.require_admin("update slots")
    if (starts_at is None) != (ends_at is None):
        raise InvalidWindowError("start and end must be changed together")
    now_naive = to_utc_naive(now) if now is not None else utc_now_naive()

    async def work(uow: UnitOfWork) -> Slot:
        slot = await uow.slots.get_for_update(slot_id)
        if slot is None:
            raise SlotNotFoundError(f"slot {slot_id} not found")
        times = slot_times(slot.kind, starts_at, ends_at) if starts_at is not None and ends_at is not None else None
        return await _apply_update(
            uow, slot, capacity=capacity, available=available, status=status, times=times, now=now_naive
        )

    return await run_guarded(runner, work, operation="update slot")


async def update_daycare_slots_in_range(
    runner: TransactionRunner,
    caller: CallerIdentity,
    *,
    day: date,
    start_hour: Optional[int] = None,
    end_hour: Optional[int] = None,
    capacity: Optional[int] = None,
    status: Optional[SlotStatus] = None,
    now: Optional[datetime] = None,
) -> List[Slot]:
    caller.require_admin("update slots")
    if capacity is None and status is None:
        raise InvalidBookingRequestError("nothing to update")
    now_naive = to_utc_naive(now) if now is not None else utc_now_naive()

    async def work(uow: UnitOfWork) -> List[Slot]:
        slots = await uow.slots.list_in_range(
            SlotKind.DAYCARE, day, day, start_hour=start_hour, end_hour=end_hour, for_update=True
        )
        if not slots:
            raise SlotNotFoundError(f"no daycare slots on {day.isoformat()} in the given hours")
        for slot in slots:
            await _apply_update(
                uow, slot, capacity=capacity, available=None, status=status, times=None, now=now_naive
            )
        return slots

    return await run_guarded(runner, work, operation="update daycare slots")


async def _delete_all(uow: UnitOfWork, slots: List[Slot]) -> List[int]:
    busy = await uow.bookings.count_active_on_slots([s.id for s in slots])
    if busy:
        raise TerminalStateViolationError(f"{busy} active booking(s) still hold the selected slot(s)")
    deleted = []
    for slot in slots:
        deleted.append(slot.id)
        await uow.slots.delete(slot)
    return deleted


async def delete_slot(runner: TransactionRunner, caller: CallerIdentity, slot_id: int) -> List[int]:
    caller.require_admin("delete slots")

    async def work(uow: UnitOfWork) -> List[int]:
        slot = await uow.slots.get_for_update(slot_id)
        if slot is None:
            raise SlotNotFoundError(f"slot {slot_id} not found")
        return await _delete_all(uow, [slot])

    return await run_guarded(runner, work, operation="delete slot")


async def delete_slots_in_range(
    runner: TransactionRunner,
    caller: CallerIdentity,
    *,
    kind: SlotKind,
    day: date,
    start_hour: Optional[int] = None,
    end_hour: Optional[int] = None,
) -> List[int]:
    caller.require_admin("delete slots")

    async def work(uow: UnitOfWork) -> List[int]:
        slots = await uow.slots.list_in_range(
            kind, day, day, start_hour=start_hour, end_hour=end_hour, for_update=True
        )
        if not slots:
            raise SlotNotFoundError(f"no {kind.value} slots on {day.isoformat()} in the given hours")
        return await _delete_all(uow, slots)

    return await run_guarded(runner, work, operation="delete slots")


async def list_availability(
    runner: TransactionRunner,
    *,
    kind: SlotKind,
    start_day: date,
    end_day: date,
) -> List[Slot]:
    if end_day < start_day:
        raise InvalidWindowError("end date must not precede start date")

    async def work(uow: UnitOfWork) -> List[Slot]:
        slots = await uow.slots.list_in_range(kind, start_day, end_day)
        return [s for s in slots if s.status == SlotStatus.OPEN and s.available > 0]

    return await run_guarded(runner, work, operation="list availability", options=read_options(runner))
