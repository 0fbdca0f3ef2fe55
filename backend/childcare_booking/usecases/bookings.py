from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ..domain.errors import (
    BookingNotFoundError,
    DuplicateBookingError,
    InvalidBookingRequestError,
    InvalidWindowError,
    PermissionDeniedError,
    SlotNotFoundError,
    TerminalStateViolationError,
)
from ..domain.identity import CallerIdentity, Role
from ..domain.keys import HourlySlotKey
from ..domain.notifications import NotificationTemplate, Notifier
from ..domain.services import SlotSnapshot, plan_acquire, plan_release
from ..domain.transactions import TransactionRunner, UnitOfWork
from ..models import (
    AttendanceStatus,
    BirthdayPackage,
    Booking,
    BookingStatus,
    Dependent,
    Slot,
    SlotKind,
    SlotStatus,
)
from ..utils.time import to_local, to_utc_naive, utc_now_naive
from .notifications import deliver
from .transactions import read_options, run_guarded

logger = logging.getLogger(__name__)

_TERMINAL = (BookingStatus.CANCELLED, BookingStatus.CLOSED)


@dataclass(frozen=True)
class BookingWindow:
    starts_at: datetime
    ends_at: datetime

    def __post_init__(self) -> None:
        if self.starts_at.tzinfo is None or self.ends_at.tzinfo is None:
            raise InvalidWindowError("window instants must carry a timezone")
        if self.ends_at <= self.starts_at:
            raise InvalidWindowError("end must be later than start")


@dataclass(frozen=True)
class BookingRequest:
    kind: SlotKind
    window: Optional[BookingWindow] = None
    slot_id: Optional[int] = None
    dependent_ids: tuple[int, ...] = ()
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    comments: Optional[str] = None
    package: Optional[BirthdayPackage] = None
    number_of_kids: Optional[int] = None


@dataclass(frozen=True)
class BookingChange:
    """Fields left as None keep their current value."""

    window: Optional[BookingWindow] = None
    slot_id: Optional[int] = None
    dependent_ids: Optional[tuple[int, ...]] = None
    contact_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    comments: Optional[str] = None
    package: Optional[BirthdayPackage] = None
    number_of_kids: Optional[int] = None


@dataclass(frozen=True)
class DeletedBooking:
    booking_id: int
    kind: SlotKind
    slot_ids: tuple[int, ...]
    units: int
    status: BookingStatus
    released: bool


@dataclass(frozen=True)
class _Target:
    kind: SlotKind
    keys: tuple[HourlySlotKey, ...] = ()
    slot_id: Optional[int] = None

    @property
    def expected(self) -> int:
        return len(self.keys) if self.kind.is_hourly else 1


@dataclass(frozen=True)
class _Requester:
    user_id: Optional[int]
    contact_email: Optional[str]


def _now_naive(now: Optional[datetime]) -> datetime:
    return to_utc_naive(now) if now is not None else utc_now_naive()


def _as_window(booking: Booking) -> BookingWindow:
    return BookingWindow(
        starts_at=booking.starts_at.replace(tzinfo=timezone.utc),
        ends_at=booking.ends_at.replace(tzinfo=timezone.utc),
    )


def _resolve_target(kind: SlotKind, window: Optional[BookingWindow], slot_id: Optional[int]) -> _Target:
    if kind.is_hourly:
        if window is None:
            raise InvalidWindowError("a daycare booking needs a start and end time")
        keys = HourlySlotKey.span(to_local(window.starts_at), to_local(window.ends_at))
        return _Target(kind=kind, keys=tuple(keys))
    if slot_id is None:
        raise InvalidBookingRequestError(f"a {kind.value} booking needs a slot id")
    return _Target(kind=kind, slot_id=slot_id)


def _units_for(kind: SlotKind, dependent_ids: Sequence[int]) -> int:
    if not kind.is_hourly:
        return 1
    if not dependent_ids:
        raise InvalidBookingRequestError("select at least one child for the booking")
    if len(set(dependent_ids)) != len(dependent_ids):
        raise InvalidBookingRequestError("a child may only be listed once per booking")
    return len(dependent_ids)


async def _load_slots(uow: UnitOfWork, target: _Target, *, for_update: bool) -> List[Slot]:
    if target.kind.is_hourly:
        day = target.keys[0].day
        return await uow.slots.list_hourly(day, [key.hour for key in target.keys], for_update=for_update)
    assert target.slot_id is not None
    slot = await (uow.slots.get_for_update(target.slot_id) if for_update else uow.slots.get(target.slot_id))
    if slot is None:
        raise SlotNotFoundError(f"slot {target.slot_id} not found")
    if slot.kind != target.kind:
        raise InvalidBookingRequestError(f"slot {slot.id} is not a {target.kind.value} slot")
    return [slot]


def _check_not_started(caller: CallerIdentity, starts_at: datetime, now: datetime) -> None:
    if caller.is_admin:
        return
    if starts_at <= now:
        raise InvalidWindowError("cannot book a time that has already started")


async def _load_dependents(uow: UnitOfWork, caller: CallerIdentity, dependent_ids: Sequence[int]) -> List[Dependent]:
    if not dependent_ids:
        return []
    dependents = await uow.dependents.get_many(dependent_ids)
    if len(dependents) != len(set(dependent_ids)):
        raise InvalidBookingRequestError("some of the selected children do not exist")
    if not caller.is_admin and any(dep.tutor_id != caller.user_id for dep in dependents):
        raise PermissionDeniedError("some of the selected children are not registered to your account")
    return dependents


async def _acquire(
    uow: UnitOfWork,
    target: _Target,
    units: int,
    requester: _Requester,
    now: datetime,
    *,
    exclude_booking_id: Optional[int] = None,
) -> List[Slot]:
    """Reserve `units` on every slot of the target, re-checked against rows read in this transaction."""
    slots = await _load_slots(uow, target, for_update=True)
    if not target.kind.is_hourly and await uow.bookings.has_active_on_slot(
        slots[0].id, exclude_booking_id=exclude_booking_id
    ):
        raise DuplicateBookingError("this slot is already reserved")

    adjustments = plan_acquire([SlotSnapshot.of(s) for s in slots], expected=target.expected, units=units)
    acquired = [s for s in slots if s.status == SlotStatus.OPEN]

    duplicate = await uow.bookings.find_active_for_requester(
        user_id=requester.user_id,
        contact_email=requester.contact_email,
        slot_ids=[s.id for s in acquired],
        exclude_booking_id=exclude_booking_id,
    )
    if duplicate is not None:
        raise DuplicateBookingError(
            f"booking {duplicate.id} already holds this time; modify or cancel it instead"
        )

    by_id = {s.id: s for s in acquired}
    for adjustment in adjustments:
        slot = by_id[adjustment.slot_id]
        slot.available = adjustment.available_after
        slot.updated_at = now
    return acquired


async def _release(uow: UnitOfWork, booking: Booking, now: datetime) -> None:
    """Return the booking's units to each of its slots, clamping at capacity."""
    for held in list(booking.slots):
        slot = await uow.slots.get_for_update(held.id)
        if slot is None:
            continue
        (adjustment,) = plan_release([SlotSnapshot.of(slot)], units=booking.units)
        if adjustment.clamped:
            logger.warning(
                "releasing %d unit(s) of booking %s would push slot %s above capacity %d; clamped",
                booking.units,
                booking.id,
                slot.id,
                slot.capacity,
            )
        slot.available = adjustment.available_after
        slot.updated_at = now


def _requester_of(caller: CallerIdentity, contact_email: Optional[str]) -> _Requester:
    return _Requester(user_id=caller.user_id, contact_email=contact_email)


def _contact_for(caller: CallerIdentity, request: BookingRequest) -> tuple[Optional[str], Optional[str], Optional[str]]:
    if caller.is_admin:
        name = request.contact_name or caller.name
        email = request.contact_email or caller.email
    else:
        name = caller.name or request.contact_name
        email = caller.email or request.contact_email
    if caller.role == Role.GUEST and not (name and name.strip() and email and email.strip()):
        raise InvalidBookingRequestError("guests must provide a name and an email address")
    return (
        name.strip() if name else None,
        email.strip() if email else None,
        request.contact_phone.strip() if request.contact_phone else None,
    )


async def _get_for_update(uow: UnitOfWork, caller: CallerIdentity, booking_id: int) -> Booking:
    booking = await uow.bookings.get(booking_id, for_update=True)
    if booking is None:
        raise BookingNotFoundError(f"booking {booking_id} not found")
    if not caller.may_act_on(booking):
        raise PermissionDeniedError("you may only act on your own bookings")
    return booking


async def create_booking(
    runner: TransactionRunner,
    notifier: Notifier,
    caller: CallerIdentity,
    request: BookingRequest,
    *,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Reserve capacity for a new booking.

    The advisory read fails fast on obvious problems; the serializable transaction
    repeats every check on fresh rows before inserting the booking and decrementing
    `available` on each covered slot.
    """
    kind = request.kind
    if kind.is_hourly and caller.role == Role.GUEST:
        raise PermissionDeniedError("daycare bookings require a registered tutor")
    target = _resolve_target(kind, request.window, request.slot_id)
    units = _units_for(kind, request.dependent_ids)
    if kind == SlotKind.BIRTHDAY and request.number_of_kids is not None and request.number_of_kids < 1:
        raise InvalidBookingRequestError("a party needs at least one child")
    name, email, phone = _contact_for(caller, request)
    requester = _requester_of(caller, email)
    now_naive = _now_naive(now)

    async def precheck(uow: UnitOfWork) -> None:
        slots = await _load_slots(uow, target, for_update=False)
        starts_at = to_utc_naive(request.window.starts_at) if request.window and kind.is_hourly else slots[0].starts_at
        _check_not_started(caller, starts_at, now_naive)
        if not kind.is_hourly and await uow.bookings.has_active_on_slot(slots[0].id):
            raise DuplicateBookingError("this slot is already reserved")
        plan_acquire([SlotSnapshot.of(s) for s in slots], expected=target.expected, units=units)

    await run_guarded(runner, precheck, operation="create booking precheck", options=read_options(runner))

    async def work(uow: UnitOfWork) -> Booking:
        dependents = await _load_dependents(uow, caller, request.dependent_ids)
        slots = await _acquire(uow, target, units, requester, now_naive)
        if kind.is_hourly:
            assert request.window is not None
            starts_at, ends_at = to_utc_naive(request.window.starts_at), to_utc_naive(request.window.ends_at)
        else:
            starts_at, ends_at = slots[0].starts_at, slots[0].ends_at
        _check_not_started(caller, starts_at, now_naive)
        booking = Booking(
            kind=kind,
            user_id=caller.user_id,
            contact_name=name,
            contact_email=email,
            contact_phone=phone,
            starts_at=starts_at,
            ends_at=ends_at,
            units=units,
            status=BookingStatus.PENDING if kind == SlotKind.BIRTHDAY else BookingStatus.CONFIRMED,
            attendance=AttendanceStatus.PENDING,
            package=request.package,
            number_of_kids=request.number_of_kids,
            comments=request.comments.strip() if request.comments else None,
            created_at=now_naive,
            updated_at=now_naive,
            slots=slots,
            dependents=dependents,
        )
        return await uow.bookings.add(booking)

    booking = await run_guarded(runner, work, operation="create booking")
    logger.info("booking %s created on slots %s", booking.id, [s.id for s in booking.slots])
    template = NotificationTemplate.CONFIRMED if booking.status == BookingStatus.CONFIRMED else NotificationTemplate.CREATED
    await deliver(notifier, booking, template)
    return booking


async def modify_booking(
    runner: TransactionRunner,
    notifier: Notifier,
    caller: CallerIdentity,
    booking_id: int,
    change: BookingChange,
    *,
    now: Optional[datetime] = None,
) -> Booking:
    """Release the booking's current capacity and acquire the new window in one transaction."""
    now_naive = _now_naive(now)

    async def work(uow: UnitOfWork) -> Booking:
        booking = await _get_for_update(uow, caller, booking_id)
        if booking.status in _TERMINAL:
            raise TerminalStateViolationError(f"a {booking.status.value} booking cannot be modified")
        kind = booking.kind
        if kind.is_hourly:
            if change.slot_id is not None:
                raise InvalidBookingRequestError("a daycare booking is moved by its time window, not by slot id")
            window = change.window or _as_window(booking)
            target = _resolve_target(kind, window, None)
            same_place = (to_utc_naive(window.starts_at), to_utc_naive(window.ends_at)) == (
                booking.starts_at,
                booking.ends_at,
            )
        else:
            if change.window is not None:
                raise InvalidBookingRequestError(f"a {kind.value} booking is moved by slot id, not by time window")
            current_slot = booking.slots[0].id if booking.slots else None
            target = _resolve_target(kind, None, change.slot_id or current_slot)
            same_place = target.slot_id == current_slot
        dependent_ids = (
            change.dependent_ids if change.dependent_ids is not None else tuple(d.id for d in booking.dependents)
        )
        units = _units_for(kind, dependent_ids)
        dependents = await _load_dependents(uow, caller, dependent_ids)

        if same_place and units == booking.units:
            # Nothing held changes, so slot status and capacity are not consulted
            slots = list(booking.slots)
            starts_at, ends_at = booking.starts_at, booking.ends_at
        else:
            await _release(uow, booking, now_naive)
            slots = await _acquire(
                uow,
                target,
                units,
                _Requester(user_id=booking.user_id, contact_email=booking.contact_email),
                now_naive,
                exclude_booking_id=booking.id,
            )
            if kind.is_hourly:
                starts_at, ends_at = to_utc_naive(window.starts_at), to_utc_naive(window.ends_at)
            else:
                starts_at, ends_at = slots[0].starts_at, slots[0].ends_at
            if (starts_at, ends_at) != (booking.starts_at, booking.ends_at):
                _check_not_started(caller, starts_at, now_naive)

        await uow.bookings.replace_slots(booking, slots)
        await uow.bookings.replace_dependents(booking, dependents)
        booking.units = units
        booking.starts_at = starts_at
        booking.ends_at = ends_at
        if change.contact_name is not None:
            booking.contact_name = change.contact_name.strip()
        if change.contact_email is not None:
            booking.contact_email = change.contact_email.strip()
        if change.contact_phone is not None:
            booking.contact_phone = change.contact_phone.strip() or None
        if change.comments is not None:
            booking.comments = change.comments.strip() or None
        if change.package is not None:
            booking.package = change.package
        if change.number_of_kids is not None:
            booking.number_of_kids = change.number_of_kids
        booking.updated_at = now_naive
        return booking

    booking = await run_guarded(runner, work, operation="modify booking")
    await deliver(notifier, booking, NotificationTemplate.MODIFIED)
    return booking


async def cancel_booking(
    runner: TransactionRunner,
    notifier: Notifier,
    caller: CallerIdentity,
    booking_id: int,
    *,
    now: Optional[datetime] = None,
) -> tuple[Booking, BookingStatus]:
    """Cancel and release capacity. Returns the booking and its status before the call."""
    now_naive = _now_naive(now)

    async def work(uow: UnitOfWork) -> tuple[Booking, BookingStatus]:
        booking = await _get_for_update(uow, caller, booking_id)
        previous = booking.status
        # Idempotent: already cancelled returns as-is
        if previous == BookingStatus.CANCELLED:
            return booking, previous
        if previous == BookingStatus.CLOSED:
            raise TerminalStateViolationError("a closed booking cannot be cancelled")
        booking.status = BookingStatus.CANCELLED
        booking.updated_at = now_naive
        await _release(uow, booking, now_naive)
        return booking, previous

    booking, previous = await run_guarded(runner, work, operation="cancel booking")
    if previous != BookingStatus.CANCELLED:
        await deliver(notifier, booking, NotificationTemplate.CANCELLED, previous_status=previous)
    return booking, previous


async def delete_booking(
    runner: TransactionRunner,
    caller: CallerIdentity,
    booking_id: int,
    *,
    now: Optional[datetime] = None,
) -> DeletedBooking:
    """Release (unless already cancelled), unlink, then remove the booking row."""
    caller.require_admin("delete bookings")
    now_naive = _now_naive(now)

    async def work(uow: UnitOfWork) -> DeletedBooking:
        booking = await _get_for_update(uow, caller, booking_id)
        released = booking.status != BookingStatus.CANCELLED
        if released:
            await _release(uow, booking, now_naive)
        deleted = DeletedBooking(
            booking_id=booking.id,
            kind=booking.kind,
            slot_ids=tuple(s.id for s in booking.slots),
            units=booking.units,
            status=booking.status,
            released=released,
        )
        await uow.bookings.replace_slots(booking, [])
        await uow.bookings.replace_dependents(booking, [])
        await uow.bookings.delete(booking)
        return deleted

    return await run_guarded(runner, work, operation="delete booking")


async def confirm_booking(
    runner: TransactionRunner,
    notifier: Notifier,
    caller: CallerIdentity,
    booking_id: int,
    *,
    now: Optional[datetime] = None,
) -> tuple[Booking, BookingStatus]:
    caller.require_admin("confirm bookings")
    now_naive = _now_naive(now)

    async def work(uow: UnitOfWork) -> tuple[Booking, BookingStatus]:
        booking = await _get_for_update(uow, caller, booking_id)
        previous = booking.status
        if previous in _TERMINAL:
            raise TerminalStateViolationError(f"a {previous.value} booking cannot be confirmed")
        if previous == BookingStatus.PENDING:
            booking.status = BookingStatus.CONFIRMED
            booking.updated_at = now_naive
        return booking, previous

    booking, previous = await run_guarded(runner, work, operation="confirm booking")
    if previous == BookingStatus.PENDING:
        await deliver(notifier, booking, NotificationTemplate.CONFIRMED, previous_status=previous)
    return booking, previous


async def mark_attendance(
    runner: TransactionRunner,
    caller: CallerIdentity,
    booking_id: int,
    attendance: AttendanceStatus,
    *,
    now: Optional[datetime] = None,
) -> Booking:
    caller.require_admin("record attendance")
    now_naive = _now_naive(now)

    async def work(uow: UnitOfWork) -> Booking:
        booking = await _get_for_update(uow, caller, booking_id)
        if booking.kind != SlotKind.DAYCARE:
            raise InvalidBookingRequestError("attendance is only tracked for daycare bookings")
        if booking.status == BookingStatus.CANCELLED:
            raise TerminalStateViolationError("attendance cannot be recorded for a cancelled booking")
        booking.attendance = attendance
        booking.updated_at = now_naive
        return booking

    return await run_guarded(runner, work, operation="mark attendance")


async def list_bookings(
    runner: TransactionRunner,
    caller: CallerIdentity,
    *,
    kind: Optional[SlotKind] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[Booking]:
    if caller.role == Role.GUEST:
        raise PermissionDeniedError("sign in to list bookings")
    start_naive = to_utc_naive(start) if start is not None else None
    end_naive = to_utc_naive(end) if end is not None else None

    async def work(uow: UnitOfWork) -> List[Booking]:
        if caller.is_admin:
            return await uow.bookings.list_bookings(kind=kind, start=start_naive, end=end_naive)
        return await uow.bookings.list_bookings(
            kind=kind,
            user_id=caller.user_id,
            contact_email=caller.email,
            start=start_naive,
            end=end_naive,
        )

    return await run_guarded(runner, work, operation="list bookings", options=read_options(runner))


async def get_booking(runner: TransactionRunner, caller: CallerIdentity, booking_id: int) -> Booking:
    async def work(uow: UnitOfWork) -> Booking:
        booking = await uow.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        if not caller.may_act_on(booking):
            raise PermissionDeniedError("you may only view your own bookings")
        return booking

    return await run_guarded(runner, work, operation="get booking", options=read_options(runner))
