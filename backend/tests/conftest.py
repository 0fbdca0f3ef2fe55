import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence

import pytest
from childcare_booking.config import get_settings
from childcare_booking.domain.errors import TransactionTimeoutError
from childcare_booking.domain.notifications import NotificationRequest
from childcare_booking.domain.transactions import IsolationLevel, TransactionOptions
from childcare_booking.infrastructure.retry import RetryingTransactionRunner
from childcare_booking.models import (
    AttendanceStatus,
    Booking,
    BookingStatus,
    Dependent,
    Slot,
    SlotKind,
    SlotStatus,
)
from childcare_booking.utils.time import local_to_utc_naive

# Reference "now" for tests: well before every seeded slot.
NOW = datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc)

_SLOT_FIELDS = ("kind", "day", "hour", "starts_at", "ends_at", "capacity", "available", "status", "updated_at")
_BOOKING_FIELDS = (
    "kind",
    "user_id",
    "contact_name",
    "contact_email",
    "contact_phone",
    "starts_at",
    "ends_at",
    "units",
    "status",
    "attendance",
    "package",
    "number_of_kids",
    "comments",
    "updated_at",
)


class FakeConflict(Exception):
    """Stands in for a serialization failure reported by the store."""


class FakeClassifier:
    def is_conflict(self, exc: BaseException) -> bool:
        return isinstance(exc, FakeConflict)

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, (ConnectionError, TransactionTimeoutError))


class FakeSlotRepository:
    def __init__(self, store: "InMemoryStore") -> None:
        self.store = store

    async def get(self, slot_id: int) -> Slot | None:
        return self.store.slots.get(slot_id)

    async def get_for_update(self, slot_id: int) -> Slot | None:
        return self.store.slots.get(slot_id)

    async def list_hourly(self, day: date, hours: Sequence[int], *, for_update: bool = False) -> List[Slot]:
        wanted = set(hours)
        rows = [
            s
            for s in self.store.slots.values()
            if s.kind == SlotKind.DAYCARE and s.day == day and s.hour in wanted
        ]
        return sorted(rows, key=lambda s: s.hour)

    async def list_on_day(self, kind: SlotKind, day: date, *, exclude_id: int | None = None) -> List[Slot]:
        rows = [s for s in self.store.slots.values() if s.kind == kind and s.day == day and s.id != exclude_id]
        return sorted(rows, key=lambda s: s.starts_at)

    async def list_in_range(
        self,
        kind: SlotKind,
        start_day: date,
        end_day: date,
        *,
        start_hour: int | None = None,
        end_hour: int | None = None,
        for_update: bool = False,
    ) -> List[Slot]:
        rows = []
        for s in self.store.slots.values():
            if s.kind != kind or not start_day <= s.day <= end_day:
                continue
            if start_hour is not None and (s.hour is None or s.hour < start_hour):
                continue
            if end_hour is not None and (s.hour is None or s.hour >= end_hour):
                continue
            rows.append(s)
        return sorted(rows, key=lambda s: s.starts_at)

    async def add(self, slot: Slot) -> Slot:
        slot.id = next(self.store.slot_ids)
        self.store.slots[slot.id] = slot
        return slot

    async def delete(self, slot: Slot) -> None:
        del self.store.slots[slot.id]
        # booking_slots rows cascade with the slot
        for booking in self.store.bookings.values():
            if any(s.id == slot.id for s in booking.slots):
                booking.slots = [s for s in booking.slots if s.id != slot.id]


class FakeBookingRepository:
    def __init__(self, store: "InMemoryStore") -> None:
        self.store = store

    def _active(self) -> Iterable[Booking]:
        return (b for b in self.store.bookings.values() if b.status != BookingStatus.CANCELLED)

    async def get(self, booking_id: int, *, for_update: bool = False) -> Booking | None:
        return self.store.bookings.get(booking_id)

    async def find_active_for_requester(
        self,
        *,
        user_id: int | None,
        contact_email: str | None,
        slot_ids: Sequence[int],
        exclude_booking_id: int | None = None,
    ) -> Booking | None:
        wanted = set(slot_ids)
        for booking in self._active():
            if booking.id == exclude_booking_id:
                continue
            if user_id is not None:
                owned = booking.user_id == user_id
            elif contact_email:
                owned = booking.user_id is None and (booking.contact_email or "").lower() == contact_email.lower()
            else:
                return None
            if owned and any(s.id in wanted for s in booking.slots):
                return booking
        return None

    async def has_active_on_slot(self, slot_id: int, *, exclude_booking_id: int | None = None) -> bool:
        return any(
            b.id != exclude_booking_id and any(s.id == slot_id for s in b.slots) for b in self._active()
        )

    async def sum_active_units(self, slot_id: int) -> int:
        return sum(b.units for b in self._active() if any(s.id == slot_id for s in b.slots))

    async def count_active_on_slots(self, slot_ids: Iterable[int]) -> int:
        wanted = set(slot_ids)
        return sum(1 for b in self._active() if any(s.id in wanted for s in b.slots))

    async def add(self, booking: Booking) -> Booking:
        booking.id = next(self.store.booking_ids)
        self.store.bookings[booking.id] = booking
        return booking

    async def replace_slots(self, booking: Booking, slots: Sequence[Slot]) -> None:
        booking.slots = list(slots)

    async def replace_dependents(self, booking: Booking, dependents: Sequence[Dependent]) -> None:
        booking.dependents = list(dependents)

    async def delete(self, booking: Booking) -> None:
        del self.store.bookings[booking.id]

    async def list_elapsed(self, now: datetime) -> List[Booking]:
        rows = [
            b
            for b in self.store.bookings.values()
            if b.ends_at < now and b.status not in (BookingStatus.CANCELLED, BookingStatus.CLOSED)
        ]
        return sorted(rows, key=lambda b: b.ends_at)

    async def list_bookings(
        self,
        *,
        kind: Optional[SlotKind] = None,
        user_id: Optional[int] = None,
        contact_email: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Booking]:
        rows = []
        for b in self.store.bookings.values():
            if kind is not None and b.kind != kind:
                continue
            if user_id is not None or contact_email:
                by_user = user_id is not None and b.user_id == user_id
                by_email = (
                    bool(contact_email)
                    and b.user_id is None
                    and (b.contact_email or "").lower() == (contact_email or "").lower()
                )
                if not (by_user or by_email):
                    continue
            if start is not None and not b.ends_at > start:
                continue
            if end is not None and not b.starts_at < end:
                continue
            rows.append(b)
        return sorted(rows, key=lambda b: b.starts_at)


class FakeDependentRepository:
    def __init__(self, store: "InMemoryStore") -> None:
        self.store = store

    async def get_many(self, dependent_ids: Sequence[int]) -> List[Dependent]:
        return [self.store.dependents[i] for i in sorted(set(dependent_ids)) if i in self.store.dependents]


class FakeUnitOfWork:
    def __init__(self, store: "InMemoryStore") -> None:
        self.slots = FakeSlotRepository(store)
        self.bookings = FakeBookingRepository(store)
        self.dependents = FakeDependentRepository(store)


class InMemoryStore:
    """
    Serialises transactions with a lock and rolls back every change on failure.

    `conflicts_to_raise` makes that many SERIALIZABLE commits fail with FakeConflict.
    """

    def __init__(self) -> None:
        self.slots: dict[int, Slot] = {}
        self.bookings: dict[int, Booking] = {}
        self.dependents: dict[int, Dependent] = {}
        self.slot_ids = itertools.count(1)
        self.booking_ids = itertools.count(1)
        self.dependent_ids = itertools.count(1)
        self.conflicts_to_raise = 0
        self.isolations: list[IsolationLevel] = []
        self._lock = asyncio.Lock()

    def _snapshot(self) -> tuple[Any, ...]:
        return (
            dict(self.slots),
            dict(self.bookings),
            {sid: {f: getattr(s, f) for f in _SLOT_FIELDS} for sid, s in self.slots.items()},
            {
                bid: ({f: getattr(b, f) for f in _BOOKING_FIELDS}, list(b.slots), list(b.dependents))
                for bid, b in self.bookings.items()
            },
        )

    def _restore(self, snapshot: tuple[Any, ...]) -> None:
        slots, bookings, slot_fields, booking_state = snapshot
        self.slots = slots
        self.bookings = bookings
        for sid, fields in slot_fields.items():
            for name, value in fields.items():
                setattr(self.slots[sid], name, value)
        for bid, (fields, linked_slots, linked_dependents) in booking_state.items():
            booking = self.bookings[bid]
            for name, value in fields.items():
                setattr(booking, name, value)
            booking.slots = linked_slots
            booking.dependents = linked_dependents

    @asynccontextmanager
    async def transaction(self, options: TransactionOptions) -> AsyncIterator[FakeUnitOfWork]:
        async with self._lock:
            self.isolations.append(options.isolation)
            snapshot = self._snapshot()
            try:
                yield FakeUnitOfWork(self)
                if options.isolation == IsolationLevel.SERIALIZABLE and self.conflicts_to_raise > 0:
                    self.conflicts_to_raise -= 1
                    raise FakeConflict("could not serialize access due to concurrent update")
            except BaseException:
                self._restore(snapshot)
                raise

    # Seeding helpers; they bypass transactions.

    def add_daycare_slot(
        self,
        day: date,
        hour: int,
        *,
        capacity: int = 10,
        available: int | None = None,
        status: SlotStatus = SlotStatus.OPEN,
    ) -> Slot:
        return self._add_slot(
            SlotKind.DAYCARE, day, hour, hour, hour + 1, capacity, capacity if available is None else available, status
        )

    def add_single_slot(
        self,
        kind: SlotKind,
        day: date,
        start_hour: int,
        end_hour: int,
        *,
        status: SlotStatus = SlotStatus.OPEN,
        available: int = 1,
    ) -> Slot:
        return self._add_slot(kind, day, None, start_hour, end_hour, 1, available, status)

    def _add_slot(
        self,
        kind: SlotKind,
        day: date,
        hour: int | None,
        start_hour: int,
        end_hour: int,
        capacity: int,
        available: int,
        status: SlotStatus,
    ) -> Slot:
        stamp = NOW.replace(tzinfo=None)
        slot = Slot(
            id=next(self.slot_ids),
            kind=kind,
            day=day,
            hour=hour,
            starts_at=local_to_utc_naive(day, start_hour),
            ends_at=local_to_utc_naive(day, end_hour),
            capacity=capacity,
            available=available,
            status=status,
            created_at=stamp,
            updated_at=stamp,
        )
        self.slots[slot.id] = slot
        return slot

    def add_dependent(self, tutor_id: int, name: str) -> Dependent:
        stamp = NOW.replace(tzinfo=None)
        dependent = Dependent(id=next(self.dependent_ids), tutor_id=tutor_id, name=name, created_at=stamp, updated_at=stamp)
        self.dependents[dependent.id] = dependent
        return dependent

    def add_booking(
        self,
        slots: list[Slot],
        *,
        user_id: int | None,
        units: int = 1,
        status: BookingStatus = BookingStatus.CONFIRMED,
        contact_email: str | None = "tutor@example.com",
        dependents: list[Dependent] | None = None,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
        consume: bool = True,
    ) -> Booking:
        """Insert a booking; `consume` also takes its units from the slots."""
        stamp = NOW.replace(tzinfo=None)
        booking = Booking(
            id=next(self.booking_ids),
            kind=slots[0].kind,
            user_id=user_id,
            contact_name="Ana",
            contact_email=contact_email,
            contact_phone=None,
            starts_at=starts_at or min(s.starts_at for s in slots),
            ends_at=ends_at or max(s.ends_at for s in slots),
            units=units,
            status=status,
            attendance=AttendanceStatus.PENDING,
            package=None,
            number_of_kids=None,
            comments=None,
            created_at=stamp,
            updated_at=stamp,
            slots=list(slots),
            dependents=list(dependents or []),
        )
        if consume:
            for slot in slots:
                slot.available -= units
        self.bookings[booking.id] = booking
        return booking

    def held_units(self, slot_id: int) -> int:
        return sum(
            b.units
            for b in self.bookings.values()
            if b.status != BookingStatus.CANCELLED and any(s.id == slot_id for s in b.slots)
        )


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[NotificationRequest] = []

    async def send(self, request: NotificationRequest) -> None:
        if self.fail:
            raise ConnectionError("smtp unreachable")
        self.sent.append(request)


@pytest.fixture(autouse=True)
def _default_settings(monkeypatch: pytest.MonkeyPatch) -> Iterable[None]:
    monkeypatch.delenv("APP_TIMEZONE", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def runner(store: InMemoryStore, sleeps: list[float]) -> RetryingTransactionRunner:
    async def no_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryingTransactionRunner(store.transaction, FakeClassifier(), sleep=no_sleep)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
