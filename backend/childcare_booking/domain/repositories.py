from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Protocol, Sequence

from ..models import Booking, Dependent, Slot, SlotKind


class SlotRepository(Protocol):
    async def get(self, slot_id: int) -> Slot | None: ...

    async def get_for_update(self, slot_id: int) -> Slot | None: ...

    async def list_hourly(
        self,
        day: date,
        hours: Sequence[int],
        *,
        for_update: bool = False,
    ) -> list[Slot]: ...

    async def list_on_day(
        self,
        kind: SlotKind,
        day: date,
        *,
        exclude_id: int | None = None,
    ) -> list[Slot]: ...

    async def list_in_range(
        self,
        kind: SlotKind,
        start_day: date,
        end_day: date,
        *,
        start_hour: int | None = None,
        end_hour: int | None = None,
        for_update: bool = False,
    ) -> list[Slot]: ...

    async def add(self, slot: Slot) -> Slot: ...

    async def delete(self, slot: Slot) -> None: ...


class BookingRepository(Protocol):
    async def get(self, booking_id: int, *, for_update: bool = False) -> Booking | None: ...

    async def find_active_for_requester(
        self,
        *,
        user_id: int | None,
        contact_email: str | None,
        slot_ids: Sequence[int],
        exclude_booking_id: int | None = None,
    ) -> Booking | None: ...

    async def has_active_on_slot(self, slot_id: int, *, exclude_booking_id: int | None = None) -> bool: ...

    async def sum_active_units(self, slot_id: int) -> int: ...

    async def count_active_on_slots(self, slot_ids: Iterable[int]) -> int: ...

    async def add(self, booking: Booking) -> Booking: ...

    async def replace_slots(self, booking: Booking, slots: Sequence[Slot]) -> None: ...

    async def replace_dependents(self, booking: Booking, dependents: Sequence[Dependent]) -> None: ...

    async def delete(self, booking: Booking) -> None: ...

    async def list_elapsed(self, now: datetime) -> list[Booking]: ...

    async def list_bookings(
        self,
        *,
        kind: SlotKind | None = None,
        user_id: int | None = None,
        contact_email: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Booking]: ...


class DependentRepository(Protocol):
    async def get_many(self, dependent_ids: Sequence[int]) -> list[Dependent]: ...
