from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..domain.repositories import BookingRepository, DependentRepository, SlotRepository
from ..models import Booking, BookingStatus, Dependent, Slot, SlotKind, booking_slots

_INACTIVE = (BookingStatus.CANCELLED, BookingStatus.CLOSED)


class SqlAlchemySlotRepository(SlotRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, slot_id: int) -> Slot | None:
        return await self.session.get(Slot, slot_id)

    async def get_for_update(self, slot_id: int) -> Slot | None:
        stmt = select(Slot).where(Slot.id == slot_id).with_for_update().execution_options(populate_existing=True)
        result = await self.session.scalar(stmt)
        return result if isinstance(result, Slot) else None

    async def list_hourly(
        self,
        day: date,
        hours: Sequence[int],
        *,
        for_update: bool = False,
    ) -> List[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.kind == SlotKind.DAYCARE, Slot.day == day, Slot.hour.in_(list(hours)))
            .order_by(Slot.hour)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list((await self.session.scalars(stmt)).all())

    async def list_on_day(
        self,
        kind: SlotKind,
        day: date,
        *,
        exclude_id: int | None = None,
    ) -> List[Slot]:
        stmt = select(Slot).where(Slot.kind == kind, Slot.day == day)
        if exclude_id is not None:
            stmt = stmt.where(Slot.id != exclude_id)
        return list((await self.session.scalars(stmt.order_by(Slot.starts_at))).all())

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
        stmt = select(Slot).where(Slot.kind == kind, Slot.day >= start_day, Slot.day <= end_day)
        if start_hour is not None:
            stmt = stmt.where(Slot.hour >= start_hour)
        if end_hour is not None:
            stmt = stmt.where(Slot.hour < end_hour)
        stmt = stmt.order_by(Slot.starts_at)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return list((await self.session.scalars(stmt)).all())

    async def add(self, slot: Slot) -> Slot:
        self.session.add(slot)
        await self.session.flush()
        return slot

    async def delete(self, slot: Slot) -> None:
        await self.session.delete(slot)
        await self.session.flush()


class SqlAlchemyBookingRepository(BookingRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _select(self) -> Select[tuple[Booking]]:
        return select(Booking).options(selectinload(Booking.slots), selectinload(Booking.dependents))

    async def get(self, booking_id: int, *, for_update: bool = False) -> Booking | None:
        stmt = self._select().where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return await self.session.scalar(stmt)

    async def find_active_for_requester(
        self,
        *,
        user_id: int | None,
        contact_email: str | None,
        slot_ids: Sequence[int],
        exclude_booking_id: int | None = None,
    ) -> Booking | None:
        if user_id is not None:
            owner = Booking.user_id == user_id
        elif contact_email:
            owner = (Booking.user_id.is_(None)) & (func.lower(Booking.contact_email) == contact_email.lower())
        else:
            return None
        stmt = (
            self._select()
            .join(booking_slots, booking_slots.c.booking_id == Booking.id)
            .where(
                owner,
                booking_slots.c.slot_id.in_(list(slot_ids)),
                Booking.status != BookingStatus.CANCELLED,
            )
            .limit(1)
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return await self.session.scalar(stmt)

    async def has_active_on_slot(self, slot_id: int, *, exclude_booking_id: int | None = None) -> bool:
        stmt = (
            select(Booking.id)
            .join(booking_slots, booking_slots.c.booking_id == Booking.id)
            .where(booking_slots.c.slot_id == slot_id, Booking.status != BookingStatus.CANCELLED)
            .limit(1)
        )
        if exclude_booking_id is not None:
            stmt = stmt.where(Booking.id != exclude_booking_id)
        return await self.session.scalar(stmt) is not None

    async def sum_active_units(self, slot_id: int) -> int:
        stmt = (
            select(func.coalesce(func.sum(Booking.units), 0))
            .join(booking_slots, booking_slots.c.booking_id == Booking.id)
            .where(booking_slots.c.slot_id == slot_id, Booking.status != BookingStatus.CANCELLED)
        )
        return int(await self.session.scalar(stmt) or 0)

    async def count_active_on_slots(self, slot_ids: Iterable[int]) -> int:
        stmt = (
            select(func.count(func.distinct(Booking.id)))
            .join(booking_slots, booking_slots.c.booking_id == Booking.id)
            .where(booking_slots.c.slot_id.in_(list(slot_ids)), Booking.status != BookingStatus.CANCELLED)
        )
        return int(await self.session.scalar(stmt) or 0)

    async def add(self, booking: Booking) -> Booking:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def replace_slots(self, booking: Booking, slots: Sequence[Slot]) -> None:
        booking.slots = list(slots)
        await self.session.flush()

    async def replace_dependents(self, booking: Booking, dependents: Sequence[Dependent]) -> None:
        booking.dependents = list(dependents)
        await self.session.flush()

    async def delete(self, booking: Booking) -> None:
        await self.session.delete(booking)
        await self.session.flush()

    async def list_elapsed(self, now: datetime) -> List[Booking]:
        stmt = (
            self._select()
            .where(Booking.ends_at < now, Booking.status.not_in(_INACTIVE))
            .order_by(Booking.ends_at)
        )
        return list((await self.session.scalars(stmt)).all())

    async def list_bookings(
        self,
        *,
        kind: Optional[SlotKind] = None,
        user_id: Optional[int] = None,
        contact_email: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Booking]:
        stmt = self._select()
        if kind is not None:
            stmt = stmt.where(Booking.kind == kind)
        owners = []
        if user_id is not None:
            owners.append(Booking.user_id == user_id)
        if contact_email:
            owners.append(Booking.user_id.is_(None) & (func.lower(Booking.contact_email) == contact_email.lower()))
        if owners:
            stmt = stmt.where(or_(*owners))
        if start is not None:
            stmt = stmt.where(Booking.ends_at > start)
        if end is not None:
            stmt = stmt.where(Booking.starts_at < end)
        return list((await self.session.scalars(stmt.order_by(Booking.starts_at))).all())


class SqlAlchemyDependentRepository(DependentRepository):
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_many(self, dependent_ids: Sequence[int]) -> List[Dependent]:
        if not dependent_ids:
            return []
        stmt = select(Dependent).where(Dependent.id.in_(list(dependent_ids))).order_by(Dependent.id)
        return list((await self.session.scalars(stmt)).all())
