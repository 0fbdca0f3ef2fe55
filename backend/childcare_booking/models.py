from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum
from typing import Optional

from sqlalchemy import CheckConstraint, Column, Enum, ForeignKey, Index, Table, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql.sqltypes import BigInteger, Date, DateTime, Integer, String, Text


class Base(DeclarativeBase):
    pass


class SlotKind(StrEnum):
    DAYCARE = "daycare"
    BIRTHDAY = "birthday"
    MEETING = "meeting"

    @property
    def is_hourly(self) -> bool:
        return self is SlotKind.DAYCARE


class SlotStatus(StrEnum):
    OPEN = "open"
    CLOSED = "closed"


class BookingStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class AttendanceStatus(StrEnum):
    PENDING = "pending"
    ATTENDED = "attended"
    NOT_ATTENDED = "not_attended"


class BirthdayPackage(StrEnum):
    ALEGRIA = "alegria"
    FIESTA = "fiesta"
    ESPECIAL = "especial"


def _enum(enum_cls: type[StrEnum]) -> Enum:
    return Enum(
        enum_cls,
        values_callable=lambda cls: [e.value for e in cls],
        native_enum=False,
    )


booking_slots = Table(
    "booking_slots",
    Base.metadata,
    Column("booking_id", ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
    Column("slot_id", ForeignKey("slots.id", ondelete="CASCADE"), primary_key=True),
    Index("idx_booking_slots_slot", "slot_id"),
)

booking_dependents = Table(
    "booking_dependents",
    Base.metadata,
    Column("booking_id", ForeignKey("bookings.id", ondelete="CASCADE"), primary_key=True),
    Column("dependent_id", ForeignKey("dependents.id"), primary_key=True),
)


class Dependent(Base):
    """A child registered by a tutor; daycare bookings consume one unit per dependent."""

    __tablename__ = "dependents"
    __table_args__ = (Index("idx_dependents_tutor", "tutor_id"),)

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    tutor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="chk_slots_time"),
        CheckConstraint("capacity >= 1", name="chk_slots_capacity"),
        CheckConstraint("available >= 0", name="chk_slots_available_min"),
        CheckConstraint("available <= capacity", name="chk_slots_available_max"),
        UniqueConstraint("kind", "day", "starts_at", "ends_at", name="uq_slots"),
        Index("idx_slots_kind_day", "kind", "day"),
        Index("idx_slots_status", "status"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    kind: Mapped[SlotKind] = mapped_column(_enum(SlotKind), nullable=False)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    hour: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    available: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[SlotStatus] = mapped_column(_enum(SlotStatus), nullable=False, default=SlotStatus.OPEN)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("starts_at < ends_at", name="chk_bookings_time"),
        CheckConstraint("units >= 1", name="chk_bookings_units"),
        Index("idx_bookings_user", "user_id"),
        Index("idx_bookings_email", "contact_email"),
        Index("idx_bookings_status_end", "status", "ends_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    kind: Mapped[SlotKind] = mapped_column(_enum(SlotKind), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    units: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    attendance: Mapped[AttendanceStatus] = mapped_column(
        _enum(AttendanceStatus), nullable=False, default=AttendanceStatus.PENDING
    )
    package: Mapped[Optional[BirthdayPackage]] = mapped_column(_enum(BirthdayPackage), nullable=True)
    number_of_kids: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    comments: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)

    slots: Mapped[list[Slot]] = relationship(secondary=booking_slots, order_by=Slot.starts_at)
    dependents: Mapped[list[Dependent]] = relationship(secondary=booking_dependents)
