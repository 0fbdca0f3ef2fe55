from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer, model_validator

from .models import AttendanceStatus, BirthdayPackage, Booking, BookingStatus, Slot, SlotKind, SlotStatus
from .utils.time import local_zone, utc_naive_to_local


class SlotRead(BaseModel):
    slot_id: int
    kind: SlotKind
    day: date
    hour: Optional[int]
    starts_at: datetime
    ends_at: datetime
    capacity: int
    available: int
    status: SlotStatus

    @field_serializer("starts_at", "ends_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.astimezone(local_zone()).isoformat()

    @classmethod
    def from_db(cls, *, slot: Slot) -> "SlotRead":
        return cls(
            slot_id=slot.id,
            kind=slot.kind,
            day=slot.day,
            hour=slot.hour,
            starts_at=utc_naive_to_local(slot.starts_at),
            ends_at=utc_naive_to_local(slot.ends_at),
            capacity=slot.capacity,
            available=slot.available,
            status=slot.status,
        )


class SlotCreate(BaseModel):
    kind: SlotKind
    starts_at: datetime
    ends_at: datetime
    capacity: Optional[int] = Field(default=None, ge=1)
    status: SlotStatus = SlotStatus.OPEN


class DaycareSlotBatchCreate(BaseModel):
    start_date: date
    open_hour: int = Field(ge=0, le=22)
    close_hour: int = Field(ge=1, le=23)
    capacity: int = Field(ge=1)
    days: Optional[int] = Field(default=None, ge=1, le=366)


class SlotBatchRead(BaseModel):
    created: List[SlotRead]
    skipped: List[str]


class SlotUpdate(BaseModel):
    capacity: Optional[int] = Field(default=None, ge=1)
    available: Optional[int] = Field(default=None, ge=0)
    status: Optional[SlotStatus] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


class DaycareSlotRangeUpdate(BaseModel):
    day: date
    start_hour: Optional[int] = Field(default=None, ge=0, le=23)
    end_hour: Optional[int] = Field(default=None, ge=1, le=24)
    capacity: Optional[int] = Field(default=None, ge=1)
    status: Optional[SlotStatus] = None


class SlotDeleteResult(BaseModel):
    deleted_slot_ids: List[int]


class DaycareBookingCreate(BaseModel):
    starts_at: datetime
    ends_at: datetime
    dependent_ids: List[int] = Field(min_length=1)
    comments: Optional[str] = Field(default=None, max_length=2000)


class BirthdayBookingCreate(BaseModel):
    slot_id: int = Field(ge=1)
    contact_name: Optional[str] = Field(default=None, max_length=255)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=50)
    number_of_kids: int = Field(ge=1)
    package: BirthdayPackage
    comments: Optional[str] = Field(default=None, max_length=2000)


class MeetingBookingCreate(BaseModel):
    slot_id: int = Field(ge=1)
    contact_name: Optional[str] = Field(default=None, max_length=255)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=50)
    comments: Optional[str] = Field(default=None, max_length=2000)


class BookingUpdate(BaseModel):
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    slot_id: Optional[int] = Field(default=None, ge=1)
    dependent_ids: Optional[List[int]] = Field(default=None, min_length=1)
    contact_name: Optional[str] = Field(default=None, max_length=255)
    contact_email: Optional[str] = Field(default=None, max_length=255)
    contact_phone: Optional[str] = Field(default=None, max_length=50)
    comments: Optional[str] = Field(default=None, max_length=2000)
    package: Optional[BirthdayPackage] = None
    number_of_kids: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _window_pair(self) -> "BookingUpdate":
        if (self.starts_at is None) != (self.ends_at is None):
            raise ValueError("starts_at and ends_at must be given together")
        return self


class AttendanceUpdate(BaseModel):
    attendance: AttendanceStatus


class BookingRead(BaseModel):
    booking_id: int
    kind: SlotKind
    status: BookingStatus
    attendance: AttendanceStatus
    user_id: Optional[int]
    contact_name: Optional[str]
    contact_email: Optional[str]
    contact_phone: Optional[str]
    starts_at: datetime
    ends_at: datetime
    units: int
    slot_ids: List[int]
    dependent_ids: List[int]
    package: Optional[BirthdayPackage] = None
    number_of_kids: Optional[int] = None
    comments: Optional[str] = None

    @field_serializer("starts_at", "ends_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.astimezone(local_zone()).isoformat()

    @classmethod
    def from_db(cls, *, booking: Booking) -> "BookingRead":
        return cls(
            booking_id=booking.id,
            kind=booking.kind,
            status=booking.status,
            attendance=booking.attendance,
            user_id=booking.user_id,
            contact_name=booking.contact_name,
            contact_email=booking.contact_email,
            contact_phone=booking.contact_phone,
            starts_at=utc_naive_to_local(booking.starts_at),
            ends_at=utc_naive_to_local(booking.ends_at),
            units=booking.units,
            slot_ids=[slot.id for slot in booking.slots],
            dependent_ids=[dep.id for dep in booking.dependents],
            package=booking.package,
            number_of_kids=booking.number_of_kids,
            comments=booking.comments,
        )


class BookingDeleteResult(BaseModel):
    booking_id: int
    released: bool


class CloseSummaryRead(BaseModel):
    closed: int
    notified: int
    failed: int
