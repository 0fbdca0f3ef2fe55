from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from ..deps import get_caller, get_notifier, get_runner, require_admin, require_user
from ..domain.errors import BookingError
from ..domain.identity import CallerIdentity, Role
from ..domain.notifications import Notifier
from ..domain.transactions import TransactionRunner
from ..models import SlotKind
from ..schemas import (
    AttendanceUpdate,
    BirthdayBookingCreate,
    BookingDeleteResult,
    BookingRead,
    BookingUpdate,
    DaycareBookingCreate,
    MeetingBookingCreate,
)
from ..usecases import bookings as booking_usecase
from ..utils.audit_log import AuditInitiator, emit_audit_log
from .errors import http_error

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _initiator(caller: CallerIdentity) -> AuditInitiator:
    if caller.is_admin:
        return "admin"
    if caller.role == Role.GUEST:
        return "guest"
    return "user"


def _window(starts_at: Optional[datetime], ends_at: Optional[datetime]) -> Optional[booking_usecase.BookingWindow]:
    if starts_at is None or ends_at is None:
        return None
    if starts_at.tzinfo is None or ends_at.tzinfo is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="starts_at/ends_at must have timezone")
    try:
        return booking_usecase.BookingWindow(starts_at=starts_at, ends_at=ends_at)
    except BookingError as exc:
        raise http_error(exc) from exc


async def _create(
    runner: TransactionRunner,
    notifier: Notifier,
    caller: CallerIdentity,
    request: booking_usecase.BookingRequest,
) -> BookingRead:
    try:
        booking = await booking_usecase.create_booking(runner, notifier, caller, request)
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(
        action="booking.created",
        initiator=_initiator(caller),
        booking_id=booking.id,
        kind=booking.kind,
        slot_ids=[slot.id for slot in booking.slots],
        user_id=caller.user_id,
        units=booking.units,
        status_to=booking.status,
    )
    return BookingRead.from_db(booking=booking)


@router.post("/daycare", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_daycare_booking(
    payload: DaycareBookingCreate,
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    caller: CallerIdentity = Depends(require_user),
) -> BookingRead:
    request = booking_usecase.BookingRequest(
        kind=SlotKind.DAYCARE,
        window=_window(payload.starts_at, payload.ends_at),
        dependent_ids=tuple(payload.dependent_ids),
        comments=payload.comments,
    )
    return await _create(runner, notifier, caller, request)


@router.post("/birthday", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_birthday_booking(
    payload: BirthdayBookingCreate,
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    caller: CallerIdentity = Depends(get_caller),
) -> BookingRead:
    request = booking_usecase.BookingRequest(
        kind=SlotKind.BIRTHDAY,
        slot_id=payload.slot_id,
        contact_name=payload.contact_name,
        contact_email=payload.contact_email,
        contact_phone=payload.contact_phone,
        comments=payload.comments,
        package=payload.package,
        number_of_kids=payload.number_of_kids,
    )
    return await _create(runner, notifier, caller, request)


@router.post("/meeting", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
async def create_meeting_booking(
    payload: MeetingBookingCreate,
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    caller: CallerIdentity = Depends(get_caller),
) -> BookingRead:
    request = booking_usecase.BookingRequest(
        kind=SlotKind.MEETING,
        slot_id=payload.slot_id,
        contact_name=payload.contact_name,
        contact_email=payload.contact_email,
        contact_phone=payload.contact_phone,
        comments=payload.comments,
    )
    return await _create(runner, notifier, caller, request)


@router.get("", response_model=List[BookingRead])
async def list_bookings(
    kind: Optional[SlotKind] = Query(default=None),
    start: Optional[datetime] = Query(default=None, description="ISO 8601 with timezone"),
    end: Optional[datetime] = Query(default=None, description="ISO 8601 with timezone"),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_user),
) -> list[BookingRead]:
    if (start is not None and start.tzinfo is None) or (end is not None and end.tzinfo is None):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start/end must have timezone")
    try:
        rows = await booking_usecase.list_bookings(runner, caller, kind=kind, start=start, end=end)
    except BookingError as exc:
        raise http_error(exc) from exc
    return [BookingRead.from_db(booking=booking) for booking in rows]


@router.get("/{booking_id}", response_model=BookingRead)
async def get_booking(
    booking_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_user),
) -> BookingRead:
    try:
        booking = await booking_usecase.get_booking(runner, caller, booking_id)
    except BookingError as exc:
        raise http_error(exc) from exc
    return BookingRead.from_db(booking=booking)


@router.put("/{booking_id}", response_model=BookingRead)
async def modify_booking(
    payload: BookingUpdate,
    booking_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    caller: CallerIdentity = Depends(require_user),
) -> BookingRead:
    change = booking_usecase.BookingChange(
        window=_window(payload.starts_at, payload.ends_at),
        slot_id=payload.slot_id,
        dependent_ids=tuple(payload.dependent_ids) if payload.dependent_ids is not None else None,
        contact_name=payload.contact_name,
        contact_email=payload.contact_email,
        contact_phone=payload.contact_phone,
        comments=payload.comments,
        package=payload.package,
        number_of_kids=payload.number_of_kids,
    )
    try:
        booking = await booking_usecase.modify_booking(runner, notifier, caller, booking_id, change)
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(
        action="booking.modified",
        initiator=_initiator(caller),
        booking_id=booking.id,
        kind=booking.kind,
        slot_ids=[slot.id for slot in booking.slots],
        user_id=caller.user_id,
        units=booking.units,
        status_to=booking.status,
    )
    return BookingRead.from_db(booking=booking)


@router.post("/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    booking_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    caller: CallerIdentity = Depends(require_user),
) -> BookingRead:
    try:
        booking, previous = await booking_usecase.cancel_booking(runner, notifier, caller, booking_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    if previous != booking.status:
        emit_audit_log(
            action="booking.cancelled",
            initiator=_initiator(caller),
            booking_id=booking.id,
            kind=booking.kind,
            slot_ids=[slot.id for slot in booking.slots],
            user_id=caller.user_id,
            units=booking.units,
            status_from=previous,
            status_to=booking.status,
        )
    return BookingRead.from_db(booking=booking)


@router.post("/{booking_id}/confirm", response_model=BookingRead)
async def confirm_booking(
    booking_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    caller: CallerIdentity = Depends(require_admin),
) -> BookingRead:
    try:
        booking, previous = await booking_usecase.confirm_booking(runner, notifier, caller, booking_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    if previous != booking.status:
        emit_audit_log(
            action="booking.confirmed",
            initiator="admin",
            booking_id=booking.id,
            kind=booking.kind,
            user_id=caller.user_id,
            status_from=previous,
            status_to=booking.status,
        )
    return BookingRead.from_db(booking=booking)


@router.put("/{booking_id}/attendance", response_model=BookingRead)
async def mark_attendance(
    payload: AttendanceUpdate,
    booking_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> BookingRead:
    try:
        booking = await booking_usecase.mark_attendance(runner, caller, booking_id, payload.attendance)
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(
        action="booking.attendance",
        initiator="admin",
        booking_id=booking.id,
        kind=booking.kind,
        user_id=caller.user_id,
        extra={"attendance": booking.attendance.value},
    )
    return BookingRead.from_db(booking=booking)


@router.delete("/{booking_id}", response_model=BookingDeleteResult)
async def delete_booking(
    booking_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> BookingDeleteResult:
    try:
        deleted = await booking_usecase.delete_booking(runner, caller, booking_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(
        action="booking.deleted",
        initiator="admin",
        booking_id=deleted.booking_id,
        kind=deleted.kind,
        slot_ids=deleted.slot_ids,
        user_id=caller.user_id,
        units=deleted.units,
        status_from=deleted.status,
        extra={"released": deleted.released},
    )
    return BookingDeleteResult(booking_id=deleted.booking_id, released=deleted.released)
