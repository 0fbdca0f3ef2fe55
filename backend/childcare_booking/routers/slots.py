from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from ..config import get_settings
from ..deps import get_runner, require_admin
from ..domain.errors import BookingError
from ..domain.identity import CallerIdentity
from ..domain.transactions import TransactionRunner
from ..models import SlotKind
from ..schemas import (
    DaycareSlotBatchCreate,
    DaycareSlotRangeUpdate,
    SlotBatchRead,
    SlotCreate,
    SlotDeleteResult,
    SlotRead,
    SlotUpdate,
)
from ..usecases import slots as slot_usecase
from ..utils.audit_log import emit_audit_log
from .errors import http_error

router = APIRouter(prefix="/slots", tags=["slots"])
admin_router = APIRouter(prefix="/admin/slots", tags=["slots"], dependencies=[Depends(require_admin)])


def _require_aware(*values: Optional[datetime]) -> None:
    if any(value is not None and value.tzinfo is None for value in values):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="starts_at/ends_at must have timezone")


@router.get("/{kind}/availability", response_model=List[SlotRead])
async def list_availability(
    kind: SlotKind,
    start: date = Query(..., description="first local date (YYYY-MM-DD)"),
    end: date = Query(..., description="last local date (YYYY-MM-DD)"),
    runner: TransactionRunner = Depends(get_runner),
) -> list[SlotRead]:
    try:
        slots = await slot_usecase.list_availability(runner, kind=kind, start_day=start, end_day=end)
    except BookingError as exc:
        raise http_error(exc) from exc
    return [SlotRead.from_db(slot=slot) for slot in slots]


@admin_router.post("", response_model=SlotRead, status_code=status.HTTP_201_CREATED)
async def create_slot(
    payload: SlotCreate,
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> SlotRead:
    _require_aware(payload.starts_at, payload.ends_at)
    try:
        slot = await slot_usecase.create_slot(
            runner,
            caller,
            kind=payload.kind,
            starts_at=payload.starts_at,
            ends_at=payload.ends_at,
            capacity=payload.capacity,
            status=payload.status,
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(action="slot.created", initiator="admin", kind=slot.kind, slot_ids=[slot.id], user_id=caller.user_id)
    return SlotRead.from_db(slot=slot)


@admin_router.post("/daycare/generate", response_model=SlotBatchRead, status_code=status.HTTP_201_CREATED)
async def generate_daycare_slots(
    payload: DaycareSlotBatchCreate,
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> SlotBatchRead:
    try:
        result = await slot_usecase.create_daycare_slot_batch(
            runner,
            caller,
            start_date=payload.start_date,
            open_hour=payload.open_hour,
            close_hour=payload.close_hour,
            capacity=payload.capacity,
            days=payload.days or get_settings().daycare_generation_days,
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    if result.created:
        emit_audit_log(
            action="slot.created",
            initiator="admin",
            kind=SlotKind.DAYCARE,
            slot_ids=[slot.id for slot in result.created],
            user_id=caller.user_id,
            extra={"skipped": len(result.skipped)},
        )
    return SlotBatchRead(
        created=[SlotRead.from_db(slot=slot) for slot in result.created],
        skipped=result.skipped,
    )


@admin_router.patch("/daycare", response_model=List[SlotRead])
async def update_daycare_slots(
    payload: DaycareSlotRangeUpdate,
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> list[SlotRead]:
    try:
        slots = await slot_usecase.update_daycare_slots_in_range(
            runner,
            caller,
            day=payload.day,
            start_hour=payload.start_hour,
            end_hour=payload.end_hour,
            capacity=payload.capacity,
            status=payload.status,
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(
        action="slot.updated",
        initiator="admin",
        kind=SlotKind.DAYCARE,
        slot_ids=[slot.id for slot in slots],
        user_id=caller.user_id,
    )
    return [SlotRead.from_db(slot=slot) for slot in slots]


@admin_router.patch("/{slot_id}", response_model=SlotRead)
async def update_slot(
    payload: SlotUpdate,
    slot_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> SlotRead:
    _require_aware(payload.starts_at, payload.ends_at)
    try:
        slot = await slot_usecase.update_slot(
            runner,
            caller,
            slot_id,
            capacity=payload.capacity,
            available=payload.available,
            status=payload.status,
            starts_at=payload.starts_at,
            ends_at=payload.ends_at,
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(action="slot.updated", initiator="admin", kind=slot.kind, slot_ids=[slot.id], user_id=caller.user_id)
    return SlotRead.from_db(slot=slot)


@admin_router.delete("/{slot_id}", response_model=SlotDeleteResult)
async def delete_slot(
    slot_id: int = Path(..., ge=1),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> SlotDeleteResult:
    try:
        deleted = await slot_usecase.delete_slot(runner, caller, slot_id)
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(action="slot.deleted", initiator="admin", slot_ids=deleted, user_id=caller.user_id)
    return SlotDeleteResult(deleted_slot_ids=deleted)


@admin_router.delete("", response_model=SlotDeleteResult)
async def delete_slots_in_range(
    kind: SlotKind = Query(...),
    day: date = Query(..., alias="date"),
    start_hour: Optional[int] = Query(default=None, ge=0, le=23),
    end_hour: Optional[int] = Query(default=None, ge=1, le=24),
    runner: TransactionRunner = Depends(get_runner),
    caller: CallerIdentity = Depends(require_admin),
) -> SlotDeleteResult:
    try:
        deleted = await slot_usecase.delete_slots_in_range(
            runner, caller, kind=kind, day=day, start_hour=start_hour, end_hour=end_hour
        )
    except BookingError as exc:
        raise http_error(exc) from exc

    emit_audit_log(action="slot.deleted", initiator="admin", kind=kind, slot_ids=deleted, user_id=caller.user_id)
    return SlotDeleteResult(deleted_slot_ids=deleted)
