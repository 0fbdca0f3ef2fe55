from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..domain.notifications import NotificationTemplate, Notifier
from ..domain.transactions import TransactionRunner, UnitOfWork
from ..models import Booking, BookingStatus
from ..utils.audit_log import emit_audit_log
from ..utils.time import to_utc_naive, utc_now_naive
from .notifications import deliver
from .transactions import read_options, run_guarded

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloseSummary:
    closed: int = 0
    notified: int = 0
    failed: int = 0


async def _close_one(
    runner: TransactionRunner,
    booking_id: int,
    now: datetime,
) -> Optional[tuple[Booking, BookingStatus]]:
    async def work(uow: UnitOfWork) -> Optional[tuple[Booking, BookingStatus]]:
        booking = await uow.bookings.get(booking_id, for_update=True)
        # Raced with a cancel, a delete or another sweep
        if booking is None or booking.status in (BookingStatus.CANCELLED, BookingStatus.CLOSED):
            return None
        if booking.ends_at >= now:
            return None
        previous = booking.status
        booking.status = BookingStatus.CLOSED
        booking.updated_at = now
        return booking, previous

    return await run_guarded(runner, work, operation=f"close booking {booking_id}")


async def close_elapsed(
    runner: TransactionRunner,
    notifier: Notifier,
    *,
    now: Optional[datetime] = None,
) -> CloseSummary:
    """
    Move every booking whose end has passed to CLOSED.

    Each booking closes in its own transaction so one failure does not hold back
    the rest. Slot capacity is left alone. Notifications are sent after commit and
    a failed delivery never reopens the booking.
    """
    now_naive = to_utc_naive(now) if now is not None else utc_now_naive()

    async def find(uow: UnitOfWork) -> list[int]:
        return [booking.id for booking in await uow.bookings.list_elapsed(now_naive)]

    candidates = await run_guarded(runner, find, operation="list elapsed bookings", options=read_options(runner))
    if not candidates:
        logger.debug("no elapsed bookings to close")
        return CloseSummary()

    closed = notified = failed = 0
    for booking_id in candidates:
        try:
            outcome = await _close_one(runner, booking_id, now_naive)
        except Exception:
            logger.exception("failed to close booking %s", booking_id)
            failed += 1
            continue
        if outcome is None:
            continue
        booking, previous = outcome
        # The close has committed; what follows must not stop the sweep
        closed += 1
        try:
            emit_audit_log(
                action="booking.closed",
                initiator="system",
                booking_id=booking.id,
                kind=booking.kind,
                slot_ids=[slot.id for slot in booking.slots],
                user_id=booking.user_id,
                units=booking.units,
                status_from=previous,
                status_to=booking.status,
            )
        except Exception:
            logger.exception("failed to audit closing of booking %s", booking.id)
        try:
            if await deliver(notifier, booking, NotificationTemplate.CLOSED, previous_status=previous):
                notified += 1
        except Exception:
            logger.exception("failed to notify closing of booking %s", booking.id)

    logger.info("closing sweep finished closed=%d notified=%d failed=%d", closed, notified, failed)
    return CloseSummary(closed=closed, notified=notified, failed=failed)
