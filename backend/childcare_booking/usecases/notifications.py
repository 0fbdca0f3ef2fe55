import logging
from typing import Any, Dict, Optional

from ..domain.notifications import NotificationRequest, NotificationTemplate, Notifier
from ..models import Booking, BookingStatus

logger = logging.getLogger(__name__)


def booking_details(booking: Booking, previous_status: Optional[BookingStatus] = None) -> Dict[str, Any]:
    details: Dict[str, Any] = {
        "booking_id": booking.id,
        "kind": booking.kind.value,
        "name": booking.contact_name,
        "starts_at": booking.starts_at.isoformat(),
        "ends_at": booking.ends_at.isoformat(),
        "status": booking.status.value,
        "slot_ids": [slot.id for slot in booking.slots],
        "units": booking.units,
    }
    if booking.dependents:
        details["dependents"] = [dep.name for dep in booking.dependents]
    if booking.package is not None:
        details["package"] = booking.package.value
    if booking.comments:
        details["comments"] = booking.comments
    if previous_status is not None:
        details["previous_status"] = previous_status.value
    return details


async def deliver(
    notifier: Notifier,
    booking: Booking,
    template: NotificationTemplate,
    *,
    previous_status: Optional[BookingStatus] = None,
) -> bool:
    """Best effort: returns False instead of raising when nothing was delivered."""
    if not booking.contact_email:
        logger.info("booking %s has no contact email, %s notification skipped", booking.id, template.value)
        return False
    request = NotificationRequest(
        recipient=booking.contact_email,
        template=template,
        details=booking_details(booking, previous_status),
    )
    try:
        await notifier.send(request)
    except Exception:
        logger.exception("failed to send %s notification for booking %s", template.value, booking.id)
        return False
    return True
