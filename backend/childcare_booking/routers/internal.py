import logging

from fastapi import APIRouter, Depends

from ..deps import get_notifier, get_runner, get_sweep_initiator
from ..domain.errors import BookingError
from ..domain.notifications import Notifier
from ..domain.transactions import TransactionRunner
from ..schemas import CloseSummaryRead
from ..usecases.closing import close_elapsed
from .errors import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])


@router.post("/close-elapsed", response_model=CloseSummaryRead)
async def trigger_close_elapsed(
    runner: TransactionRunner = Depends(get_runner),
    notifier: Notifier = Depends(get_notifier),
    initiator: str = Depends(get_sweep_initiator),
) -> CloseSummaryRead:
    """Manual trigger for the closing sweep, for an external scheduler or an administrator."""
    logger.info("closing sweep triggered manually by %s", initiator)
    try:
        summary = await close_elapsed(runner, notifier)
    except BookingError as exc:
        raise http_error(exc) from exc
    return CloseSummaryRead(closed=summary.closed, notified=summary.notified, failed=summary.failed)
