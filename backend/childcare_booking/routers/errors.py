import logging

from fastapi import HTTPException, status

from ..domain.errors import (
    BookingError,
    BookingNotFoundError,
    ConflictRetryExhaustedError,
    DuplicateBookingError,
    IncompleteCoverageError,
    InsufficientCapacityError,
    InvalidBookingRequestError,
    InvalidWindowError,
    InvariantViolationError,
    PermissionDeniedError,
    SlotConflictError,
    SlotNotFoundError,
    StoreUnavailableError,
    TerminalStateViolationError,
    TransactionTimeoutError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[BookingError], int], ...] = (
    (InvalidWindowError, status.HTTP_400_BAD_REQUEST),
    (IncompleteCoverageError, status.HTTP_400_BAD_REQUEST),
    (InvalidBookingRequestError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (SlotNotFoundError, status.HTTP_404_NOT_FOUND),
    (BookingNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientCapacityError, status.HTTP_409_CONFLICT),
    (DuplicateBookingError, status.HTTP_409_CONFLICT),
    (TerminalStateViolationError, status.HTTP_409_CONFLICT),
    (SlotConflictError, status.HTTP_409_CONFLICT),
    (ConflictRetryExhaustedError, status.HTTP_409_CONFLICT),
    (TransactionTimeoutError, status.HTTP_408_REQUEST_TIMEOUT),
    (StoreUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def http_error(exc: BookingError) -> HTTPException:
    """Translate an engine error into the HTTP response the client sees."""
    if isinstance(exc, InvariantViolationError):
        # Accounting details stay in the server log
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "internal_error", "message": "operation failed, please retry"},
        )
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
    logger.error("unmapped booking error %s", type(exc).__name__)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": exc.code, "message": "operation failed, please retry"},
    )
