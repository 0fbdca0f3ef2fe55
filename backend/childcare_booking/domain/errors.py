class BookingError(Exception):
    """Base class for every error the booking engine raises on purpose."""

    code = "booking_error"


class CallerError(BookingError):
    """The request cannot succeed as issued; retrying it unchanged is pointless."""

    code = "caller_error"


class InvalidWindowError(CallerError):
    code = "invalid_window"


class IncompleteCoverageError(CallerError):
    code = "incomplete_coverage"


class InsufficientCapacityError(CallerError):
    code = "insufficient_capacity"


class DuplicateBookingError(CallerError):
    code = "duplicate_booking"


class SlotNotFoundError(CallerError):
    code = "slot_not_found"


class BookingNotFoundError(CallerError):
    code = "booking_not_found"


class TerminalStateViolationError(CallerError):
    code = "terminal_state_violation"


class SlotConflictError(CallerError):
    code = "slot_conflict"


class InvalidBookingRequestError(CallerError):
    code = "invalid_request"


class PermissionDeniedError(CallerError):
    code = "permission_denied"


class RetryableError(BookingError):
    """Transient store trouble; the client may retry the same request later."""

    code = "retryable"


class ConflictRetryExhaustedError(RetryableError):
    code = "conflict_retry_exhausted"


class StoreUnavailableError(RetryableError):
    code = "store_unavailable"


class TransactionTimeoutError(RetryableError):
    code = "transaction_timeout"


class InvariantViolationError(BookingError):
    """Capacity accounting would leave a slot outside [0, capacity]."""

    code = "invariant_violation"
