import logging
from dataclasses import replace

from ..domain.errors import (
    BookingError,
    ConflictRetryExhaustedError,
    InvariantViolationError,
    StoreUnavailableError,
)
from ..domain.transactions import IsolationLevel, T, TransactionOptions, TransactionRunner, Work

logger = logging.getLogger(__name__)


def read_options(runner: TransactionRunner) -> TransactionOptions:
    """Options for advisory and read-only work: no serializable snapshot, no retries."""
    return replace(runner.defaults, isolation=IsolationLevel.READ_COMMITTED, max_attempts=1)


async def run_guarded(
    runner: TransactionRunner,
    work: Work[T],
    *,
    operation: str,
    options: TransactionOptions | None = None,
) -> T:
    """
    Run `work` and translate store failures into the engine's error taxonomy.

    Caller errors pass through verbatim. A conflict that survived every retry and a
    transient store failure are logged with context and surfaced as retryable errors.
    """
    try:
        return await runner.run(work, options)
    except InvariantViolationError:
        logger.critical("capacity invariant violated during %s; transaction aborted", operation, exc_info=True)
        raise
    except BookingError:
        raise
    except Exception as exc:
        if runner.classifier.is_conflict(exc):
            logger.error("%s abandoned after repeated serialization conflicts", operation, exc_info=True)
            raise ConflictRetryExhaustedError("operation failed because of concurrent changes, please retry") from exc
        if runner.classifier.is_transient(exc):
            logger.error("%s failed on a transient store error", operation, exc_info=True)
            raise StoreUnavailableError("store temporarily unavailable, please retry") from exc
        raise
