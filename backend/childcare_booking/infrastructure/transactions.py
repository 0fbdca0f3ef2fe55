from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterator

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings
from ..database import Database
from ..domain.errors import TransactionTimeoutError
from ..domain.transactions import TransactionOptions
from .repositories import (
    SqlAlchemyBookingRepository,
    SqlAlchemyDependentRepository,
    SqlAlchemySlotRepository,
)
from .retry import RetryingTransactionRunner

# PostgreSQL serialization_failure / deadlock_detected
_CONFLICT_SQLSTATES = frozenset({"40001", "40P01"})
# MySQL ER_LOCK_DEADLOCK / ER_LOCK_WAIT_TIMEOUT
_CONFLICT_MYSQL_CODES = frozenset({1213, 1205})


class SqlAlchemyUnitOfWork:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.slots = SqlAlchemySlotRepository(session)
        self.bookings = SqlAlchemyBookingRepository(session)
        self.dependents = SqlAlchemyDependentRepository(session)


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _driver_codes(err: DBAPIError) -> tuple[str | None, int | None]:
    orig = err.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    args = getattr(orig, "args", ())
    mysql_code = args[0] if args and isinstance(args[0], int) else None
    return sqlstate, mysql_code


class SqlAlchemyErrorClassifier:
    """Maps driver errors of the supported backends onto conflict / transient."""

    def is_conflict(self, exc: BaseException) -> bool:
        for err in _chain(exc):
            if isinstance(err, DBAPIError):
                sqlstate, mysql_code = _driver_codes(err)
                if sqlstate in _CONFLICT_SQLSTATES or mysql_code in _CONFLICT_MYSQL_CODES:
                    return True
        return False

    def is_transient(self, exc: BaseException) -> bool:
        if self.is_conflict(exc):
            return False
        for err in _chain(exc):
            if isinstance(err, DBAPIError) and err.connection_invalidated:
                return True
            if isinstance(err, (OperationalError, DisconnectionError, TransactionTimeoutError, ConnectionError)):
                return True
        return False


def sqlalchemy_transactions(database: Database):
    @asynccontextmanager
    async def begin(options: TransactionOptions) -> AsyncIterator[SqlAlchemyUnitOfWork]:
        async with database.sessionmaker() as session:
            async with session.begin():
                await session.connection(execution_options={"isolation_level": options.isolation.value})
                yield SqlAlchemyUnitOfWork(session)

    return begin


def build_transaction_runner(database: Database, settings: Settings) -> RetryingTransactionRunner:
    return RetryingTransactionRunner(
        sqlalchemy_transactions(database),
        SqlAlchemyErrorClassifier(),
        defaults=TransactionOptions(
            timeout_ms=settings.tx_timeout_ms,
            max_attempts=settings.tx_max_attempts,
            base_delay_ms=settings.tx_base_delay_ms,
        ),
    )
