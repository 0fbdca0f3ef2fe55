from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import AsyncContextManager, Awaitable, Callable, Protocol, TypeVar

from .repositories import BookingRepository, DependentRepository, SlotRepository

T = TypeVar("T")


class IsolationLevel(StrEnum):
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


@dataclass(frozen=True)
class TransactionOptions:
    isolation: IsolationLevel = IsolationLevel.SERIALIZABLE
    timeout_ms: int = 10_000
    max_attempts: int = 3
    base_delay_ms: int = 100


class UnitOfWork(Protocol):
    slots: SlotRepository
    bookings: BookingRepository
    dependents: DependentRepository


class ErrorClassifier(Protocol):
    def is_conflict(self, exc: BaseException) -> bool: ...

    def is_transient(self, exc: BaseException) -> bool: ...


TransactionFactory = Callable[[TransactionOptions], AsyncContextManager[UnitOfWork]]
Work = Callable[[UnitOfWork], Awaitable[T]]


class TransactionRunner(Protocol):
    classifier: ErrorClassifier
    defaults: TransactionOptions

    async def run(self, work: Work[T], options: TransactionOptions | None = None) -> T: ...
