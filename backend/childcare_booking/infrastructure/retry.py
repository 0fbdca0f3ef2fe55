from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from ..domain.errors import TransactionTimeoutError
from ..domain.transactions import ErrorClassifier, TransactionFactory, TransactionOptions, T, Work

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RetryingTransactionRunner:
    """
    Runs a unit of work in a fresh transaction per attempt.

    A failure the classifier reports as a serialization conflict is retried after
    `base_delay_ms * 2**attempt` milliseconds, up to `max_attempts` attempts in total.
    Anything else, and the conflict that exhausts the attempts, propagates unchanged.
    """

    def __init__(
        self,
        begin: TransactionFactory,
        classifier: ErrorClassifier,
        *,
        defaults: TransactionOptions | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._begin = begin
        self.classifier = classifier
        self.defaults = defaults or TransactionOptions()
        self._sleep = sleep

    async def run(self, work: Work[T], options: TransactionOptions | None = None) -> T:
        opts = options or self.defaults
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._attempt(work, opts)
            except Exception as exc:
                if self.classifier.is_conflict(exc) and attempt < opts.max_attempts:
                    delay_ms = opts.base_delay_ms * 2 ** (attempt - 1)
                    logger.warning(
                        "serialization conflict on attempt %d/%d, retrying in %dms",
                        attempt,
                        opts.max_attempts,
                        delay_ms,
                    )
                    await self._sleep(delay_ms / 1000)
                    continue
                self._record(attempt, started, outcome=type(exc).__name__)
                raise
            self._record(attempt, started, outcome="committed")
            return result

    async def _attempt(self, work: Work[T], opts: TransactionOptions) -> T:
        try:
            async with asyncio.timeout(opts.timeout_ms / 1000):
                async with self._begin(opts) as uow:
                    return await work(uow)
        except TimeoutError as exc:
            raise TransactionTimeoutError(f"transaction exceeded {opts.timeout_ms}ms") from exc

    def _record(self, attempts: int, started: float, *, outcome: str) -> None:
        logger.info(
            "transaction finished attempts=%d duration_ms=%.1f outcome=%s",
            attempts,
            (time.monotonic() - started) * 1000,
            outcome,
        )
