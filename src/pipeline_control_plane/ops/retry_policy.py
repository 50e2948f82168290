"""Retry driver shared by adapters, matching and convergence loops.

An operation either returns a value, raises ``RetryableOperationError``
("not yet, try again"), raises a retryable ``ControlPlaneError`` (transient
transport failure) or raises anything else, which stops the loop at once.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import TypeVar

import httpx

from pipeline_control_plane.errors import ControlPlaneError
from pipeline_control_plane.observability.metrics import METRICS

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Cancellation handle inherited by nested retry loops (adapter calls inside polls)
cancel_event_ctx: ContextVar[asyncio.Event | None] = ContextVar("cancel_event", default=None)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters.

    ``retries`` counts the attempts made after the first one.
    """

    retries: int
    min_timeout: float
    max_timeout: float
    factor: float = 2.0
    jitter: bool = False

    def delay_for(self, retry_number: int) -> float:
        delay = compute_backoff_seconds(
            attempt=retry_number,
            base=self.min_timeout,
            maximum=self.max_timeout,
            factor=self.factor,
        )
        if self.jitter:
            delay = min(delay * random.uniform(1.0, 2.0), self.max_timeout)
        return delay

    @classmethod
    def fixed(cls, *, retries: int, interval: float) -> RetryPolicy:
        return cls(retries=retries, min_timeout=interval, max_timeout=interval, factor=1.0)


class RetryableOperationError(Exception):
    """Raised by an operation to request another attempt."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class RetryExhaustedError(Exception):
    """The retry budget or the deadline ran out."""

    def __init__(self, *, attempts: int, last_error: BaseException | None, deadline_exceeded: bool):
        reason = "deadline exceeded" if deadline_exceeded else f"gave up after {attempts} attempts"
        if last_error is not None:
            reason = f"{reason}: {last_error}"
        super().__init__(reason)
        self.attempts = attempts
        self.last_error = last_error
        self.deadline_exceeded = deadline_exceeded


class OperationCancelledError(Exception):
    """The caller's cancellation handle fired during a retry loop."""

    pass


def compute_backoff_seconds(*, attempt: int, base: float, maximum: float, factor: float = 2.0) -> float:
    if attempt <= 1:
        return min(base, maximum)
    value = base * (factor ** (attempt - 1))
    return min(value, maximum)


def is_retryable_exception(exc: BaseException) -> bool:
    if isinstance(exc, RetryableOperationError):
        return True
    if isinstance(exc, ControlPlaneError):
        return exc.retryable
    if isinstance(exc, httpx.TimeoutException | httpx.NetworkError):
        return True
    retryable: tuple[type[BaseException], ...] = (
        TimeoutError,
        ConnectionError,
    )
    return isinstance(exc, retryable)


@contextmanager
def bind_cancel_event(cancel_event: asyncio.Event | None) -> Iterator[asyncio.Event | None]:
    """Make ``cancel_event`` the handle of every retry loop started in this context.

    ``None`` keeps the handle already bound by an outer caller.
    """
    if cancel_event is None:
        yield cancel_event_ctx.get()
        return
    token = cancel_event_ctx.set(cancel_event)
    try:
        yield cancel_event
    finally:
        cancel_event_ctx.reset(token)


async def sleep_with_cancel(delay: float, cancel_event: asyncio.Event | None = None) -> None:
    """Sleep for ``delay`` seconds, waking early if ``cancel_event`` is set."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    if cancel_event.is_set():
        raise OperationCancelledError("Operation cancelled by caller")
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        return
    raise OperationCancelledError("Operation cancelled by caller")


async def retry_async(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    deadline: float | None = None,
    cancel_event: asyncio.Event | None = None,
    on_retry: Callable[[BaseException, int], None] | None = None,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it returns, bails, or the budget runs out.

    ``deadline`` is an absolute ``loop.time()`` value; sleeps are clamped to it
    and it is never extended by retries. Without an explicit ``cancel_event``
    the handle bound by ``bind_cancel_event`` is used, and an explicit one is
    bound for the operation so nested retry loops observe it too.
    """
    with bind_cancel_event(cancel_event) as cancel_event:
        return await _retry_loop(operation, policy, deadline, cancel_event, on_retry, label)


async def _retry_loop(
    operation: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    deadline: float | None,
    cancel_event: asyncio.Event | None,
    on_retry: Callable[[BaseException, int], None] | None,
    label: str,
) -> T:
    loop = asyncio.get_running_loop()
    attempt = 0
    while True:
        attempt += 1
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(f"{label} cancelled by caller")
        try:
            return await operation(attempt)
        except Exception as exc:
            if not is_retryable_exception(exc):
                raise
            if attempt > policy.retries:
                raise RetryExhaustedError(
                    attempts=attempt, last_error=exc, deadline_exceeded=False
                ) from exc

            delay = policy.delay_for(attempt)
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise RetryExhaustedError(
                        attempts=attempt, last_error=exc, deadline_exceeded=True
                    ) from exc
                delay = min(delay, remaining)

            METRICS.retries_total.labels(operation=label).inc()
            if on_retry is not None:
                on_retry(exc, attempt)
            else:
                logger.info(
                    f"[RETRY {attempt}/{policy.retries}] {label}: {exc}",
                    extra={"attempt": attempt, "delay_seconds": round(delay, 2)},
                )
            await sleep_with_cancel(delay, cancel_event)
