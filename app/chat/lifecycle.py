"""
Request lifecycle helpers for the messaging core.

 - `Ok` / `Failed` / `Aborted`: tagged outcome of a guarded request, so a
   deliberate cancellation can never be rendered as an error.
 - `RequestSlot`: one logical slot (e.g. "the thread currently on screen").
   Each request gets a monotonically increasing id; starting a new one
   cancels the previous task, and a result is only reported as `Ok` if its
   id is still the latest when it lands.
 - `SingleFlight`: coalesces concurrent loads of the same key into one
   underlying call and briefly reuses the completed result.
 - `retry_once` / `with_timeout`: the only retry and timeout policies.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from app.chat.errors import MessagingError, NetworkTimeout, RequestAborted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    request_id: int = 0


@dataclass(frozen=True)
class Failed:
    kind: str
    error: BaseException
    request_id: int = 0

    @property
    def retryable(self) -> bool:
        return getattr(self.error, "retryable", True)

    @property
    def message(self) -> str:
        return getattr(self.error, "message", None) or str(self.error)


@dataclass(frozen=True)
class Aborted:
    request_id: int = 0
    # "cancelled": the task was stopped; "superseded": it finished but a newer request owns the slot
    reason: str = "cancelled"


Result = Union[Ok, Failed, Aborted]


def error_kind(error: BaseException) -> str:
    if isinstance(error, MessagingError):
        return error.kind
    return "unexpected"


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, MessagingError):
        return error.retryable
    return isinstance(error, OSError)


async def with_timeout(awaitable: Awaitable[T], seconds: float, label: str = "request") -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        logger.warning(f"request_timeout label={label} timeout={seconds}")
        raise NetworkTimeout(f"{label} timed out after {seconds}s") from e


async def retry_once(
    fn: Callable[[], Awaitable[T]],
    *,
    delay: float,
    label: str = "request",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `fn`; on a retryable failure wait `delay` seconds and run it exactly once more."""
    try:
        return await fn()
    except Exception as e:
        if not is_retryable(e):
            raise
        logger.warning(f"request_retry label={label} delay={delay} error={e}")
    await sleep(delay)
    return await fn()


class RequestSlot:
    """Latest-request-wins guard for one logical slot."""

    def __init__(self, name: str = "slot") -> None:
        self.name = name
        self._latest = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def latest_id(self) -> int:
        return self._latest

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_current(self, request_id: int) -> bool:
        return request_id == self._latest

    def invalidate(self) -> int:
        """Bump the id without starting work. Anything in flight becomes stale."""
        self.abort()
        self._latest += 1
        return self._latest

    def abort(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            logger.debug(f"request_aborted slot={self.name}")
            task.cancel()

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "") -> Result:
        request_id = self.invalidate()
        task = asyncio.create_task(fn(), name=f"{self.name}:{request_id}")
        self._task = task
        try:
            value = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return Aborted(request_id)
        except RequestAborted:
            return Aborted(request_id)
        except Exception as e:
            if not self.is_current(request_id):
                return Aborted(request_id, reason="superseded")
            logger.error(
                f"request_failed slot={self.name} label={label or self.name} "
                f"kind={error_kind(e)} error={e}"
            )
            return Failed(error_kind(e), e, request_id)
        finally:
            if self._task is task:
                self._task = None

        if not self.is_current(request_id):
            logger.debug(f"request_superseded slot={self.name} request_id={request_id}")
            return Aborted(request_id, reason="superseded")
        return Ok(value, request_id)


@dataclass
class _Flight:
    task: asyncio.Task
    waiters: int = 0
    finished_at: Optional[float] = None


class SingleFlight:
    """
    Per-key coalescing of in-flight awaitables.

    A second caller asking for a key that is already loading awaits the same
    task. A successful result stays reusable for `ttl` seconds after it
    completes; failures and cancellations are never reused. The underlying
    task is cancelled once every waiter has gone away.
    """

    def __init__(self, ttl: float = 1.5, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._flights: dict[str, _Flight] = {}

    def __contains__(self, key: str) -> bool:
        return self._usable(self._flights.get(key))

    def _usable(self, flight: Optional[_Flight]) -> bool:
        if flight is None:
            return False
        if not flight.task.done():
            return True
        if flight.task.cancelled() or flight.task.exception() is not None:
            return False
        return flight.finished_at is not None and self._clock() - flight.finished_at < self._ttl

    def __len__(self) -> int:
        return len(self._flights)

    def _on_done(self, key: str, flight: _Flight, task: asyncio.Task) -> None:
        flight.finished_at = self._clock()
        if task.cancelled() or task.exception() is not None:
            self._expire(key, flight)
        else:
            task.get_loop().call_later(self._ttl, self._expire, key, flight)

    def _expire(self, key: str, flight: _Flight) -> None:
        if self._flights.get(key) is flight:
            del self._flights[key]

    def forget(self, key: str) -> None:
        self._flights.pop(key, None)

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        flight = self._flights.get(key)
        if not self._usable(flight):
            flight = _Flight(task=asyncio.ensure_future(fn()))
            flight.task.add_done_callback(
                lambda task, flight=flight: self._on_done(key, flight, task)
            )
            self._flights[key] = flight
        else:
            logger.debug(f"single_flight_joined key={key}")

        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            # Checked on the next tick so a caller re-joining right after an abort
            # keeps the shared call alive.
            asyncio.get_running_loop().call_soon(self._cancel_if_orphaned, key, flight)
            raise
        finally:
            flight.waiters -= 1

    def _cancel_if_orphaned(self, key: str, flight: _Flight) -> None:
        if flight.waiters > 0 or flight.task.done():
            return
        logger.debug(f"single_flight_cancelled key={key}")
        flight.task.cancel()
        if self._flights.get(key) is flight:
            del self._flights[key]


class BackgroundTasks:
    """
    Fire-and-forget work owned by a view (read receipts and the like).

    Failures are logged and discarded. `cancel_all()` stops everything still
    pending so nothing runs on behalf of a view that has gone away.
    """

    def __init__(self, name: str = "background") -> None:
        self.name = name
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    async def _guard(self, awaitable: Awaitable[Any], label: str) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"best_effort_failed owner={self.name} label={label} error={e}")

    def spawn(self, awaitable: Awaitable[Any], label: str = "") -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(awaitable, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
