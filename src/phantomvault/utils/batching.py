"""Bounded-concurrency batching helpers shared by the export and import pipelines"""

import asyncio
import logging
from collections.abc import Awaitable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from phantomvault.errors import OperationCancelledError

T = TypeVar("T")


def check_cancelled(cancel: asyncio.Event | None) -> None:
    """Raise if the caller asked to abort"""
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError()


def batch_items(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive chunks of at most `size`, keeping order"""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


async def yield_to_main(timeout: float = 0.05) -> None:
    """
    Give the event loop a chance to run other tasks.

    Waits at most `timeout` seconds for the loop to go idle; when no other
    task is ready the suspension is a single zero-length sleep.
    """
    loop = asyncio.get_running_loop()
    idle = loop.create_future()
    _ = loop.call_soon(idle.set_result, None)
    try:
        await asyncio.wait_for(idle, timeout)
    except TimeoutError:
        await asyncio.sleep(0)


@dataclass(frozen=True)
class Settled(Generic[T]):
    """Outcome of one item of a settle-all join"""

    value: T | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_settled(aws: Iterable[Awaitable[T]]) -> list[Settled[T]]:
    """
    Await every awaitable and return their outcomes in input order.

    A failure never cancels its siblings: each exception is captured in its
    own `Settled` entry instead of being raised.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    settled: list[Settled[T]] = []
    for result in results:
        if isinstance(result, BaseException):
            settled.append(Settled(error=result))
        else:
            settled.append(Settled(value=result))
    return settled


class BoundedStatus(Enum):
    """How a deadline-bounded operation ended"""

    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ERRORED = "errored"


@dataclass(frozen=True)
class BoundedResult(Generic[T]):
    status: BoundedStatus
    value: T | None = None
    error: Exception | None = None

    @property
    def completed(self) -> bool:
        return self.status is BoundedStatus.COMPLETED


async def run_bounded(aw: Awaitable[T], timeout: float) -> BoundedResult[T]:
    """Run `aw` with a deadline, reporting completion, timeout or error"""
    try:
        value = await asyncio.wait_for(aw, timeout)
    except TimeoutError:
        logging.getLogger("Batching").warning(
            "Operation timed out after %.1f seconds", timeout
        )
        return BoundedResult(BoundedStatus.TIMED_OUT)
    except Exception as e:  # pylint: disable=broad-exception-caught
        return BoundedResult(BoundedStatus.ERRORED, error=e)
    return BoundedResult(BoundedStatus.COMPLETED, value=value)
