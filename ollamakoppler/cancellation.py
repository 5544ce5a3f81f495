"""Abort-signal helpers for awaitables and async iterators."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncGenerator, AsyncIterable, Awaitable, TypeVar

from .errors import AbortError

LOG = logging.getLogger(__name__)

T = TypeVar("T")


async def _cancel_task(task: asyncio.Future[Any]) -> None:
    if task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def run_abortable(awaitable: Awaitable[T], abort_signal: asyncio.Event | None) -> T:
    """Await `awaitable`, raising `AbortError` as soon as `abort_signal` is set."""
    if abort_signal is None:
        return await awaitable
    if abort_signal.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise AbortError()

    work = asyncio.ensure_future(awaitable)
    aborted = asyncio.create_task(abort_signal.wait())
    try:
        done, _ = await asyncio.wait({work, aborted}, return_when=asyncio.FIRST_COMPLETED)
        if work in done:
            return work.result()
        raise AbortError()
    finally:
        await _cancel_task(work)
        await _cancel_task(aborted)


async def iterate_abortable(
    source: AsyncIterable[T],
    abort_signal: asyncio.Event | None,
) -> AsyncGenerator[T, None]:
    """Forward items from `source` until it ends or `abort_signal` is set.

    The source is closed on every exit path.
    """
    iterator = source.__aiter__()

    async def _next_item() -> T:
        return await iterator.__anext__()

    try:
        while True:
            try:
                item = await run_abortable(_next_item(), abort_signal)
            except StopAsyncIteration:
                return
            yield item
    finally:
        await aclose_quietly(iterator, label="abortable source")


async def aclose_quietly(source: Any, *, label: str = "stream") -> None:
    """Close an async generator during cleanup, even when the caller is being cancelled."""
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    cleanup_cancelled = False
    try:
        await asyncio.shield(aclose())
    except asyncio.CancelledError:
        cleanup_cancelled = True
    except Exception:
        LOG.debug("%s close failed", label, exc_info=True)
    if cleanup_cancelled:
        raise asyncio.CancelledError
