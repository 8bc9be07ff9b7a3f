from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

T = TypeVar("T")


async def run_bounded(
    thunks: Sequence[Callable[[], Awaitable[T]]],
    limit: Optional[int] = None,
) -> list[T]:
    """
    Run zero-argument coroutine factories with at most `limit` in flight.

    Results come back in input order. The first failure propagates
    immediately; siblings that already started are not cancelled and may
    still finish (and perform side effects) in the background. Thunks still
    queued behind the limit are never started once any thunk has failed.
    """
    if not thunks:
        return []

    if limit is None or limit >= len(thunks):
        return list(await asyncio.gather(*(fn() for fn in thunks)))

    if limit < 1:
        raise ValueError(f"concurrency limit must be >= 1, got {limit}")

    semaphore = asyncio.Semaphore(limit)
    failed = False

    async def _guarded(fn: Callable[[], Awaitable[T]]) -> Optional[T]:
        nonlocal failed
        async with semaphore:
            # gather has already raised; the result is never read
            if failed:
                return None
            try:
                return await fn()
            except BaseException:
                failed = True
                raise

    return list(await asyncio.gather(*(_guarded(fn) for fn in thunks)))


async def call_provider(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """
    Await coroutine providers directly; run synchronous ones in a worker
    thread so CPU-bound image work does not block the event loop.
    """
    if inspect.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)

    result = await asyncio.to_thread(fn, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
