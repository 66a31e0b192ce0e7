"""
Async helpers shared by the services.
"""

import asyncio
from typing import Any, Awaitable, Iterable, List, Optional, TypeVar

T = TypeVar('T')


async def gather_with_concurrency(
    n: int,
    coros: Iterable[Awaitable[T]],
    semaphore: Optional[asyncio.Semaphore] = None,
    return_exceptions: bool = True,
) -> List[Any]:
    """Gather awaitables with at most ``n`` running at once.

    Args:
        n: Maximum number of concurrent awaitables (ignored when ``semaphore`` is given)
        coros: Awaitables to run
        semaphore: Optional limiter shared with other callers
        return_exceptions: Return failures in place instead of raising the first one

    Returns:
        Results in input order; failures appear as exception instances
        when ``return_exceptions`` is true
    """
    limiter = semaphore or asyncio.Semaphore(n)

    async def sem_task(coro):
        async with limiter:
            return await coro

    return await asyncio.gather(*[sem_task(c) for c in coros], return_exceptions=return_exceptions)
