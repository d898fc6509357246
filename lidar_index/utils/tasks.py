"""All-or-nothing fan-out of coroutines.

``asyncio.gather`` leaves sibling tasks running when one fails, and
``asyncio.TaskGroup`` wraps failures in an ``ExceptionGroup``.  Builds
need neither: the first failure must cancel the siblings, wait for
their cleanup to finish, and then surface unchanged.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable


async def gather_or_cancel(*aws: Awaitable[Any]) -> list[Any]:
    """Await *aws* concurrently; on the first failure cancel the rest.

    Returns:
        Results in argument order.

    Raises:
        BaseException: The first exception raised by any awaitable,
            after every sibling has been cancelled and has finished.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
