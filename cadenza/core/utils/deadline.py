"""Bounding a unit of work by a wall-clock deadline."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from cadenza.core.errors import ErrorCode, WorkTimeoutError
from cadenza.core.logging import get_logger
from cadenza.core.models.task import TimeoutAction

logger = get_logger('deadline')


async def call_with_deadline(
    call: Callable[[], Awaitable[bool]],
    *,
    timeout: Optional[float],
    action: TimeoutAction = TimeoutAction.REJECT,
    task_name: Optional[str] = None,
    delivery_tag: Optional[int] = None,
) -> bool:
    """
    Await ``call()`` for at most ``timeout`` seconds.

    Without a timeout the call is awaited as-is. When the deadline passes the
    call is cancelled and the outcome depends on ``action``: ``reject`` raises
    WorkTimeoutError, ``requeue`` returns False.
    """
    if timeout is None:
        return await call()

    try:
        return await asyncio.wait_for(call(), timeout=timeout)
    except asyncio.TimeoutError:
        match action:
            case TimeoutAction.REJECT:
                raise WorkTimeoutError(
                    message=f'work exceeded its {timeout}s deadline',
                    code=ErrorCode.WORK_TIMED_OUT,
                    notes=[f'task: {task_name!r}', f'delivery_tag: {delivery_tag}'],
                    task_name=task_name,
                    delivery_tag=delivery_tag,
                    timeout=timeout,
                ) from None
            case TimeoutAction.REQUEUE:
                logger.warning(
                    f'Work for {task_name!r} (delivery_tag={delivery_tag}) '
                    f'exceeded {timeout}s, requeueing'
                )
                return False
