"""
Sync work in a process that can be killed.

A thread that runs past its deadline cannot be stopped. For a sync task with
a timeout, TaskRuntime hands each message to a single spawned work process
instead. When the deadline expires that process is terminated, and a fresh
one is started before the next message.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import os
import traceback
from multiprocessing.pool import Pool
from typing import Any, Callable, Optional

from cadenza.core.defaults import WORK_PROCESS_STARTUP_TIMEOUT
from cadenza.core.errors import ConfigurationError, ErrorCode, WorkError
from cadenza.core.logging import apply_level, get_logger
from cadenza.core.queue.gateway import MessageMetadata
from cadenza.core.task import TaskDefinition, coerce_task
from cadenza.core.utils.imports import locate

logger = get_logger('runtime')

# Set in the work process by the pool initializer.
_definition: Optional[TaskDefinition] = None


def _init_work_process(locator: str, loglevel: int) -> None:
    global _definition
    apply_level(loglevel)
    _definition = coerce_task(locate(locator), locator)


def _ping() -> int:
    return os.getpid()


def _run_work(payload: Any, metadata: MessageMetadata) -> tuple[bool, Any]:
    """``(True, result)``, or ``(False, (type name, message, traceback))``."""
    assert _definition is not None, 'work process used before initialization'
    try:
        return True, asyncio.run(_definition.run(payload, metadata))
    except Exception as exc:
        return False, (type(exc).__name__, str(exc), traceback.format_exc())


def _settle_future(future: asyncio.Future[Any], value: Any, error: Optional[BaseException]) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)


class WorkProcessPool:
    """One spawned process running the work of the task at ``locator``."""

    def __init__(
        self,
        locator: str,
        loglevel: int = logging.INFO,
        *,
        startup_timeout: float = WORK_PROCESS_STARTUP_TIMEOUT,
        start_method: str = 'spawn',
    ) -> None:
        self.locator = locator
        self.loglevel = loglevel
        self.startup_timeout = startup_timeout
        self.pid: Optional[int] = None
        self._ctx = multiprocessing.get_context(start_method)
        self._pool: Optional[Pool] = None

    def _create_pool(self) -> Pool:
        return self._ctx.Pool(
            processes=1,
            initializer=_init_work_process,
            initargs=(self.locator, self.loglevel),
        )

    async def _submit(self, func: Callable[..., Any], *args: Any) -> Any:
        assert self._pool is not None
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        self._pool.apply_async(
            func,
            args,
            callback=lambda value: loop.call_soon_threadsafe(_settle_future, future, value, None),
            error_callback=lambda exc: loop.call_soon_threadsafe(_settle_future, future, None, exc),
        )
        return await future

    async def ready(self) -> int:
        """Start the work process if needed; returns its pid once the task is imported."""
        if self._pool is None:
            self._pool = self._create_pool()
            self.pid = None
        if self.pid is None:
            try:
                self.pid = await asyncio.wait_for(self._submit(_ping), self.startup_timeout)
            except asyncio.TimeoutError:
                await self.kill()
                raise ConfigurationError(
                    message='work process did not start',
                    code=ErrorCode.WORK_PROCESS_UNAVAILABLE,
                    notes=[f'locator: {self.locator!r}', f'waited: {self.startup_timeout}s'],
                    help_text='check that the task module imports cleanly in a fresh interpreter',
                ) from None
            logger.debug(f'Work process pid={self.pid} ready for {self.locator}')
        return self.pid

    async def run(
        self,
        payload: Any,
        metadata: MessageMetadata,
        *,
        task_name: Optional[str] = None,
    ) -> Any:
        """Run the work for one message. Cancelling this kills the work process."""
        await self.ready()
        try:
            ok, value = await self._submit(_run_work, payload, metadata)
        except asyncio.CancelledError:
            logger.warning(
                f'Killing work process pid={self.pid} '
                f'(delivery_tag={metadata.delivery_tag})'
            )
            await self.kill()
            raise
        if ok:
            return value

        error_type, error_message, trace = value
        raise WorkError(
            message=f'work raised {error_type}: {error_message}',
            code=ErrorCode.WORK_FAILED,
            notes=[f'task: {task_name!r}', f'work process: {self.pid}', trace.rstrip()],
            task_name=task_name,
            delivery_tag=metadata.delivery_tag,
        )

    async def kill(self) -> None:
        """Terminate the work process and whatever it is running."""
        pool, self._pool = self._pool, None
        self.pid = None
        if pool is not None:
            await asyncio.shield(asyncio.to_thread(pool.terminate))

    async def close(self) -> None:
        await self.kill()
