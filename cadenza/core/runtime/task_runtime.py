# cadenza/core/runtime/task_runtime.py
"""
Per-process engine for one task.

TaskRuntime subscribes the task's queue, feeds each delivered message through
``preprocess_payload`` and the task's work (bounded by its deadline), and
reacts to INT/TERM/HUP and idle timeouts through a SignalUnit. It returns a
process exit status; that status is all a supervisor ever sees.
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import signal
import time
from typing import Any, Awaitable, Callable, Optional

from cadenza.core.codec.payload import preprocess_payload
from cadenza.core.config import ConfigHolder
from cadenza.core.defaults import IDLE_CHECK_INTERVAL, ExitCode
from cadenza.core.errors import (
    CadenzaError,
    ConfigurationError,
    ErrorCode,
    WorkError,
)
from cadenza.core.logging import get_logger
from cadenza.core.queue.gateway import MessageMetadata, QueueGateway
from cadenza.core.runtime.signals import SIGNALS, SignalUnit
from cadenza.core.runtime.work_process import WorkProcessPool
from cadenza.core.task import TaskDefinition, is_async_work
from cadenza.core.utils.cancellation import CancellationToken
from cadenza.core.utils.deadline import call_with_deadline

logger = get_logger('runtime')


class TaskRuntime:
    """
    Runs one TaskDefinition against one QueueGateway until told to stop.

    State owned by the signal unit: ``shutting_down`` and the restart request
    (carried on the current CancellationToken). The consume loop only reads
    them. ``last_worked`` is None exactly while a message is being handled.
    """

    def __init__(
        self,
        definition: TaskDefinition,
        queue: QueueGateway,
        *,
        config: Optional[ConfigHolder] = None,
        exit_on_idle: bool = False,
        check_interval: float = IDLE_CHECK_INTERVAL,
        install_signal_handlers: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.definition = definition
        self.descriptor = definition.descriptor
        self.queue = queue
        self.config = config
        self.exit_on_idle = exit_on_idle
        self.check_interval = check_interval
        self.install_signal_handlers = install_signal_handlers
        self.clock = clock

        self.shutting_down = False
        self.last_worked: Optional[float] = clock()
        self.token = CancellationToken()
        self.signal_unit: Optional[SignalUnit] = None
        self.work_pool: Optional[WorkProcessPool] = None
        self._rval: Any = None

    @property
    def restarting(self) -> bool:
        return self.token.restart_requested

    @property
    def uses_work_process(self) -> bool:
        """Sync work under a deadline runs in a killable process when it can be re-imported."""
        return (
            self.descriptor.timeout is not None
            and self.definition.locator is not None
            and not is_async_work(self.definition.work)
        )

    @property
    def procname(self) -> str:
        return (
            f'{platform.python_implementation().lower()} {platform.python_version()}: '
            f'cadenza: {self.descriptor.name} ({self.descriptor.work_model.value}) '
            f'-> {self.descriptor.queue_name}'
        )

    # ----------------- Lifecycle -----------------

    def start(self) -> int:
        """
        Subscribe and handle messages until stopped; returns an exit status.

        Raises ConfigurationError when the task has no routing keys. Any other
        exception is logged and reported as ExitCode.SOFTWARE.
        """
        self.descriptor.ensure_runnable()
        try:
            return asyncio.run(self.run())
        except CadenzaError as exc:
            logger.critical(f'{type(exc).__name__} in {self.descriptor.name}:\n{exc}')
            return ExitCode.SOFTWARE
        except Exception as exc:
            logger.critical(
                f'{type(exc).__name__} in {self.descriptor.name}: {exc}', exc_info=True
            )
            return ExitCode.SOFTWARE

    async def run(self) -> int:
        """The async body of ``start``, for callers that already own a loop."""
        self.descriptor.ensure_runnable()
        logger.info(f'Starting {self.procname}')

        self._rval = None
        self.signal_unit = SignalUnit(
            self,
            SIGNALS,
            interval=self.check_interval,
            install_handlers=self.install_signal_handlers,
        )
        self.signal_unit.start()
        try:
            if self.uses_work_process and self.work_pool is None:
                assert self.definition.locator is not None
                loglevel = self.config.config.loglevel_int if self.config else logging.INFO
                self.work_pool = WorkProcessPool(self.definition.locator, loglevel)
            if self.work_pool is not None:
                pid = await self.work_pool.ready()
                logger.info(f'Sync work runs in process pid={pid}')
            while True:
                self.token = CancellationToken()
                if self.shutting_down:
                    break
                await self.start_handling_messages()
                if not self.restarting or self.shutting_down:
                    break
                logger.info('Re-subscribing after restart')
        finally:
            if self.work_pool is not None:
                await self.work_pool.close()
            await self.signal_unit.stop()

        status = ExitCode.OK if self._rval else ExitCode.FAILURE
        logger.info(f'{self.descriptor.name} exiting with status {int(status)}')
        return status

    async def start_handling_messages(self) -> Any:
        """One subscription pass; returns the last handler result."""
        await self.queue.wait_for_message(
            self.descriptor.is_oneshot, self.handle_message, self.token
        )
        return self._rval

    async def handle_message(self, payload: bytes, metadata: MessageMetadata) -> Any:
        """Decode, run the work under its deadline, and report the outcome."""
        if self.work_pool is not None:
            try:
                await self.work_pool.ready()
            except ConfigurationError as exc:
                logger.critical(f'Cannot run work for delivery_tag={metadata.delivery_tag}:\n{exc}')
                self._rval = False
                self.token.request_stop()
                return False

        self.last_worked = None
        try:
            work_payload = preprocess_payload(payload, metadata.content_type)
            result = await call_with_deadline(
                lambda: self._run_work(work_payload, metadata),
                timeout=self.descriptor.timeout,
                action=self.descriptor.timeout_action,
                task_name=self.descriptor.name,
                delivery_tag=metadata.delivery_tag,
            )
        except WorkError as exc:
            logger.error(f'{exc.message} (delivery_tag={metadata.delivery_tag})')
            raise
        except Exception as exc:
            logger.error(
                f'{self.descriptor.name} failed on delivery_tag={metadata.delivery_tag}: '
                f'{type(exc).__name__}: {exc}',
                exc_info=True,
            )
            raise WorkError(
                message=f'work raised {type(exc).__name__}: {exc}',
                code=ErrorCode.WORK_FAILED,
                notes=[f'task: {self.descriptor.name!r}', f'routing_key: {metadata.routing_key!r}'],
                task_name=self.descriptor.name,
                delivery_tag=metadata.delivery_tag,
            ) from exc
        finally:
            self.last_worked = self.clock()

        self._rval = result
        return result

    def _run_work(self, payload: Any, metadata: MessageMetadata) -> Awaitable[Any]:
        if self.work_pool is not None:
            return self.work_pool.run(payload, metadata, task_name=self.descriptor.name)
        return self.definition.run(payload, metadata)

    # ----------------- Signal unit callbacks -----------------

    async def handle_signal(self, sig: signal.Signals) -> None:
        logger.debug(f'Handling signal {sig.name}')
        match sig:
            case signal.SIGTERM | signal.SIGINT:
                self.on_terminate()
            case signal.SIGHUP:
                await self.restart()
            case _:
                logger.warning(f'Unhandled signal {sig.name}')

    def on_terminate(self) -> None:
        if self.shutting_down:
            self.stop_immediately()
        else:
            self.stop_gracefully()

    def stop_gracefully(self) -> None:
        """Finish the in-flight message, then stop consuming."""
        logger.warning('Attempting to shut down gracefully')
        self.shutting_down = True
        self.token.request_stop()

    def stop_immediately(self) -> None:
        """Abandon delivery now and stop listening for further signals."""
        logger.warning('Already in shutdown, halting immediately')
        self.shutting_down = True
        if self.signal_unit is not None:
            self.signal_unit.ignore()
        self.token.request_halt()

    async def restart(self) -> None:
        """Reload configuration, reset the connection and subscribe again."""
        logger.warning('Restarting...')
        if self.config is not None:
            try:
                changed = self.config.reload()
            except ConfigurationError as exc:
                logger.error(f'  config reload failed, keeping current config:\n{exc}')
            else:
                logger.info('  config reloaded' if changed else '  no config changes')
                self.queue.reconfigure(self.config.config)
        logger.info('  resetting queue')
        await self.queue.reset()
        self.token.request_restart()

    def check_for_idle_timeout(self) -> None:
        """Request a graceful stop once idle for longer than idle_timeout."""
        if self.last_worked is None or not self.exit_on_idle:
            return
        seconds_idle = self.clock() - self.last_worked
        logger.debug(f'{self.descriptor.name}: idle {seconds_idle:.2f}s')
        if seconds_idle > self.descriptor.idle_timeout:
            logger.info(f'Idle for {seconds_idle:.1f}s, stopping')
            self.stop_gracefully()

    # ----------------- Fork hooks -----------------

    @staticmethod
    async def before_fork(queue: QueueGateway) -> None:
        """Drop the parent's connections so nothing open crosses into a child."""
        await queue.reset()

    @staticmethod
    def after_fork(config: Optional[ConfigHolder] = None) -> None:
        """Detach the child into its own process group and apply configuration."""
        try:
            os.setpgrp()
        except OSError as exc:
            logger.debug(f'setpgrp failed: {exc}')
        if config is not None:
            config.install()
