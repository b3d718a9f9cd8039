"""
The runtime's second concurrent unit: signal delivery plus idle checks.

OS signal handlers only enqueue the signal; the unit task dequeues and acts
on it, so all state changes happen on the event loop in one place.
"""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING, Any, Iterable, Optional

from cadenza.core.defaults import IDLE_CHECK_INTERVAL
from cadenza.core.errors import ErrorCode, SignalUnitCrash
from cadenza.core.logging import get_logger

if TYPE_CHECKING:
    from cadenza.core.runtime.task_runtime import TaskRuntime

logger = get_logger('signals')

SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)


class SignalUnit:
    """
    Waits up to ``interval`` seconds for a pending signal, hands it to the
    runtime, then runs the runtime's idle check; forever, until stopped.

    If the unit task dies with an exception the runtime is halted.
    """

    def __init__(
        self,
        runtime: TaskRuntime,
        signals: Iterable[signal.Signals] = SIGNALS,
        interval: float = IDLE_CHECK_INTERVAL,
        install_handlers: bool = True,
    ) -> None:
        self.runtime = runtime
        self.signals = tuple(signals)
        self.interval = interval
        self.install_handlers = install_handlers
        self._pending: asyncio.Queue[signal.Signals] = asyncio.Queue()
        self._task: Optional[asyncio.Task[None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous: dict[signal.Signals, Any] = {}
        self._installed: set[signal.Signals] = set()
        self.ignored: set[signal.Signals] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self.install_handlers:
            for sig in self.signals:
                try:
                    self._previous[sig] = signal.getsignal(sig)
                    self._loop.add_signal_handler(sig, self.deliver, sig)
                    self._installed.add(sig)
                except (NotImplementedError, RuntimeError, ValueError) as exc:
                    logger.warning(f'Cannot install handler for {sig.name}: {exc}')
        self._task = asyncio.create_task(self._run(), name='cadenza-signal-unit')
        self._task.add_done_callback(self._on_done)

    def deliver(self, sig: signal.Signals) -> None:
        """Queue ``sig`` for the unit; safe to call from a loop signal handler."""
        if sig in self.ignored:
            logger.debug(f'Ignoring {sig.name}')
            return
        self._pending.put_nowait(sig)

    async def _run(self) -> None:
        while True:
            await self.wait_for_signals(self.interval)
            self.runtime.check_for_idle_timeout()

    async def wait_for_signals(self, timeout: float) -> None:
        """Handle every queued signal, waiting up to ``timeout`` for the first."""
        try:
            sig = await asyncio.wait_for(self._pending.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        await self.runtime.handle_signal(sig)
        while not self._pending.empty():
            await self.runtime.handle_signal(self._pending.get_nowait())

    def _on_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        crash = SignalUnitCrash(
            message='signal handler unit crashed',
            code=ErrorCode.SIGNAL_UNIT_CRASHED,
            notes=[f'{type(exc).__name__}: {exc}'],
        )
        logger.critical(str(crash), exc_info=exc)
        self.runtime.stop_immediately()

    def ignore(self, signals: Optional[Iterable[signal.Signals]] = None) -> None:
        """Stop reacting to ``signals`` (default: all handled ones)."""
        for sig in tuple(signals or self.signals):
            self.ignored.add(sig)
            self._set_os_handler(sig, signal.SIG_IGN)

    def _set_os_handler(self, sig: signal.Signals, handler: Any) -> None:
        if sig not in self._installed or self._loop is None:
            return
        self._loop.remove_signal_handler(sig)
        self._installed.discard(sig)
        signal.signal(sig, handler)

    async def stop(self) -> None:
        """Cancel the unit and restore the handlers that were there before."""
        if self._task is not None:
            self._task.remove_done_callback(self._on_done)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._loop is not None:
            for sig in list(self._installed):
                self._loop.remove_signal_handler(sig)
            self._installed.clear()
        for sig, previous in self._previous.items():
            if previous is not None:
                signal.signal(sig, previous)
        self._previous.clear()
