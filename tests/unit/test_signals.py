"""Unit tests for the runtime's signal unit."""

from __future__ import annotations

import asyncio
import os
import signal
from typing import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from cadenza.core.runtime.signals import SIGNALS, SignalUnit

pytestmark = pytest.mark.unit


def _runtime() -> MagicMock:
    runtime = MagicMock()
    runtime.handle_signal = AsyncMock()
    return runtime


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


def test_handles_int_term_hup() -> None:
    assert set(SIGNALS) == {signal.SIGINT, signal.SIGTERM, signal.SIGHUP}


@pytest.mark.asyncio
class TestSignalUnit:
    async def test_delivered_signals_handled_in_order(self) -> None:
        runtime = _runtime()
        unit = SignalUnit(runtime, interval=0.01, install_handlers=False)
        unit.start()
        try:
            unit.deliver(signal.SIGHUP)
            unit.deliver(signal.SIGTERM)
            await _wait_until(lambda: runtime.handle_signal.await_count == 2)
        finally:
            await unit.stop()

        handled = [call.args[0] for call in runtime.handle_signal.await_args_list]
        assert handled == [signal.SIGHUP, signal.SIGTERM]

    async def test_idle_check_runs_every_interval(self) -> None:
        runtime = _runtime()
        unit = SignalUnit(runtime, interval=0.01, install_handlers=False)
        unit.start()
        try:
            await _wait_until(lambda: runtime.check_for_idle_timeout.call_count >= 3)
        finally:
            await unit.stop()
        runtime.handle_signal.assert_not_awaited()

    async def test_ignored_signals_are_dropped(self) -> None:
        runtime = _runtime()
        unit = SignalUnit(runtime, interval=0.01, install_handlers=False)
        unit.start()
        try:
            unit.ignore([signal.SIGTERM])
            unit.deliver(signal.SIGTERM)
            unit.deliver(signal.SIGHUP)
            await _wait_until(lambda: runtime.handle_signal.await_count == 1)
            await asyncio.sleep(0.03)
        finally:
            await unit.stop()

        runtime.handle_signal.assert_awaited_once_with(signal.SIGHUP)

    async def test_ignore_defaults_to_all_signals(self) -> None:
        unit = SignalUnit(_runtime(), install_handlers=False)
        unit.ignore()
        assert unit.ignored == set(SIGNALS)

    async def test_crash_halts_runtime(self) -> None:
        runtime = _runtime()
        runtime.check_for_idle_timeout.side_effect = RuntimeError('boom')
        unit = SignalUnit(runtime, interval=0.01, install_handlers=False)
        unit.start()

        await _wait_until(lambda: runtime.stop_immediately.called)
        assert not unit.running
        await unit.stop()
        runtime.stop_immediately.assert_called_once_with()

    async def test_stop_is_not_a_crash(self) -> None:
        runtime = _runtime()
        unit = SignalUnit(runtime, interval=0.01, install_handlers=False)
        unit.start()
        assert unit.running

        await unit.stop()

        assert not unit.running
        runtime.stop_immediately.assert_not_called()

    async def test_os_signal_reaches_runtime_and_handler_is_restored(self) -> None:
        previous = signal.getsignal(signal.SIGHUP)
        runtime = _runtime()
        unit = SignalUnit(runtime, [signal.SIGHUP], interval=0.01, install_handlers=True)
        unit.start()
        try:
            os.kill(os.getpid(), signal.SIGHUP)
            await _wait_until(lambda: runtime.handle_signal.await_count == 1)
        finally:
            await unit.stop()

        runtime.handle_signal.assert_awaited_once_with(signal.SIGHUP)
        assert signal.getsignal(signal.SIGHUP) == previous
