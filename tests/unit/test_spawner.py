"""Unit tests for MultiprocessingSpawner bookkeeping."""

from __future__ import annotations

import signal
from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest

from cadenza.core.autoscaler.child import child_main
from cadenza.core.autoscaler.spawner import MultiprocessingSpawner, ProcessSpawner

pytestmark = pytest.mark.unit


def _process(pid: int, *, alive: bool = True, exitcode: int | None = None) -> MagicMock:
    proc = MagicMock()
    proc.pid = pid
    proc.is_alive.return_value = alive
    proc.exitcode = exitcode
    return proc


@pytest.fixture
def context() -> Iterator[MagicMock]:
    ctx = MagicMock()
    with patch(
        'cadenza.core.autoscaler.spawner.multiprocessing.get_context', return_value=ctx
    ) as get_context:
        yield ctx
    get_context.assert_called_with('spawn')


def _spawner() -> MultiprocessingSpawner:
    return MultiprocessingSpawner('tasks.audit:audit', {'loglevel': 'INFO'}, ['/srv/app'])


class TestMultiprocessingSpawner:
    def test_satisfies_protocol(self, context: MagicMock) -> None:
        assert isinstance(_spawner(), ProcessSpawner)

    def test_spawn_starts_child_with_plain_data(self, context: MagicMock) -> None:
        proc = _process(4242)
        context.Process.return_value = proc
        spawner = _spawner()

        assert spawner.spawn() == 4242

        kwargs = context.Process.call_args.kwargs
        assert kwargs['target'] is child_main
        assert kwargs['args'] == ('tasks.audit:audit', {'loglevel': 'INFO'}, ['/srv/app'], {})
        assert kwargs['daemon'] is False
        proc.start.assert_called_once_with()
        assert spawner.pids == {4242}

    def test_spawn_without_pid_fails(self, context: MagicMock) -> None:
        context.Process.return_value = _process(0)
        context.Process.return_value.pid = None

        with pytest.raises(RuntimeError):
            _spawner().spawn()

    def test_reap_returns_only_exited(self, context: MagicMock) -> None:
        running = _process(1, alive=True)
        finished = _process(2, alive=False, exitcode=3)
        context.Process.side_effect = [running, finished]
        spawner = _spawner()
        spawner.spawn()
        spawner.spawn()

        assert spawner.reap() == [(2, 3)]
        finished.join.assert_called_once_with(timeout=0)
        finished.close.assert_called_once_with()
        assert spawner.pids == {1}
        assert spawner.reap() == []

    def test_reap_unknown_exitcode(self, context: MagicMock) -> None:
        context.Process.return_value = _process(5, alive=False, exitcode=None)
        spawner = _spawner()
        spawner.spawn()

        assert spawner.reap() == [(5, -1)]

    def test_signal_tracked_pid(self, context: MagicMock) -> None:
        context.Process.return_value = _process(6)
        spawner = _spawner()
        spawner.spawn()

        with patch('cadenza.core.autoscaler.spawner.os.kill') as kill:
            spawner.signal(6, signal.SIGTERM)
        kill.assert_called_once_with(6, signal.SIGTERM)

    def test_signal_untracked_pid_is_noop(self, context: MagicMock) -> None:
        with patch('cadenza.core.autoscaler.spawner.os.kill') as kill:
            _spawner().signal(99, signal.SIGTERM)
        kill.assert_not_called()

    def test_signal_vanished_process(self, context: MagicMock) -> None:
        context.Process.return_value = _process(7)
        spawner = _spawner()
        spawner.spawn()

        with patch(
            'cadenza.core.autoscaler.spawner.os.kill', side_effect=ProcessLookupError
        ):
            spawner.signal(7, signal.SIGKILL)
