# cadenza/core/autoscaler/spawner.py
"""
Process creation behind a small interface.

The autoscaler only ever asks for "a new worker for this task" and "which
workers have exited"; how a worker process comes to exist is the spawner's
business.
"""

from __future__ import annotations

import multiprocessing
import os
import signal
from multiprocessing.process import BaseProcess
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

from cadenza.core.autoscaler.child import child_main
from cadenza.core.logging import get_logger

logger = get_logger('spawner')


@runtime_checkable
class ProcessSpawner(Protocol):
    def spawn(self) -> int:
        """Start one isolated worker process and return its pid."""
        ...

    def reap(self) -> list[tuple[int, int]]:
        """Non-blocking: return ``(pid, exitcode)`` for every child that has exited."""
        ...

    def signal(self, pid: int, sig: signal.Signals) -> None: ...


class MultiprocessingSpawner:
    """
    Spawns workers with the ``spawn`` start method.

    Each child starts from a fresh interpreter and receives only the task
    locator and the configuration as plain data; nothing open in the parent
    (sockets, connections, event loops) is inherited.
    """

    def __init__(
        self,
        locator: str,
        config_data: Mapping[str, Any],
        sys_path_roots: Sequence[str] = (),
        start_method: str = 'spawn',
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.locator = locator
        self.config_data = dict(config_data)
        self.sys_path_roots = list(sys_path_roots)
        self.overrides = dict(overrides or {})
        self._ctx = multiprocessing.get_context(start_method)
        self._procs: dict[int, BaseProcess] = {}

    @property
    def pids(self) -> set[int]:
        return set(self._procs)

    def spawn(self) -> int:
        proc = self._ctx.Process(
            target=child_main,
            args=(self.locator, self.config_data, self.sys_path_roots, self.overrides),
            name=f'cadenza-worker-{len(self._procs) + 1}',
            daemon=False,
        )
        proc.start()
        pid = proc.pid
        if pid is None:
            raise RuntimeError(f'worker process for {self.locator!r} did not start')
        self._procs[pid] = proc
        logger.info(f'Spawned worker pid={pid} for {self.locator}')
        return pid

    def reap(self) -> list[tuple[int, int]]:
        exited: list[tuple[int, int]] = []
        for pid, proc in list(self._procs.items()):
            if proc.is_alive():
                continue
            proc.join(timeout=0)
            exitcode = proc.exitcode
            # Killed by a signal: multiprocessing reports -signum.
            code = exitcode if exitcode is not None else -1
            del self._procs[pid]
            proc.close()
            exited.append((pid, code))
            logger.debug(f'Reaped worker pid={pid} exitcode={code}')
        return exited

    def signal(self, pid: int, sig: signal.Signals) -> None:
        if pid not in self._procs:
            return
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            logger.debug(f'Worker pid={pid} already gone before {sig.name}')
