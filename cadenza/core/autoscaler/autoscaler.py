# cadenza/core/autoscaler/autoscaler.py
"""
Supervisor that keeps a pool of worker processes sized to the backlog.

Once per tick the autoscaler reaps exited workers, then samples the task
queue's depth into a sliding window. A full window whose depth never falls
(and is not flat at zero) means the workers are not keeping up, so one more
is started, up to ``max_workers``. An empty pool always gets its first worker.
"""

from __future__ import annotations

import asyncio
import signal
import time
from collections import deque
from typing import Callable, NamedTuple, Optional

from cadenza.core.autoscaler.spawner import ProcessSpawner
from cadenza.core.defaults import THROTTLE_FACTOR, THROTTLE_MAX
from cadenza.core.logging import get_logger
from cadenza.core.models.autoscaler import AutoscalerConfig
from cadenza.core.models.task import TaskDescriptor
from cadenza.core.queue.gateway import QueueGateway
from cadenza.core.runtime.task_runtime import TaskRuntime

logger = get_logger('autoscaler')


class QueueSample(NamedTuple):
    message_count: int
    consumer_count: int


def is_trending_up(samples: list[QueueSample]) -> bool:
    """Non-decreasing message counts that are not all zero."""
    counts = [s.message_count for s in samples]
    if not any(counts):
        return False
    return all(a <= b for a, b in zip(counts, counts[1:]))


class Autoscaler:
    """
    Scales worker processes for one task.

    ``queue`` is only used for metrics (and reset before every spawn); the
    workers consume through gateways of their own.
    """

    def __init__(
        self,
        descriptor: TaskDescriptor,
        queue: QueueGateway,
        spawner: ProcessSpawner,
        config: Optional[AutoscalerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.descriptor = descriptor
        self.queue = queue
        self.spawner = spawner
        self.config = config or AutoscalerConfig()
        self.clock = clock

        self.max_workers = self.config.max_workers
        self.sample_size = self.config.sample_size
        self.base_throttle = self.config.throttle_interval
        self.throttle = 0
        self.pids: set[int] = set()
        self.last_child_started: Optional[float] = None
        self.samples: deque[QueueSample] = deque(maxlen=self.sample_size)
        self._stop = asyncio.Event()

    def __repr__(self) -> str:
        return (
            f'<Autoscaler {self.descriptor.name} workers={len(self.pids)}/{self.max_workers} '
            f'throttle={self.throttle}>'
        )

    # ----------------- Throttle -----------------

    @property
    def throttle_interval(self) -> float:
        return self.base_throttle + THROTTLE_FACTOR * self.throttle

    def adjust_throttle(self, amount: int = 1) -> None:
        """Move the back-off level by ``amount``, clamped to [0, THROTTLE_MAX]."""
        self.throttle = max(0, min(THROTTLE_MAX, self.throttle + amount))
        logger.debug(f'Throttle level {self.throttle} ({self.throttle_interval:.1f}s)')

    @property
    def throttled(self) -> bool:
        if self.last_child_started is None:
            return False
        return self.clock() - self.last_child_started < self.throttle_interval

    @property
    def started_one_worker(self) -> bool:
        return self.last_child_started is not None

    # ----------------- Pool bookkeeping -----------------

    def reap_children(self) -> list[tuple[int, int]]:
        exited = self.spawner.reap()
        for pid, exitcode in exited:
            self.on_child_exit(pid, exitcode)
        return exited

    def on_child_exit(self, pid: int, exitcode: int) -> None:
        if pid not in self.pids:
            logger.debug(f'Ignoring exit of untracked pid {pid}')
            return
        self.pids.discard(pid)
        if exitcode == 0:
            logger.info(f'Worker {pid} exited cleanly')
            self.adjust_throttle(-1)
        else:
            logger.warning(f'Worker {pid} exited with status {exitcode}')
            self.adjust_throttle(1)

    async def start_worker(self) -> int:
        await TaskRuntime.before_fork(self.queue)
        pid = self.spawner.spawn()
        self.pids.add(pid)
        self.last_child_started = self.clock()
        logger.info(f'Started worker {pid} ({len(self.pids)}/{self.max_workers})')
        return pid

    async def sample_queue(self) -> QueueSample:
        sample = QueueSample(
            await self.queue.message_count(), await self.queue.consumer_count()
        )
        self.samples.append(sample)
        return sample

    # ----------------- Decision -----------------

    async def adjust_workers(self) -> Optional[int]:
        """
        One scaling decision; returns the pid of a newly started worker or None.
        """
        self.reap_children()

        if self.throttled:
            logger.debug(f'Throttled: not starting workers for {self.throttle_interval:.1f}s')
            return None

        if not self.pids:
            logger.info(f'No workers running for {self.descriptor.name}, starting one')
            return await self.start_worker()

        sample = await self.sample_queue()
        logger.debug(
            f'{self.descriptor.queue_name}: {sample.message_count} messages, '
            f'{sample.consumer_count} consumers ({len(self.samples)}/{self.sample_size} samples)'
        )

        if len(self.samples) < self.sample_size:
            return None
        if len(self.pids) >= self.max_workers:
            return None
        if not is_trending_up(list(self.samples)):
            return None

        logger.info(f'Backlog trending up for {self.descriptor.queue_name}, adding a worker')
        return await self.start_worker()

    # ----------------- Main loop -----------------

    def request_stop(self) -> None:
        self._stop.set()

    async def run_forever(self) -> None:
        logger.info(
            f'Autoscaling {self.descriptor.name}: max_workers={self.max_workers}, '
            f'sample_size={self.sample_size}, tick={self.config.tick_interval}s'
        )
        try:
            while not self._stop.is_set():
                await self.adjust_workers()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.config.tick_interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.stop_workers()
            await self.queue.close()

    async def stop_workers(self, grace: Optional[float] = None) -> None:
        """SIGTERM every worker, wait up to ``grace`` seconds, then SIGKILL stragglers."""
        grace = self.config.shutdown_grace if grace is None else grace
        self.reap_children()
        if not self.pids:
            return

        logger.info(f'Stopping {len(self.pids)} worker(s)')
        for pid in sorted(self.pids):
            self.spawner.signal(pid, signal.SIGTERM)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace
        while self.pids and loop.time() < deadline:
            await asyncio.sleep(0.1)
            self.reap_children()

        for pid in sorted(self.pids):
            logger.warning(f'Worker {pid} did not exit within {grace}s, killing it')
            self.spawner.signal(pid, signal.SIGKILL)
        if self.pids:
            await asyncio.sleep(0.1)
            self.reap_children()
