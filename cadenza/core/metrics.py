"""Instrumentation that wraps any Work implementation."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Optional

import psutil

from cadenza.core.logging import get_logger
from cadenza.core.queue.gateway import MessageMetadata
from cadenza.core.task import TaskDefinition, Work, call_work

logger = get_logger('metrics')


def _rss_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


@dataclass
class WorkStats:
    acked: int = 0
    requeued: int = 0
    failed: int = 0
    total_seconds: float = 0.0

    @property
    def handled(self) -> int:
        return self.acked + self.requeued + self.failed

    @property
    def mean_seconds(self) -> float:
        return self.total_seconds / self.handled if self.handled else 0.0


class InstrumentedWork:
    """
    Decorates a Work callable with timing, outcome counts and memory use.

    The wrapped call behaves exactly like the original: same return value,
    same exceptions.
    """

    def __init__(self, work: Work, name: Optional[str] = None) -> None:
        self.work = work
        self.name = name or getattr(work, '__name__', type(work).__name__)
        self.stats = WorkStats()

    async def __call__(self, payload: Any, metadata: MessageMetadata) -> Any:
        started = time.perf_counter()
        outcome = 'failed'
        try:
            result = await call_work(self.work, payload, metadata)
            outcome = 'acked' if result else 'requeued'
            return result
        finally:
            elapsed = time.perf_counter() - started
            self.stats.total_seconds += elapsed
            setattr(self.stats, outcome, getattr(self.stats, outcome) + 1)
            logger.info(
                f'{self.name}: message {metadata.delivery_tag} {outcome} '
                f'in {elapsed * 1000:.1f}ms (rss={_rss_mb():.1f}MB, '
                f'handled={self.stats.handled})'
            )


def instrument(definition: TaskDefinition) -> TaskDefinition:
    """Return a copy of ``definition`` whose work is instrumented."""
    return definition.with_work(InstrumentedWork(definition.work, name=definition.name))
