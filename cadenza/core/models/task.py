# cadenza/core/models/task.py
from __future__ import annotations

import re
from enum import Enum
from typing import Any, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cadenza.core.defaults import DEFAULT_IDLE_TIMEOUT, DEFAULT_PREFETCH
from cadenza.core.errors import (
    ConfigurationError,
    ErrorCode,
    ValidationReport,
    raise_collected,
)


class WorkModel(str, Enum):
    """How many messages a runtime handles before it returns."""

    LONGLIVED = 'longlived'
    ONESHOT = 'oneshot'


class TimeoutAction(str, Enum):
    """What happens to a message whose work ran past its deadline."""

    REJECT = 'reject'  # dead-letter path
    REQUEUE = 'requeue'  # soft-failure path


def default_queue_name(name: str) -> str:
    """Derive a queue name from a task name: 'Audit Trail' -> 'audit.trail'."""
    return re.sub(r'\W+', '.', name).strip('.').lower()


class TaskDescriptor(BaseModel):
    """
    Declarative, immutable configuration of one task variant.

    Built once at registration time and handed to both the runtime and the
    autoscaler. ``routing_keys`` may be empty here; the runtime refuses to
    start without at least one.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description='Task identity')
    queue_name: str = Field(
        default='', description='Queue to consume; derived from name when blank'
    )
    routing_keys: frozenset[str] = Field(
        default_factory=frozenset,
        description='Topic patterns the queue is bound with (* and # wildcards)',
    )
    prefetch: int = Field(
        default=DEFAULT_PREFETCH,
        ge=0,
        description='Max unacknowledged in-flight messages (longlived only)',
    )
    work_model: WorkModel = WorkModel.LONGLIVED
    acknowledge: bool = True
    persistent: bool = False
    always_rebind: bool = False
    consume_dead_letters: bool = Field(
        default=False,
        description="Bind on the broker's dead-letter exchange instead of the main one",
    )
    timeout: Optional[float] = Field(
        default=None, description='Seconds a single message may take'
    )
    timeout_action: TimeoutAction = TimeoutAction.REJECT
    idle_timeout: float = Field(
        default=DEFAULT_IDLE_TIMEOUT,
        description='Seconds without completed work before an idle runtime exits',
    )

    @field_validator('routing_keys', mode='before')
    @classmethod
    def _coerce_routing_keys(cls, v: Any) -> Any:
        if isinstance(v, str):
            return frozenset([v])
        return v

    @model_validator(mode='before')
    @classmethod
    def _derive_queue_name(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get('queue_name') and data.get('name'):
            return {**data, 'queue_name': default_queue_name(str(data['name']))}
        return data

    @model_validator(mode='after')
    def _validate_options(self) -> Self:
        """Collect all independent option errors and raise them together."""
        report = ValidationReport('task')

        if self.timeout is not None and self.timeout <= 0:
            report.add(
                ConfigurationError(
                    message='timeout must be a positive number of seconds',
                    code=ErrorCode.TASK_INVALID_OPTIONS,
                    notes=[f'task: {self.name!r}', f'got: timeout={self.timeout}'],
                    help_text='use timeout=None to disable the deadline',
                )
            )
        if self.idle_timeout <= 0:
            report.add(
                ConfigurationError(
                    message='idle_timeout must be a positive number of seconds',
                    code=ErrorCode.TASK_INVALID_OPTIONS,
                    notes=[f'task: {self.name!r}', f'got: idle_timeout={self.idle_timeout}'],
                )
            )
        if not self.queue_name:
            report.add(
                ConfigurationError(
                    message='queue name could not be derived from the task name',
                    code=ErrorCode.TASK_INVALID_QUEUE,
                    notes=[f'task: {self.name!r}'],
                    help_text='pass queue_name explicitly',
                )
            )
        blank_keys = sorted(k for k in self.routing_keys if not k.strip())
        if blank_keys:
            report.add(
                ConfigurationError(
                    message='routing keys must not be blank',
                    code=ErrorCode.TASK_INVALID_OPTIONS,
                    notes=[f'task: {self.name!r}'],
                )
            )

        raise_collected(report)
        return self

    @property
    def is_oneshot(self) -> bool:
        return self.work_model is WorkModel.ONESHOT

    @property
    def effective_prefetch(self) -> int:
        """Prefetch actually requested from the broker; oneshot always takes one."""
        return 1 if self.is_oneshot else self.prefetch

    def ensure_runnable(self) -> None:
        """Raise ConfigurationError unless the task can be subscribed."""
        if not self.routing_keys:
            raise ConfigurationError(
                message='no subscriptions defined',
                code=ErrorCode.TASK_NO_ROUTING_KEYS,
                notes=[f'task: {self.name!r}', f'queue: {self.queue_name!r}'],
                help_text="add one or more patterns, e.g. routing_keys={'orders.#'}",
            )
