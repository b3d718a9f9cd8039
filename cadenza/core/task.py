# cadenza/core/task.py
"""
Task definitions: a TaskDescriptor plus the work it performs.

Work is any callable ``work(payload, metadata) -> bool``, sync or async.
Truthy acks the message, falsy rejects it with requeue, raising rejects
it without requeue.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol, Union

from pydantic import ValidationError

from cadenza.core.errors import ConfigurationError, ErrorCode, SourceLocation
from cadenza.core.logging import get_logger
from cadenza.core.models.task import TaskDescriptor
from cadenza.core.queue.gateway import MessageMetadata

WorkResult = Union[bool, Awaitable[bool]]

logger = get_logger('runtime')


class Work(Protocol):
    def __call__(self, payload: Any, metadata: MessageMetadata) -> WorkResult: ...


def is_async_work(work: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(work):
        return True
    call = getattr(work, '__call__', None)
    return call is not None and inspect.iscoroutinefunction(call)


async def call_work(work: Work, payload: Any, metadata: MessageMetadata) -> Any:
    """
    Run ``work`` on the loop if it is async, otherwise in a worker thread.

    A thread cannot be interrupted. When the caller is cancelled (deadline or
    halt) the cancellation is held back until the thread has returned, so the
    message is never settled while its work is still running.
    """
    if is_async_work(work):
        return await work(payload, metadata)
    thread = asyncio.ensure_future(asyncio.to_thread(work, payload, metadata))
    try:
        result = await asyncio.shield(thread)
    except asyncio.CancelledError:
        logger.warning(
            f'Work for delivery_tag={metadata.delivery_tag} was cancelled while running '
            'in a thread; waiting for it to return'
        )
        await asyncio.wait({thread})
        if not thread.cancelled():
            thread.exception()  # outcome already decided by the cancellation
        raise
    if inspect.isawaitable(result):
        result = await result
    return result


@dataclass(frozen=True)
class TaskDefinition:
    descriptor: TaskDescriptor
    work: Work = field(repr=False)
    # ``module:attr`` this definition was imported from, when known
    locator: Optional[str] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not callable(self.work):
            raise ConfigurationError(
                message='task work is not callable',
                code=ErrorCode.TASK_NOT_IMPLEMENTED,
                notes=[f'task: {self.descriptor.name!r}', f'got: {type(self.work).__name__}'],
                help_text='pass a function or an object with __call__(payload, metadata)',
            )

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def run(self, payload: Any, metadata: MessageMetadata) -> Any:
        return await call_work(self.work, payload, metadata)

    def with_work(self, work: Work) -> TaskDefinition:
        return replace(self, work=work, locator=None)


def task(
    name: str,
    *,
    routing_keys: Union[str, Iterable[str]] = (),
    **options: Any,
) -> Callable[[Work], TaskDefinition]:
    """
    Decorator building a TaskDefinition from a work function.

        @task('audit', routing_keys={'orders.#'}, timeout=30)
        def audit(payload, metadata) -> bool:
            ...
    """

    def decorator(fn: Work) -> TaskDefinition:
        keys = routing_keys if isinstance(routing_keys, str) else frozenset(routing_keys)
        try:
            descriptor = TaskDescriptor(name=name, routing_keys=keys, **options)
        except ValidationError as exc:
            raise ConfigurationError(
                message='invalid task options',
                code=ErrorCode.TASK_INVALID_OPTIONS,
                location=SourceLocation.from_function(fn),
                notes=[f'task: {name!r}', *(err['msg'] for err in exc.errors())],
            ) from exc
        return TaskDefinition(descriptor=descriptor, work=fn)

    return decorator


def coerce_task(obj: Any, locator: Optional[str] = None) -> TaskDefinition:
    """Accept a TaskDefinition or raise a ConfigurationError naming ``locator``."""
    if isinstance(obj, TaskDefinition):
        if locator and obj.locator is None:
            return replace(obj, locator=locator)
        return obj
    raise ConfigurationError(
        message='locator does not name a task',
        code=ErrorCode.INVALID_TASK_LOCATOR,
        notes=[f'locator: {locator!r}', f'got: {type(obj).__name__}'],
        help_text='point at a TaskDefinition, e.g. one built with @task(...)',
    )
