"""
Broker-facing types and the QueueGateway protocol.

The runtime and the autoscaler only ever talk to a broker through
``QueueGateway``; ``PostgresQueue`` is the bundled implementation.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

from cadenza.core.utils.cancellation import CancellationToken

if TYPE_CHECKING:
    from cadenza.core.models.app import CadenzaConfig

X_DEATH = 'x-death'


class Outcome(str, Enum):
    """How a delivered message is settled."""

    ACK = 'ack'
    REQUEUE = 'requeue'
    DEAD_LETTER = 'dead_letter'


@dataclass(frozen=True)
class DeathRecord:
    """One hop of dead-letter provenance from an ``x-death`` header."""

    reason: str
    queue: str
    exchange: str
    routing_keys: tuple[str, ...] = ()
    time: Optional[datetime] = None

    @classmethod
    def from_header(cls, raw: Mapping[str, Any]) -> DeathRecord:
        time_value = raw.get('time')
        if isinstance(time_value, str):
            time_value = datetime.fromisoformat(time_value)
        elif not isinstance(time_value, datetime):
            time_value = None
        return cls(
            reason=str(raw.get('reason', '')),
            queue=str(raw.get('queue', '')),
            exchange=str(raw.get('exchange', '')),
            routing_keys=tuple(raw.get('routing-keys') or ()),
            time=time_value,
        )

    def to_header(self) -> dict[str, Any]:
        return {
            'reason': self.reason,
            'queue': self.queue,
            'exchange': self.exchange,
            'routing-keys': list(self.routing_keys),
            'time': self.time.isoformat() if self.time else None,
        }


@dataclass(frozen=True)
class MessageMetadata:
    delivery_tag: int
    routing_key: str
    content_type: str = 'application/octet-stream'
    redelivered: bool = False
    exchange: str = ''
    headers: dict[str, Any] = field(default_factory=dict)
    consumer_tag: Optional[str] = None
    body_size: Optional[int] = None  # bytes on the wire, before decoding

    @property
    def deaths(self) -> list[DeathRecord]:
        """Dead-letter history, most recent hop first."""
        return [DeathRecord.from_header(raw) for raw in self.headers.get(X_DEATH) or ()]


@dataclass(frozen=True)
class Message:
    payload: bytes
    metadata: MessageMetadata


Handler = Callable[[bytes, MessageMetadata], Awaitable[bool]]
Settle = Callable[[int, Outcome], Awaitable[None]]


class Job:
    """
    A single pulled message together with the means to settle it.

    Returned by ``QueueGateway.next()``. Settling twice is a no-op.
    """

    def __init__(self, message: Message, settle: Settle) -> None:
        self.message = message
        self._settle = settle
        self.outcome: Optional[Outcome] = None

    @property
    def payload(self) -> bytes:
        return self.message.payload

    @property
    def metadata(self) -> MessageMetadata:
        return self.message.metadata

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    async def _finish(self, outcome: Outcome) -> None:
        if self.outcome is not None:
            return
        self.outcome = outcome
        await self._settle(self.metadata.delivery_tag, outcome)

    async def ack(self) -> None:
        await self._finish(Outcome.ACK)

    async def reject(self, requeue: bool = False) -> None:
        await self._finish(Outcome.REQUEUE if requeue else Outcome.DEAD_LETTER)

    async def release(self) -> None:
        """Hand the message back to the queue untouched."""
        await self._finish(Outcome.REQUEUE)

    def __repr__(self) -> str:
        return (
            f'Job(delivery_tag={self.metadata.delivery_tag}, '
            f'routing_key={self.metadata.routing_key!r}, outcome={self.outcome})'
        )


@runtime_checkable
class QueueGateway(Protocol):
    """Broker operations consumed by TaskRuntime and Autoscaler."""

    async def next(self) -> Optional[Job]: ...

    async def wait_for_message(
        self,
        oneshot: bool,
        handler: Handler,
        cancellation: Optional[CancellationToken] = None,
    ) -> None:
        """
        Deliver messages to ``handler`` once (oneshot) or until cancelled.

        A True return acks, False rejects with requeue, and an exception
        rejects without requeue.
        """
        ...

    async def message_count(self) -> int: ...

    async def consumer_count(self) -> int: ...

    def shutdown(self) -> None: ...

    def halt(self) -> None: ...

    def reconfigure(self, config: CadenzaConfig) -> None:
        """Adopt freshly loaded settings; they take effect after the next ``reset()``."""
        ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...

    async def publish(
        self,
        routing_key: str,
        payload: bytes,
        content_type: str = 'application/octet-stream',
        headers: Optional[dict[str, Any]] = None,
        *,
        exchange: Optional[str] = None,
    ) -> int: ...


def make_consumer_tag(queue_name: str) -> str:
    """``<queue>.<short hostname>.<pid>``"""
    return f'{queue_name}.{socket.gethostname().split(".")[0]}.{os.getpid()}'


def outcome_for(result: Any) -> Outcome:
    """Map a handler's return value onto ack / requeue."""
    return Outcome.ACK if result else Outcome.REQUEUE
