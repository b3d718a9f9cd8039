# cadenza/tasks/failure_logger.py
"""
Built-in task that logs every message arriving on the dead-letter queue.

Its queue is bound on ``broker.dead_letter_exchange``, never on the main
exchange, so only rejected messages reach it.

    cadenza run cadenza.tasks.failure_logger:failure_logger
"""

from __future__ import annotations

import sys
from datetime import datetime
from typing import Any, Mapping, Sequence, TextIO

from cadenza.core.metrics import instrument
from cadenza.core.models.task import TaskDescriptor
from cadenza.core.queue.gateway import X_DEATH, MessageMetadata
from cadenza.core.task import TaskDefinition


class FailureLogger:
    """
    Work that writes one line per dead-lettered message to ``output``.

    Each line carries a timestamp, every ``x-death`` hop as
    `` exchange-{routing,keys}->queue (reason)`` and a summary of the payload.
    """

    def __init__(self, output: TextIO | None = None) -> None:
        self.output = output if output is not None else sys.stderr

    def __call__(self, payload: Any, metadata: MessageMetadata) -> bool:
        self.log_failure(payload, metadata)
        return True

    def log_failure(self, payload: Any, metadata: MessageMetadata) -> None:
        if not metadata.headers:
            raise ValueError('No headers; not a dead-lettered message?')
        deaths = metadata.headers.get(X_DEATH)
        if not deaths:
            raise ValueError('No x-death header; not a dead-lettered message?')

        message = self.log_prefix(payload, metadata)
        message += self.log_deaths(deaths)
        message += self.log_payload(payload, metadata)

        self.output.write(message + '\n')
        self.output.flush()

    def log_prefix(self, payload: Any, metadata: MessageMetadata) -> str:
        return f'[{datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-2]}]: '

    def log_payload(self, payload: Any, metadata: MessageMetadata) -> str:
        size = metadata.body_size
        if size is None and isinstance(payload, (bytes, bytearray)):
            size = len(payload)
        return ' -- %s %s payload: %r' % (
            '?KB' if size is None else '%0.2fKB' % (size / 1024.0),
            metadata.content_type,
            payload,
        )

    def log_deaths(self, deaths: Sequence[Mapping[str, Any]]) -> str:
        return ''.join(
            ' %s-{%s}->%s (%s)'
            % (
                death.get('exchange'),
                ','.join(death.get('routing-keys') or ()),
                death.get('queue'),
                death.get('reason'),
            )
            for death in deaths
        )


failure_logger = instrument(
    TaskDefinition(
        descriptor=TaskDescriptor(
            name='failure_logger',
            queue_name='_failures',
            routing_keys=frozenset({'#'}),
            always_rebind=False,
            consume_dead_letters=True,
        ),
        work=FailureLogger(),
    )
)
