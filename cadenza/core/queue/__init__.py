from cadenza.core.queue.gateway import (
    Job,
    Message,
    MessageMetadata,
    DeathRecord,
    Outcome,
    QueueGateway,
)
from cadenza.core.queue.postgres import PostgresQueue
from cadenza.core.queue.topics import route, topic_matches

__all__ = [
    'Job',
    'Message',
    'MessageMetadata',
    'DeathRecord',
    'Outcome',
    'QueueGateway',
    'PostgresQueue',
    'route',
    'topic_matches',
]
