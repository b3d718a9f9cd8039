"""Integration fixtures: a PostgresQueue factory against a live database."""

from __future__ import annotations

import os
import uuid
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio

from cadenza.core.models.broker import PostgresConfig
from cadenza.core.models.task import TaskDescriptor
from cadenza.core.queue.postgres import PostgresQueue

DB_URL = os.environ.get('CADENZA_TEST_DATABASE_URL', '')

QueueFactory = Callable[..., PostgresQueue]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if DB_URL:
        return
    skip = pytest.mark.skip(reason='CADENZA_TEST_DATABASE_URL is not set')
    for item in items:
        if 'integration' in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def broker_config() -> PostgresConfig:
    """Broker config with exchanges unique to the test."""
    suffix = uuid.uuid4().hex[:8]
    return PostgresConfig(
        database_url=DB_URL or 'postgresql+psycopg://unused/unused',
        exchange=f'events-{suffix}',
        dead_letter_exchange=f'dlx-{suffix}',
        notify_poll_interval=0.2,
        pool_size=2,
    )


@pytest_asyncio.fixture
async def make_queue(broker_config: PostgresConfig) -> AsyncGenerator[QueueFactory, None]:
    """Build PostgresQueues for throwaway queue names; closes them afterwards."""
    created: list[PostgresQueue] = []
    suffix = uuid.uuid4().hex[:8]

    def factory(
        name: str = 'audit',
        *,
        config: PostgresConfig | None = None,
        **options: Any,
    ) -> PostgresQueue:
        options.setdefault('routing_keys', {'#'})
        options.setdefault('queue_name', f'{name}.{suffix}')
        descriptor = TaskDescriptor(name=name, **options)
        queue = PostgresQueue(config or broker_config, descriptor)
        created.append(queue)
        return queue

    yield factory

    for queue in created:
        await queue.close()
