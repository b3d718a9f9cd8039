# cadenza/core/queue/postgres.py
from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import os
import socket
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Row
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cadenza.core.errors import ConfigurationError, ErrorCode
from cadenza.core.logging import get_logger
from cadenza.core.models.app import CadenzaConfig
from cadenza.core.models.broker import PostgresConfig
from cadenza.core.models.queue_pg import Base
from cadenza.core.models.resilience import ResilienceConfig
from cadenza.core.models.task import TaskDescriptor
from cadenza.core.queue import sql
from cadenza.core.queue.gateway import (
    X_DEATH,
    DeathRecord,
    Handler,
    Job,
    Message,
    MessageMetadata,
    Outcome,
    make_consumer_tag,
    outcome_for,
)
from cadenza.core.queue.listener import PostgresListener, queue_channel
from cadenza.core.queue.topics import route
from cadenza.core.utils.backoff import RetryBackoff
from cadenza.core.utils.cancellation import CancellationToken
from cadenza.core.utils.db import is_retryable_connection_error
from cadenza.core.utils.url import mask_database_url, to_psycopg_url


class PostgresQueue:
    """
    QueueGateway for one task's queue, stored in PostgreSQL.

    - Publishing routes a message through the exchange's topic bindings and
      inserts one row per matching queue; a trigger NOTIFYs the queue channel.
    - Consuming claims rows with FOR UPDATE SKIP LOCKED, at most ``prefetch``
      unacknowledged at a time, and waits on LISTEN with a polling fallback.
    - Every process builds its own engine and listener lazily; ``reset()``
      drops both so the next operation reconnects.
    """

    def __init__(
        self,
        config: PostgresConfig,
        descriptor: TaskDescriptor,
        *,
        resilience: Optional[ResilienceConfig] = None,
        consumer_tag: Optional[str] = None,
    ) -> None:
        self.config = config
        self.descriptor = descriptor
        self.consumer_tag = consumer_tag or make_consumer_tag(descriptor.queue_name)
        self.logger = get_logger('queue')

        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._listener: Optional[PostgresListener] = None
        self._schema_ready = False
        self._token: Optional[CancellationToken] = None
        self._backoff = RetryBackoff.from_config(resilience or ResilienceConfig())
        self._last_heartbeat: Optional[float] = None

    def __repr__(self) -> str:
        return (
            f'PostgresQueue(queue={self.descriptor.queue_name!r}, '
            f'url={mask_database_url(self.config.database_url)!r})'
        )

    @property
    def queue_name(self) -> str:
        return self.descriptor.queue_name

    @property
    def binding_exchange(self) -> str:
        """Exchange the queue's bindings live on."""
        if not self.descriptor.consume_dead_letters:
            return self.config.exchange
        if self.config.dead_letter_exchange is None:
            raise ConfigurationError(
                message='dead-letter consumer without a dead-letter exchange',
                code=ErrorCode.BROKER_NO_DEAD_LETTER_EXCHANGE,
                notes=[f'task: {self.descriptor.name!r}', f'queue: {self.queue_name!r}'],
                help_text='set broker.dead_letter_exchange in the config file',
            )
        return self.config.dead_letter_exchange

    def reconfigure(self, config: CadenzaConfig) -> None:
        """Switch to new broker settings; open connections are kept until ``reset()``."""
        if config.broker.database_url != self.config.database_url:
            self._schema_ready = False
        self.config = config.broker
        self._backoff = RetryBackoff.from_config(config.resilience)
        self.logger.debug(f'Reconfigured for {mask_database_url(self.config.database_url)}')

    # ----------------- Connections -----------------

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._engine = create_async_engine(
                self.config.database_url, **self.config.engine_options()
            )
            self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
            self.logger.debug(f'Engine created for {mask_database_url(self.config.database_url)}')
        return self._session_factory

    def _get_listener(self) -> PostgresListener:
        if self._listener is None:
            self._listener = PostgresListener(to_psycopg_url(self.config.database_url))
        return self._listener

    async def reset(self) -> None:
        """Drop the engine and listener; the next operation opens fresh ones."""
        engine, self._engine = self._engine, None
        listener, self._listener = self._listener, None
        self._session_factory = None
        if listener is not None:
            await listener.close()
        if engine is not None:
            await engine.dispose()
        self.logger.debug('Connections reset')

    async def close(self) -> None:
        await self.reset()

    # ----------------- Schema and declaration -----------------

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key, per database URL."""
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'cadenza-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema(self) -> None:
        """Create tables and the notify trigger; serialized across processes."""
        if self._schema_ready:
            return
        self._sessions()
        assert self._engine is not None
        async with self._engine.begin() as conn:
            await conn.execute(
                sql.SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_advisory_key()}
            )
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(sql.CREATE_NOTIFY_FUNCTION_SQL)
            await conn.execute(sql.DROP_NOTIFY_TRIGGER_SQL)
            await conn.execute(sql.CREATE_NOTIFY_TRIGGER_SQL)
        self._schema_ready = True

    async def declare(self) -> bool:
        """
        Make sure the queue exists; returns True if it was created.

        Bindings are (re)written when the queue is new or the task asks for
        ``always_rebind``.
        """
        exchange = self.binding_exchange
        await self.ensure_schema()
        async with self._sessions()() as session:
            created = (
                await session.execute(
                    sql.DECLARE_QUEUE_SQL,
                    {'queue': self.queue_name, 'persistent': self.descriptor.persistent},
                )
            ).first() is not None
            if created or self.descriptor.always_rebind:
                await session.execute(
                    sql.DELETE_BINDINGS_SQL, {'queue': self.queue_name, 'exchange': exchange}
                )
                for pattern in sorted(self.descriptor.routing_keys):
                    await session.execute(
                        sql.INSERT_BINDING_SQL,
                        {'queue': self.queue_name, 'exchange': exchange, 'pattern': pattern},
                    )
            await session.commit()

        if created:
            self.logger.info(
                f'Declared queue {self.queue_name!r} bound to {exchange!r} '
                f'with {sorted(self.descriptor.routing_keys)}'
            )
        return created

    # ----------------- Publish -----------------

    async def _publish_rows(
        self,
        session: AsyncSession,
        exchange: str,
        routing_key: str,
        payload: bytes,
        content_type: str,
        headers: dict[str, Any],
    ) -> int:
        bindings = (await session.execute(sql.SELECT_BINDINGS_SQL, {'exchange': exchange})).all()
        queues = route(((row.queue_name, row.pattern) for row in bindings), routing_key)
        encoded_headers = json.dumps(headers)
        for queue in queues:
            await session.execute(
                sql.INSERT_MESSAGE_SQL,
                {
                    'queue': queue,
                    'exchange': exchange,
                    'routing_key': routing_key,
                    'payload': payload,
                    'content_type': content_type,
                    'headers': encoded_headers,
                },
            )
        return len(queues)

    async def publish(
        self,
        routing_key: str,
        payload: bytes,
        content_type: str = 'application/octet-stream',
        headers: Optional[dict[str, Any]] = None,
        *,
        exchange: Optional[str] = None,
    ) -> int:
        """Route a message to every bound queue; returns how many queues got it."""
        await self.ensure_schema()
        exchange = exchange or self.config.exchange
        async with self._sessions()() as session:
            count = await self._publish_rows(
                session, exchange, routing_key, payload, content_type, dict(headers or {})
            )
            await session.commit()
        if count == 0:
            self.logger.debug(f'No binding on {exchange!r} matched {routing_key!r}; message dropped')
        return count

    # ----------------- Claim and settle -----------------

    def _to_message(self, row: Row[Any]) -> Message:
        payload = bytes(row.payload)
        return Message(
            payload=payload,
            metadata=MessageMetadata(
                delivery_tag=int(row.id),
                routing_key=row.routing_key,
                content_type=row.content_type,
                redelivered=bool(row.redelivered),
                exchange=row.exchange,
                headers=dict(row.headers or {}),
                consumer_tag=self.consumer_tag,
                body_size=len(payload),
            ),
        )

    async def _claim(self, limit: Optional[int]) -> list[Message]:
        claim_sql = sql.CLAIM_SQL if self.descriptor.acknowledge else sql.CLAIM_AND_DELETE_SQL
        async with self._sessions()() as session:
            rows = (
                await session.execute(
                    claim_sql,
                    {'queue': self.queue_name, 'lim': limit, 'consumer_tag': self.consumer_tag},
                )
            ).all()
            await session.commit()
        return [self._to_message(row) for row in sorted(rows, key=lambda r: r.id)]

    async def _settle(self, delivery_tag: int, outcome: Outcome) -> None:
        if not self.descriptor.acknowledge:
            return  # removed at claim time
        params = {'id': delivery_tag, 'consumer_tag': self.consumer_tag}
        async with self._sessions()() as session:
            match outcome:
                case Outcome.ACK:
                    await session.execute(sql.ACK_SQL, params)
                case Outcome.REQUEUE:
                    await session.execute(sql.REQUEUE_SQL, params)
                case Outcome.DEAD_LETTER:
                    await self._dead_letter(session, params)
            await session.commit()
        self.logger.debug(f'Message {delivery_tag} settled: {outcome.value}')

    async def _dead_letter(self, session: AsyncSession, params: dict[str, Any]) -> None:
        row = (await session.execute(sql.TAKE_FOR_DEAD_LETTER_SQL, params)).first()
        if row is None:
            return
        dlx = self.config.dead_letter_exchange
        if dlx is None:
            self.logger.info(
                f'Message {params["id"]} rejected without requeue and dropped '
                '(no dead-letter exchange configured)'
            )
            return

        death = DeathRecord(
            reason='rejected',
            queue=row.queue_name,
            exchange=row.exchange,
            routing_keys=(row.routing_key,),
            time=datetime.now(timezone.utc),
        )
        headers = dict(row.headers or {})
        headers[X_DEATH] = [death.to_header(), *(headers.get(X_DEATH) or [])]
        routed = await self._publish_rows(
            session, dlx, row.routing_key, bytes(row.payload), row.content_type, headers
        )
        if routed == 0:
            self.logger.warning(
                f'Dead-letter exchange {dlx!r} has no binding for {row.routing_key!r}; '
                f'message {params["id"]} dropped'
            )

    async def _requeue_unacked(self) -> int:
        if not self.descriptor.acknowledge:
            return 0
        async with self._sessions()() as session:
            rows = (
                await session.execute(
                    sql.REQUEUE_ALL_UNACKED_SQL, {'consumer_tag': self.consumer_tag}
                )
            ).all()
            await session.commit()
        if rows:
            self.logger.info(f'Requeued {len(rows)} unacknowledged message(s)')
        return len(rows)

    # ----------------- Consumer registration -----------------

    async def _heartbeat(self, force: bool = False) -> None:
        now = time.monotonic()
        interval = self.config.consumer_ttl / 3
        if not force and self._last_heartbeat is not None and now - self._last_heartbeat < interval:
            return
        async with self._sessions()() as session:
            await session.execute(
                sql.UPSERT_CONSUMER_SQL,
                {
                    'consumer_tag': self.consumer_tag,
                    'queue': self.queue_name,
                    'hostname': socket.gethostname(),
                    'pid': os.getpid(),
                },
            )
            await session.commit()
        self._last_heartbeat = now

    async def _keep_alive(self) -> None:
        """
        Refresh the consumer heartbeat while a handler runs.

        A long handler would otherwise let the row go stale, and a sibling
        consumer closing down would see this queue as unused.
        """
        interval = self.config.consumer_ttl / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await self._heartbeat(force=True)
            except Exception as exc:
                self.logger.error(f'Heartbeat failed for {self.consumer_tag}: {exc}')

    async def _unregister(self) -> None:
        async with self._sessions()() as session:
            await session.execute(sql.DELETE_CONSUMER_SQL, {'consumer_tag': self.consumer_tag})
            deleted = None
            if not self.descriptor.persistent:
                deleted = (
                    await session.execute(
                        sql.DELETE_QUEUE_IF_UNUSED_SQL,
                        {'queue': self.queue_name, 'ttl': self.config.consumer_ttl},
                    )
                ).first()
            await session.commit()
        self._last_heartbeat = None
        if deleted is not None:
            self.logger.info(f'Queue {self.queue_name!r} deleted with its last consumer')

    # ----------------- Consume -----------------

    async def _wait_for_wakeup(
        self, notes: asyncio.Queue[Any], token: CancellationToken
    ) -> None:
        """Block until a NOTIFY, a stop request, or the poll interval."""
        get_task = asyncio.create_task(notes.get())
        stop_task = asyncio.create_task(token.wait_stop())
        try:
            await asyncio.wait(
                {get_task, stop_task},
                timeout=self.config.notify_poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (get_task, stop_task):
                task.cancel()
            await asyncio.gather(get_task, stop_task, return_exceptions=True)
        while not notes.empty():
            notes.get_nowait()

    async def _claim_with_retry(
        self, limit: Optional[int], token: CancellationToken
    ) -> list[Message]:
        """Claim, retrying transient database errors with back-off."""
        while not token.stop_requested:
            try:
                messages = await self._claim(limit)
                await self._heartbeat()
                self._backoff.reset()
                return messages
            except Exception as exc:
                if not is_retryable_connection_error(exc) or not self._backoff.can_retry():
                    raise
                delay = self._backoff.next_delay_seconds()
                self.logger.warning(
                    f'Transient database error while claiming ({exc}); '
                    f'retry {self._backoff.attempts} in {delay:.1f}s'
                )
                if await token.sleep(delay):
                    break
        return []

    async def _deliver(
        self, message: Message, handler: Handler, token: CancellationToken
    ) -> None:
        tag = message.metadata.delivery_tag
        handler_task = asyncio.create_task(handler(message.payload, message.metadata))
        halt_task = asyncio.create_task(token.wait_halt())
        keep_alive_task = asyncio.create_task(self._keep_alive())
        try:
            await asyncio.wait({handler_task, halt_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not handler_task.done():
                handler_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await handler_task
            for task in (halt_task, keep_alive_task):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if handler_task.cancelled():
            self.logger.warning(f'Message {tag} abandoned by halt, requeueing')
            await self._settle(tag, Outcome.REQUEUE)
            return

        exc = handler_task.exception()
        if exc is not None:
            self.logger.error(f'Handler raised for message {tag}: {exc}')
            await self._settle(tag, Outcome.DEAD_LETTER)
            return
        await self._settle(tag, outcome_for(handler_task.result()))

    async def wait_for_message(
        self,
        oneshot: bool,
        handler: Handler,
        cancellation: Optional[CancellationToken] = None,
    ) -> None:
        token = cancellation or CancellationToken()
        self._token = token
        limit = 1 if oneshot else (self.descriptor.effective_prefetch or None)

        await self.declare()
        await self._heartbeat(force=True)
        listener = self._get_listener()
        channel = queue_channel(self.queue_name)
        notes = await listener.listen(channel)
        buffer: deque[Message] = deque()
        mode = "oneshot" if oneshot else f"prefetch={limit or 'unlimited'}"
        self.logger.info(f'Consuming {self.queue_name!r} as {self.consumer_tag} ({mode})')
        try:
            while not token.stop_requested:
                if not buffer:
                    buffer.extend(await self._claim_with_retry(limit, token))
                    if not buffer:
                        if not token.stop_requested:
                            await self._wait_for_wakeup(notes, token)
                        continue
                await self._deliver(buffer.popleft(), handler, token)
                if oneshot:
                    break
        finally:
            self._token = None
            with contextlib.suppress(Exception):
                await listener.unsubscribe(channel, notes)
            try:
                await self._requeue_unacked()
                await self._unregister()
            except Exception as exc:
                if not is_retryable_connection_error(exc):
                    raise
                self.logger.error(f'Could not release consumer state: {exc}')
        self.logger.info(f'Stopped consuming {self.queue_name!r} ({token.mode.value if token.mode else "done"})')

    async def next(self) -> Optional[Job]:
        """Pull a single message, waiting until one is available.

        Returns None if the queue is shut down while waiting.
        """
        await self.declare()
        token = CancellationToken()
        self._token = token
        listener = self._get_listener()
        channel = queue_channel(self.queue_name)
        notes = await listener.listen(channel)
        try:
            while True:
                messages = await self._claim_with_retry(1, token)
                if messages:
                    return Job(messages[0], self._settle)
                if token.stop_requested:
                    return None
                await self._wait_for_wakeup(notes, token)
        finally:
            self._token = None
            with contextlib.suppress(Exception):
                await listener.unsubscribe(channel, notes)

    def shutdown(self) -> None:
        """Ask the active consumer to stop after its in-flight message."""
        if self._token is not None:
            self._token.request_stop()

    def halt(self) -> None:
        """Ask the active consumer to abandon delivery now."""
        if self._token is not None:
            self._token.request_halt()

    # ----------------- Metrics -----------------

    async def message_count(self) -> int:
        await self.ensure_schema()
        async with self._sessions()() as session:
            return int((await session.execute(sql.COUNT_READY_SQL, {'queue': self.queue_name})).scalar_one())

    async def consumer_count(self) -> int:
        await self.ensure_schema()
        async with self._sessions()() as session:
            return int(
                (
                    await session.execute(
                        sql.COUNT_CONSUMERS_SQL,
                        {'queue': self.queue_name, 'ttl': self.config.consumer_ttl},
                    )
                ).scalar_one()
            )

