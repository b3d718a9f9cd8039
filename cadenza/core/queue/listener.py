"""
PostgreSQL LISTEN/NOTIFY fan-out for queue wake-ups.

Flow:
  1. publish: INSERT into cadenza_messages -> trigger -> NOTIFY cadenza_queue_<queue>
  2. requeue: UPDATE status back to 'ready' -> same NOTIFY
  3. consumers wait on their queue's channel, with a polling fallback for
     notifications lost while the listener was reconnecting
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from asyncio import Queue, Task
from typing import DefaultDict, Optional, Set

import psycopg
from psycopg import AsyncConnection, InterfaceError, Notify, OperationalError
from psycopg import sql

from cadenza.core.logging import get_logger

logger = get_logger('listener')

_SUBSCRIBER_QUEUE_MAXSIZE: int = 4096


def queue_channel(queue_name: str) -> str:
    """Notification channel the message trigger uses for ``queue_name``."""
    return f'cadenza_queue_{queue_name}'


class PostgresListener:
    """
    A single autocommit connection consuming ``conn.notifies()`` and copying
    each notification into every subscriber queue for its channel.

    Usage:
    ------
    listener = PostgresListener(psycopg_url)
    q = await listener.listen('cadenza_queue_audit')
    note = await q.get()
    await listener.unsubscribe('cadenza_queue_audit', q)
    await listener.close()

    Notes:
    ------
    * put_nowait() drops notifications for a full subscriber queue; consumers
      poll on a timer anyway, so a dropped wake-up only costs latency
    * on disconnect the dispatcher reconnects with capped back-off and
      re-issues LISTEN for every tracked channel
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._conn: Optional[AsyncConnection] = None
        self._listen_channels: Set[str] = set()
        self._subs: DefaultDict[str, Set[Queue[Notify]]] = defaultdict(set)
        self._dispatcher_task: Optional[Task[None]] = None
        self._lock = asyncio.Lock()

    async def _ensure_connection(self) -> AsyncConnection:
        if self._conn is None or self._conn.closed:
            self._conn = await psycopg.AsyncConnection.connect(
                self.database_url,
                autocommit=True,
            )
            for channel in self._listen_channels:
                await self._conn.execute(sql.SQL('LISTEN {}').format(sql.Identifier(channel)))
        return self._conn

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None and not conn.closed:
            with contextlib.suppress(OperationalError, InterfaceError, OSError):
                await conn.close()

    async def _pause_dispatcher(self) -> bool:
        if self._dispatcher_task is None:
            return False
        self._dispatcher_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._dispatcher_task
        self._dispatcher_task = None
        return True

    def _start_dispatcher(self) -> None:
        if self._dispatcher_task is None:
            self._dispatcher_task = asyncio.create_task(
                self._dispatcher(), name='cadenza-listener-dispatcher'
            )

    async def _dispatcher(self) -> None:
        backoff = 0.2
        while True:
            try:
                conn = await self._ensure_connection()
                async for notification in conn.notifies():
                    backoff = 0.2
                    for q in list(self._subs.get(notification.channel, ())):
                        with contextlib.suppress(asyncio.QueueFull):
                            q.put_nowait(notification)
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError, OSError) as exc:
                logger.warning(f'Listener connection lost ({exc}), reconnecting in {backoff:.1f}s')
                await self._close_connection()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 5.0)

    async def listen(self, channel_name: str) -> Queue[Notify]:
        """Subscribe to ``channel_name``; LISTEN is issued once per channel."""
        async with self._lock:
            if channel_name not in self._listen_channels:
                was_running = await self._pause_dispatcher()
                try:
                    conn = await self._ensure_connection()
                    await conn.execute(
                        sql.SQL('LISTEN {}').format(sql.Identifier(channel_name))
                    )
                    self._listen_channels.add(channel_name)
                finally:
                    if was_running:
                        self._start_dispatcher()
                self._start_dispatcher()

            q: Queue[Notify] = asyncio.Queue(maxsize=_SUBSCRIBER_QUEUE_MAXSIZE)
            self._subs[channel_name].add(q)
            return q

    async def unsubscribe(self, channel_name: str, q: Queue[Notify]) -> None:
        """Drop a subscriber; the last one for a channel also issues UNLISTEN."""
        async with self._lock:
            subs = self._subs.get(channel_name)
            if subs is not None:
                subs.discard(q)
                if subs:
                    return
                self._subs.pop(channel_name, None)
            if channel_name not in self._listen_channels:
                return
            self._listen_channels.discard(channel_name)
            if self._conn is not None and not self._conn.closed:
                was_running = await self._pause_dispatcher()
                try:
                    await self._conn.execute(
                        sql.SQL('UNLISTEN {}').format(sql.Identifier(channel_name))
                    )
                finally:
                    if was_running and self._listen_channels:
                        self._start_dispatcher()

    async def close(self) -> None:
        """Stop the dispatcher and close the connection. Safe to call twice."""
        await self._pause_dispatcher()
        await self._close_connection()
        self._subs.clear()
        self._listen_channels.clear()
