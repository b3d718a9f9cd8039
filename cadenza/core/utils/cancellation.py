"""Cooperative cancellation between the signal unit and the consume loop."""

from __future__ import annotations

import asyncio
from enum import Enum


class StopMode(str, Enum):
    GRACEFUL = 'graceful'
    IMMEDIATE = 'immediate'


class CancellationToken:
    """
    Two-level stop request delivered into a consume loop.

    ``request_stop`` asks the consumer to finish the in-flight message and
    stop fetching; ``request_halt`` asks it to abandon delivery right away.
    A halt implies a stop, and so does ``request_restart``. Requests are
    sticky for the lifetime of the token, so every subscription pass gets a
    fresh token.
    """

    def __init__(self) -> None:
        self._stop = asyncio.Event()
        self._halt = asyncio.Event()
        self._restart = False

    def request_stop(self) -> None:
        self._stop.set()

    def request_restart(self) -> None:
        """Graceful stop, after which the owner should subscribe again."""
        self._restart = True
        self._stop.set()

    def request_halt(self) -> None:
        self._halt.set()
        self._stop.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def restart_requested(self) -> bool:
        return self._restart

    @property
    def halt_requested(self) -> bool:
        return self._halt.is_set()

    @property
    def mode(self) -> StopMode | None:
        if self._halt.is_set():
            return StopMode.IMMEDIATE
        if self._stop.is_set():
            return StopMode.GRACEFUL
        return None

    async def wait_stop(self) -> None:
        await self._stop.wait()

    async def wait_halt(self) -> None:
        await self._halt.wait()

    async def sleep(self, delay_seconds: float) -> bool:
        """Sleep up to ``delay_seconds``; returns True if a stop cut it short."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay_seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def __repr__(self) -> str:
        return f'CancellationToken(mode={self.mode})'
