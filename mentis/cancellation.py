"""Cooperative per-turn cancellation.

A :class:`CancellationToken` is a one-way flag created fresh for every turn.
Anything may flip it; the agent loop only looks at it between iterations and
before starting a tool, so work already in flight always finishes.

Signals come from *producers*: async callables that wait for some external
event (an escape key, a deadline) and then cancel the token they were handed.
:class:`CancellationController` owns the producers, starts them for the
duration of a turn and stops them again whatever way the turn ends.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from mentis.exceptions import TurnCancelledError
from mentis.logging import get_logger

log = get_logger(__name__)

CancellationProducer = Callable[["CancellationToken"], Awaitable[None]]


class CancellationToken:
    """One-shot cancellation flag for a single turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> None:
        """Flip the flag. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        log.info("Turn cancellation requested", reason=reason)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TurnCancelledError()


def timeout_producer(seconds: float) -> CancellationProducer:
    """Build a producer that cancels the turn after ``seconds``."""

    async def _produce(token: CancellationToken) -> None:
        await asyncio.sleep(max(0.0, float(seconds)))
        token.cancel(f"timeout after {seconds}s")

    return _produce


class CancellationController:
    """Creates turn tokens and runs interrupt producers while a turn is active."""

    def __init__(self, producers: list[CancellationProducer] | None = None):
        self._producers: list[CancellationProducer] = list(producers or [])
        self._tasks: list[asyncio.Task[None]] = []
        self._current: CancellationToken | None = None

    @property
    def current(self) -> CancellationToken | None:
        return self._current

    def add_producer(self, producer: CancellationProducer) -> None:
        self._producers.append(producer)

    def remove_producer(self, producer: CancellationProducer) -> None:
        if producer in self._producers:
            self._producers.remove(producer)

    def new_turn(self) -> CancellationToken:
        """Create the token for the next turn."""
        self._current = CancellationToken()
        return self._current

    def cancel(self, reason: str = "user") -> None:
        """Cancel the active turn, if any."""
        if self._current is not None:
            self._current.cancel(reason)

    def cancel_after(self, token: CancellationToken, seconds: float) -> asyncio.Task[None]:
        """Schedule a one-off timeout producer for ``token``."""
        return asyncio.create_task(timeout_producer(seconds)(token))

    def _start(self, token: CancellationToken) -> None:
        for producer in self._producers:
            self._tasks.append(asyncio.create_task(self._run_producer(producer, token)))

    @staticmethod
    async def _run_producer(producer: CancellationProducer, token: CancellationToken) -> None:
        try:
            await producer(token)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Cancellation producer failed", error=str(e))

    async def _stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @asynccontextmanager
    async def observe(self, token: CancellationToken) -> AsyncIterator[CancellationToken]:
        """Run producers against ``token`` for the lifetime of the block."""
        self._current = token
        self._start(token)
        try:
            yield token
        finally:
            await self._stop()

    @asynccontextmanager
    async def paused(self) -> AsyncIterator[None]:
        """Stop producers temporarily, e.g. while the terminal is prompting."""
        was_active = bool(self._tasks)
        await self._stop()
        try:
            yield
        finally:
            if was_active and self._current is not None and not self._current.cancelled:
                self._start(self._current)
