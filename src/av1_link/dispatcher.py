"""Single event loop consumer for signaling messages, user intents and stats ticks."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from .errors import CallError
from .session import CallSession
from .signaling import SignalingMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SignalingEvent:
    message: SignalingMessage


@dataclass(frozen=True, slots=True)
class UserIntent:
    """A user action plus the future that receives its outcome."""

    name: str
    action: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]


@dataclass(frozen=True, slots=True)
class StatsTick:
    pass


Event = Union[SignalingEvent, UserIntent, StatsTick]


class EventDispatcher:
    """Feed every event through one queue so the session never runs re-entrantly."""

    def __init__(self, session: CallSession, *, stats_interval: float | None = None) -> None:
        self._session = session
        self._stats_interval = stats_interval or session.sampler.interval
        self._queue: asyncio.Queue[Event] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._ticker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        loop = asyncio.get_running_loop()
        self._worker = loop.create_task(self._run())
        self._ticker = loop.create_task(self._tick())

    async def stop(self) -> None:
        tasks = [task for task in (self._ticker, self._worker) if task is not None]
        self._ticker = None
        self._worker = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._queue is not None:
            while not self._queue.empty():
                event = self._queue.get_nowait()
                if isinstance(event, UserIntent) and not event.future.done():
                    event.future.cancel()
        self._queue = None

    def _require_queue(self) -> asyncio.Queue[Event]:
        if self._queue is None:
            raise RuntimeError("Event dispatcher is not running")
        return self._queue

    async def on_signaling_message(self, message: SignalingMessage) -> None:
        await self._require_queue().put(SignalingEvent(message))

    async def request(self, name: str, action: Callable[[], Awaitable[Any]]) -> Any:
        """Queue *action* behind pending events and return its result."""

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        await self._require_queue().put(UserIntent(name=name, action=action, future=future))
        return await future

    def post_stats_tick(self) -> None:
        queue = self._queue
        if queue is not None:
            queue.put_nowait(StatsTick())

    async def _run(self) -> None:
        queue = self._require_queue()
        while True:
            event = await queue.get()
            try:
                await self._handle(event)
            finally:
                queue.task_done()

    async def _handle(self, event: Event) -> None:
        if isinstance(event, UserIntent):
            if event.future.cancelled():
                return
            try:
                result = await event.action()
            except Exception as exc:
                if not event.future.done():
                    event.future.set_exception(exc)
            else:
                if not event.future.done():
                    event.future.set_result(result)
        elif isinstance(event, SignalingEvent):
            try:
                await self._session.handle_message(event.message)
            except CallError as exc:
                logger.warning("Failed to handle %s message: %s", event.message.type, exc)
            except Exception:
                logger.exception("Unexpected error handling %s message", event.message.type)
        elif isinstance(event, StatsTick):
            await self._session.sample_stats()

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._stats_interval)
            if self._session.has_peer:
                self.post_stats_tick()


__all__ = ["EventDispatcher", "SignalingEvent", "StatsTick", "UserIntent"]
