"""Typed one-way notification channels between components."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Channel(Generic[T]):
    """
    Callback registry for one notification kind.

    Subscribers are called in registration order. Plain callables run inline; coroutine
    callables are scheduled as tasks in publish order so a slow consumer never blocks
    the publisher.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], Any]] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def subscribe(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: Callable[[T], Any]) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def clear(self) -> None:
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, payload: T) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(payload)
            except Exception:
                logger.exception("CHANNEL_SUBSCRIBER_FAILED channel=%s", self.name)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("CHANNEL_SUBSCRIBER_FAILED channel=%s err=%s", self.name, exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait until every scheduled async subscriber has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
