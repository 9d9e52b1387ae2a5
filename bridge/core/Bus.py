from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Set

from shared.log import get_logger

logger = get_logger(__name__)

BusCallback = Callable[[str], Optional[Awaitable[None]]]


class Bus:
    """Publish/subscribe capability the bridge is wired to.

    Channels carry plain string payloads.
    """

    def publish(self, channel: str, payload: str) -> None:  # pragma: no cover
        raise NotImplementedError

    def subscribe(self, channel: str, callback: BusCallback) -> None:  # pragma: no cover
        raise NotImplementedError

    def unsubscribe(self, channel: str, callback: BusCallback) -> None:  # pragma: no cover
        raise NotImplementedError


class LocalBus(Bus):
    """In-process bus: publish() invokes every subscriber of the channel directly.

    Coroutine callbacks are scheduled on the running loop. A failing subscriber
    is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[BusCallback]] = {}
        self._background_tasks: Set[asyncio.Task] = set()

    def subscribe(self, channel: str, callback: BusCallback) -> None:
        self._subscribers.setdefault(channel, []).append(callback)
        logger.debug("Subscribed %s to %s", getattr(callback, "__qualname__", callback), channel)

    def unsubscribe(self, channel: str, callback: BusCallback) -> None:
        callbacks = self._subscribers.get(channel, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self._subscribers.pop(channel, None)

    def subscribers(self, channel: str) -> List[BusCallback]:
        return list(self._subscribers.get(channel, []))

    def publish(self, channel: str, payload: str) -> None:
        for callback in self.subscribers(channel):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    self._track(asyncio.ensure_future(result))
            except Exception as e:
                logger.error("Subscriber on %s failed: %s", channel, e, exc_info=True)

    def _track(self, task: asyncio.Future) -> None:
        self._background_tasks.add(task)

        def _done(_task: asyncio.Future) -> None:
            self._background_tasks.discard(_task)
            if not _task.cancelled() and _task.exception() is not None:
                logger.error("Async subscriber failed: %s", _task.exception())

        task.add_done_callback(_done)
