"""
forrent/core/viewport.py
Viewport proximity observer for infinite-scroll prefetching.

Scroll positions are pushed in with report(). Each subscription debounces
independently (last event wins) and fires its callback once the viewport's
bottom edge is within `threshold_px` of the document end. A Subscription is
a context manager (sync and async) so unsubscribe happens on every exit path.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from forrent.core.config import PREFETCH_DISTANCE_PX, SCROLL_DEBOUNCE_S

log = logging.getLogger("viewport")


@dataclass(frozen=True)
class ViewportMetrics:
    scroll_y:        float
    viewport_height: float
    document_height: float


class Subscription:
    def __init__(self, observer: "ViewportObserver", callback: Callable[[], Any]):
        self._observer = observer
        self._callback = callback
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self.active = True

    def _schedule(self, metrics: ViewportMetrics) -> None:
        if not self.active:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._observer.debounce_s, self._fire, metrics)

    def _fire(self, metrics: ViewportMetrics) -> None:
        self._timer = None
        if not self.active or not self._observer.is_near_bottom(metrics):
            return
        result = self._callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._observer._unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.cancel()


class ViewportObserver:
    def __init__(self, threshold_px: float = PREFETCH_DISTANCE_PX, debounce_s: float = SCROLL_DEBOUNCE_S):
        self.threshold_px = threshold_px
        self.debounce_s   = debounce_s
        self._subs: list[Subscription] = []

    def is_near_bottom(self, m: ViewportMetrics) -> bool:
        return m.scroll_y + m.viewport_height > m.document_height - self.threshold_px

    def subscribe(self, callback: Callable[[], Any]) -> Subscription:
        sub = Subscription(self, callback)
        self._subs.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subs:
            self._subs.remove(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def report(self, scroll_y: float, viewport_height: float, document_height: float) -> None:
        metrics = ViewportMetrics(scroll_y, viewport_height, document_height)
        for sub in list(self._subs):
            sub._schedule(metrics)
