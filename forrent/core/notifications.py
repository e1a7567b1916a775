"""
forrent/core/notifications.py
User-facing notifications ("toasts").
Services push here only for foreground failures; background work logs instead.
The most recent notices are kept for the UI to drain.
"""

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass

log = logging.getLogger("notifications")


@dataclass
class Notice:
    level:       str
    title:       str
    description: str
    ts:          float


class Notifier:
    def __init__(self, maxlen: int = 50):
        self._notices: deque[Notice] = deque(maxlen=maxlen)

    def _push(self, level: str, title: str, description: str) -> Notice:
        notice = Notice(level, title, description, time.time())
        self._notices.append(notice)
        return notice

    def error(self, title: str, description: str = "") -> Notice:
        log.warning(f"User notified: {title} {description}".rstrip())
        return self._push("error", title, description)

    def recent(self) -> list[dict]:
        return [asdict(n) for n in self._notices]

    def drain(self) -> list[dict]:
        out = self.recent()
        self._notices.clear()
        return out

    def __len__(self) -> int:
        return len(self._notices)
