import logging
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Awaitable, List, Optional, TypeVar

from pydantic import BaseModel, Field

from .config import NOTIFICATION_HISTORY
from .errors import ConsoleError

logger = logging.getLogger("ambulance_console")

T = TypeVar("T")


class Level(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class Notification(BaseModel):
    level: Level
    title: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Notifier:
    """Transient success/error notices, newest last, bounded."""

    def __init__(self, limit: int = NOTIFICATION_HISTORY):
        self._items = deque(maxlen=limit)

    def _push(self, level: Level, title: str, description: Optional[str]) -> Notification:
        note = Notification(level=level, title=title, description=description)
        self._items.append(note)
        log = logger.error if level == Level.ERROR else logger.info
        log(f"[{level.value}] {title}" + (f": {description}" if description else ""))
        return note

    def success(self, title: str, description: Optional[str] = None) -> Notification:
        return self._push(Level.SUCCESS, title, description)

    def error(self, title: str, description: Optional[str] = None) -> Notification:
        return self._push(Level.ERROR, title, description)

    def info(self, title: str, description: Optional[str] = None) -> Notification:
        return self._push(Level.INFO, title, description)

    def recent(self) -> List[Notification]:
        return list(self._items)

    def dismiss_all(self) -> None:
        self._items.clear()

    async def track(self, action: Awaitable[T], success: str, failure: str,
                    description: Optional[str] = None) -> T:
        """Await a user-triggered mutation and report how it went. Failures are re-raised."""
        try:
            result = await action
        except ConsoleError as e:
            self.error(failure, e.message or "Unknown error")
            raise
        self.success(success, description)
        return result
