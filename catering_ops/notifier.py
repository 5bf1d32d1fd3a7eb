"""
Toast surface for mutation outcomes. Fire-and-forget: callers never look at a
return value. Recent notifications are kept so the dashboard can poll them.
"""

import logging
from collections import deque
from datetime import UTC, datetime

from catering_ops.models import Notification

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, history: int = 100) -> None:
        self._history: deque[Notification] = deque(maxlen=history)

    def _push(self, level: str, title: str, description: str | None) -> None:
        self._history.append(
            Notification(
                level=level,
                title=title,
                description=description,
                created_at=datetime.now(UTC),
            )
        )

    def success(self, title: str, description: str | None = None) -> None:
        logger.info(f"✅ {title}" + (f": {description}" if description else ""))
        self._push("success", title, description)

    def error(self, title: str, description: str | None = None) -> None:
        logger.error(f"❌ {title}" + (f": {description}" if description else ""))
        self._push("error", title, description)

    def recent(self, limit: int | None = None) -> list[Notification]:
        items = list(reversed(self._history))
        return items if limit is None else items[:limit]

    def clear(self) -> None:
        self._history.clear()
