"""In-memory diagnostic log buffer, exportable as a text file."""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import List


class RingBufferHandler(logging.Handler):
    """Keeps the newest `capacity` formatted log lines."""

    def __init__(self, capacity: int = 200, level: int = logging.DEBUG):
        super().__init__(level)
        self.capacity = capacity
        self._entries = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
            self._entries.append(f"[{timestamp}] [{record.levelname}] {record.getMessage()}")
        except Exception:
            self.handleError(record)

    def entries(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def export_text(self) -> str:
        return "\n".join(self._entries)

    @staticmethod
    def export_filename() -> str:
        stamp = datetime.now(timezone.utc).isoformat().replace(":", "-").replace(".", "-")
        return f"iig-logs-{stamp}.txt"
