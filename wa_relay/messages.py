import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DIRECTION_IN = "in"
DIRECTION_OUT = "out"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class MessageRecord:
    id: str
    direction: str
    peer: str
    text: str
    content_type: str = "text"
    timestamp: int = field(default_factory=_now_ms)
    sender_display_name: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction,
            "peer": self.peer,
            "text": self.text,
            "contentType": self.content_type,
            "timestamp": self.timestamp,
            "senderDisplayName": self.sender_display_name,
            "fromMe": self.direction == DIRECTION_OUT,
        }


class MessageLog:
    """
    Fixed-capacity ring of recent message summaries, newest first.
    """

    def __init__(self, capacity: int = 200):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._items: "deque[MessageRecord]" = deque(maxlen=capacity)

    def append(self, record: MessageRecord):
        # appendleft on a bounded deque drops the oldest entry from the right
        self._items.appendleft(record)

    def snapshot(self, limit: Optional[int] = None, offset: int = 0) -> List[MessageRecord]:
        offset = max(0, int(offset or 0))
        items = list(self._items)
        if limit is None:
            return items[offset:]
        return items[offset:offset + max(0, int(limit))]

    @property
    def total(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)
