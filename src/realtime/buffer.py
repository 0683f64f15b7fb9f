"""Thread-safe buffer for items pushed between poll cycles."""

import logging
import threading

from src.ingestion.schemas import IngestItem
from src.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

# Overflow is logged on the first drop and then once per this many drops
DROP_LOG_EVERY = 100


class ItemBuffer:
    """
    Holds items received by a listener until the next poll drains them.

    Appends may come from the webhook handler while a poll is draining,
    so every access goes through a lock. When full, the oldest item is
    dropped and counted in ``ingest_buffer_dropped_total``.
    """

    def __init__(self, max_items: int = 10_000, adapter_type: str = "unknown"):
        self._items: list[IngestItem] = []
        self._lock = threading.Lock()
        self._max_items = max_items
        self.adapter_type = adapter_type
        self.dropped = 0

    def append(self, item: IngestItem) -> None:
        with self._lock:
            if len(self._items) >= self._max_items:
                dropped = self._items.pop(0)
                self.dropped += 1
                get_metrics().record_buffer_drop(self.adapter_type)
                if self.dropped == 1 or self.dropped % DROP_LOG_EVERY == 0:
                    logger.warning(
                        f"{self.adapter_type} buffer full ({self._max_items} items), "
                        f"dropped oldest item {dropped.id} ({self.dropped} dropped so far)"
                    )
            self._items.append(item)

    def extend(self, items: list[IngestItem]) -> None:
        for item in items:
            self.append(item)

    def drain(self) -> list[IngestItem]:
        """Return every buffered item and empty the buffer."""
        with self._lock:
            items, self._items = self._items, []
        return items

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
