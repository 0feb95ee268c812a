import logging
import threading
from typing import Iterable

from res_indexer.core.types import Notification

logger = logging.getLogger(__name__)


class NotificationEmitter:
    """Best-effort forwarding of derived notifications to the store.

    Failures are logged and swallowed: a notification problem must never undo
    or abort the ingestion of the event that produced it.
    """

    def __init__(self, store):
        self._store = store
        self._lock = threading.Lock()
        self.emitted = 0
        self.duplicates = 0
        self.failed = 0

    def emit(self, notification: Notification) -> bool:
        try:
            created = self._store.enqueue_notification(notification)
        except Exception as exc:
            with self._lock:
                self.failed += 1
            logger.warning(
                "Dropping %s notification for %s:%s: %s",
                notification.type, notification.transaction_hash, notification.log_index, exc,
            )
            return False
        with self._lock:
            if created is False:
                self.duplicates += 1
                return False
            self.emitted += 1
        return True

    def emit_all(self, notifications: Iterable[Notification]) -> int:
        return sum(1 for n in notifications if self.emit(n))
