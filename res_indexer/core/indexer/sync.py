"""
Sync manager: owns the cursor and the ingestion lifecycle.

Startup connects the source, bootstraps the cursor and, when the indexer has
fallen far behind, runs a one-shot catch-up scan. After that a ticking thread
scans ``(cursor, head]`` every ``sync_interval_ms`` and real-time
subscriptions feed a queue drained by a single consumer thread.
"""
from __future__ import annotations

import logging
import queue
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from res_indexer.core.config import IndexerConfig
from res_indexer.core.errors import SourceError, SyncBusyError
from res_indexer.core.indexer.notifier import NotificationEmitter
from res_indexer.core.indexer.scanner import BatchScanner, ScanReport
from res_indexer.core.types import RawEvent

logger = logging.getLogger(__name__)

_STOP = object()


class SyncState(Enum):
    IDLE = "idle"
    CATCHING_UP = "catching_up"
    TICKING = "ticking"


class SyncManager:
    def __init__(
        self,
        source,
        store,
        config: IndexerConfig,
        scanner: Optional[BatchScanner] = None,
        emitter: Optional[NotificationEmitter] = None,
    ):
        self.source = source
        self.store = store
        self.config = config
        self.emitter = emitter or NotificationEmitter(store)
        self.scanner = scanner or BatchScanner(source, store, config, emitter=self.emitter)

        self._state = SyncState.IDLE
        self._sync_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ticker: Optional[threading.Thread] = None
        self._consumer: Optional[threading.Thread] = None
        self._deliveries: "queue.Queue[Any]" = queue.Queue()
        self._initialized = False

    @property
    def state(self) -> SyncState:
        return self._state

    # ---------------- Lifecycle ----------------
    def initialize(self) -> None:
        """Connect the source and make sure the cursor row exists.

        Connection errors propagate; nothing is started when this fails.
        """
        if self._initialized:
            return
        self.source.connect()
        cursor = self.store.ensure_cursor(self.config.start_block)
        self._initialized = True
        logger.info("Indexer initialised; last synced block %d", cursor.last_synced_block)

    def start(self, progress: bool = False) -> None:
        self.initialize()
        self._stop_event.clear()
        try:
            self.initial_sync(progress=progress)
        except SourceError as exc:
            # ticking resumes from the cursor
            logger.error("Catch-up sync failed: %s", exc)
        self.start_periodic_sync()
        if self.config.enable_realtime_sync:
            self.start_realtime()
        logger.info("Indexer started")

    def initial_sync(self, progress: bool = False) -> Optional[ScanReport]:
        """Catch up in one scan when the cursor lags the head by more than the threshold.

        Returns None when nothing was scanned, either because the indexer is
        close enough to the head or because another sync holds the guard.
        """
        self.initialize()
        with self._single_flight(SyncState.CATCHING_UP) as acquired:
            if not acquired:
                logger.info("Sync already in progress, skipping catch-up")
                return None
            cursor = self.store.get_cursor().last_synced_block
            head = self.source.head_block()
            behind = head - cursor
            if behind <= self.config.catch_up_threshold_blocks:
                logger.info("Indexer is up to date (%d blocks behind)", max(behind, 0))
                return None

            logger.info("Catching up %d blocks (%d -> %d)", behind, cursor + 1, head)
            report = self.scanner.scan(cursor + 1, head, progress=progress)
            self._commit(report, head)
        return report

    def backfill(self, from_block: int, to_block: int, progress: bool = True) -> ScanReport:
        """Re-scan an explicit range; the cursor is only moved when the range reaches past it."""
        self.initialize()
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} is after to_block {to_block}")
        with self._single_flight(SyncState.CATCHING_UP) as acquired:
            if not acquired:
                raise SyncBusyError("Sync already in progress")
            report = self.scanner.scan(from_block, to_block, progress=progress)
            cursor = self.store.get_cursor().last_synced_block
            if from_block <= cursor + 1:
                self._commit(report, to_block)
        return report

    @contextmanager
    def _single_flight(self, state: SyncState) -> Iterator[bool]:
        """Hold the sync guard for one scan. Yields False when another scan owns it."""
        if not self._sync_lock.acquire(blocking=False):
            yield False
            return
        try:
            self._state = state
            self.store.set_syncing(True)
            yield True
        finally:
            self._state = SyncState.IDLE
            try:
                self.store.set_syncing(False)
            except Exception:
                logger.exception("Failed to clear syncing flag")
            self._sync_lock.release()

    def _commit(self, report: ScanReport, block_number: int) -> None:
        if not report.ok:
            logger.warning(
                "Cursor kept at previous position; failed windows: %s", report.failed_windows()
            )
            return
        cursor = self.store.set_cursor(block_number)
        logger.info("Cursor advanced to block %d", cursor.last_synced_block)

    # ---------------- Periodic sync ----------------
    def run_sync(self) -> bool:
        """One tick: scan ``(cursor, head]``. Returns False when a scan is already running."""
        try:
            with self._single_flight(SyncState.TICKING) as acquired:
                if not acquired:
                    logger.debug("Sync already in progress, skipping tick")
                    return False
                cursor = self.store.get_cursor().last_synced_block
                head = self.source.head_block()
                if head <= cursor:
                    logger.debug("No new blocks (cursor %d, head %d)", cursor, head)
                    return True
                report = self.scanner.scan(cursor + 1, head)
                self._commit(report, head)
        except Exception:
            logger.exception("Sync tick failed")
        return True

    def start_periodic_sync(self) -> None:
        if self._ticker is not None and self._ticker.is_alive():
            return
        self._ticker = threading.Thread(target=self._tick_loop, name="sync-ticker", daemon=True)
        self._ticker.start()
        logger.info("Periodic sync every %.1fs", self.config.sync_interval)

    def _tick_loop(self) -> None:
        self.run_sync()
        while not self._stop_event.wait(self.config.sync_interval):
            self.run_sync()

    # ---------------- Real-time ----------------
    def start_realtime(self) -> None:
        if self._consumer is None or not self._consumer.is_alive():
            self._consumer = threading.Thread(target=self._consume, name="realtime-consumer", daemon=True)
            self._consumer.start()
        subscribed = set(self.source.subscribed_kinds())
        for kind in self.scanner.kinds:
            if kind not in subscribed:
                self.source.subscribe(kind, self._deliver)
        logger.info("Real-time listeners registered for %d event kinds", len(self.scanner.kinds))

    def _deliver(self, event: RawEvent) -> None:
        self._deliveries.put(event)

    def _consume(self) -> None:
        while True:
            item = self._deliveries.get()
            try:
                if item is _STOP:
                    return
                self.scanner.ingest(item.kind, [item])
            except Exception:
                logger.exception("Failed to ingest real-time %s event %s", item.kind, item.key)
            finally:
                self._deliveries.task_done()

    # ---------------- Shutdown / status ----------------
    def stop(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        """Stop ticking and listening. An in-flight scan is allowed to finish."""
        self._stop_event.set()
        self.source.unsubscribe_all()
        consumer, ticker = self._consumer, self._ticker
        if consumer is not None:
            self._deliveries.put(_STOP)
        if wait:
            for thread in (consumer, ticker):
                if thread is not None and thread is not threading.current_thread():
                    thread.join(timeout)
        self._consumer = None
        self._ticker = None
        self._state = SyncState.IDLE
        logger.info("Indexer stopped")

    def sync_progress(self) -> Dict[str, Any]:
        cursor = self.store.get_cursor()
        head = self.source.head_block()
        behind = max(head - cursor.last_synced_block, 0)
        percent = 100.0 if head <= 0 else min(cursor.last_synced_block / head * 100, 100.0)
        return {
            "last_synced_block": cursor.last_synced_block,
            "current_block": head,
            "blocks_behind": behind,
            "progress_percent": round(percent, 2),
            "is_syncing": cursor.is_syncing,
            "last_sync_timestamp": cursor.last_sync_timestamp,
            "state": self._state.value,
        }
