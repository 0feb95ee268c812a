"""
Batch scanner: windowed historical ingestion.

A block range is cut into consecutive windows of at most ``batch_size``
blocks. Inside a window every event kind is fetched and transformed
concurrently on a bounded thread pool; the window completes once every kind
has settled. One kind failing never cancels the others, and the scanner
always moves on to the next window after pausing ``batch_delay_ms`` to stay
under provider rate limits.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from res_indexer.core.config import IndexerConfig
from res_indexer.core.errors import IndexerError, MalformedEventError
from res_indexer.core.indexer.extractors import EXTRACTORS, Extraction, ExtractorSettings
from res_indexer.core.indexer.notifier import NotificationEmitter
from res_indexer.core.types import EventKind, RawEvent
from res_indexer.core.utils import iter_windows, unique_ordered

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    inserted: int = 0
    skipped: int = 0
    notified: int = 0


@dataclass
class KindFailure:
    kind: EventKind
    from_block: int
    to_block: int
    error: str


@dataclass
class ScanReport:
    from_block: int
    to_block: int
    windows: List[Tuple[int, int]] = field(default_factory=list)
    inserted: Dict[EventKind, int] = field(default_factory=lambda: defaultdict(int))
    skipped: int = 0
    notified: int = 0
    failures: List[KindFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def total_inserted(self) -> int:
        return sum(self.inserted.values())

    def failed_windows(self) -> List[Tuple[int, int]]:
        return unique_ordered((f.from_block, f.to_block) for f in self.failures)


class BatchScanner:
    def __init__(
        self,
        source,
        store,
        config: IndexerConfig,
        emitter: Optional[NotificationEmitter] = None,
        kinds: Optional[Sequence[EventKind]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.source = source
        self.store = store
        self.config = config
        self.emitter = emitter or NotificationEmitter(store)
        self.kinds: List[EventKind] = list(kinds) if kinds is not None else list(EXTRACTORS)
        self.settings = ExtractorSettings.from_config(config)
        self._sleep = sleep

    # ---------------- Range scanning ----------------
    def scan(self, from_block: int, to_block: int, progress: bool = False) -> ScanReport:
        """Ingest every tracked kind over ``[from_block, to_block]``, window by window."""
        report = ScanReport(from_block=from_block, to_block=to_block)
        if from_block > to_block or not self.kinds:
            return report

        windows = list(iter_windows(from_block, to_block, self.config.batch_size))
        logger.info(
            "Syncing events from block %d to %d (%d windows)", from_block, to_block, len(windows)
        )
        workers = max(1, min(self.config.max_workers, len(self.kinds)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan") as executor:
            bar = tqdm(windows, desc="Scanning", unit="window", disable=not progress)
            for idx, (a, b) in enumerate(bar):
                logger.info("Processing window: %d -> %d", a, b)
                self._scan_window(executor, a, b, report)
                report.windows.append((a, b))
                if idx < len(windows) - 1 and self.config.batch_delay > 0:
                    self._sleep(self.config.batch_delay)

        if report.ok:
            logger.info(
                "Historical sync completed: %d -> %d (%d new records)",
                from_block, to_block, report.total_inserted,
            )
        else:
            logger.warning(
                "Historical sync %d -> %d finished with %d failed kind/window pairs",
                from_block, to_block, len(report.failures),
            )
        return report

    def _scan_window(self, executor: ThreadPoolExecutor, a: int, b: int, report: ScanReport) -> None:
        futures = {executor.submit(self._scan_kind, kind, a, b): kind for kind in self.kinds}
        for fut in as_completed(futures):
            kind = futures[fut]
            try:
                result = fut.result()
            except IndexerError as exc:
                logger.error("Error fetching %s events in %d-%d: %s", kind, a, b, exc)
                report.failures.append(KindFailure(kind, a, b, str(exc)))
                continue
            except Exception as exc:
                logger.exception("Unexpected error processing %s events in %d-%d", kind, a, b)
                report.failures.append(KindFailure(kind, a, b, str(exc)))
                continue
            report.inserted[kind] += result.inserted
            report.skipped += result.skipped
            report.notified += result.notified

    def _scan_kind(self, kind: EventKind, a: int, b: int) -> IngestResult:
        events = self.source.query_events(kind, a, b)
        if not events:
            return IngestResult()
        logger.info("Found %d %s events", len(events), kind)
        return self.ingest(kind, events)

    # ---------------- Shared ingestion path ----------------
    def ingest(self, kind: EventKind, raw_events: Sequence[RawEvent]) -> IngestResult:
        """Extract, persist and notify for one batch of ``kind`` events.

        Used by both the windowed scan and the real-time consumer. Source and
        store errors propagate; malformed events are skipped one by one.
        """
        result = IngestResult()
        if not raw_events:
            return result

        block_numbers = unique_ordered(e.block_number for e in raw_events)
        timestamps = {bn: self.source.block_timestamp(bn) for bn in block_numbers}

        extractor = EXTRACTORS[kind]
        extractions: List[Extraction] = []
        for raw in raw_events:
            try:
                extractions.append(extractor(raw, timestamps[raw.block_number], self.settings))
            except MalformedEventError as exc:
                result.skipped += 1
                logger.warning("Skipping malformed %s event: %s", kind, exc)

        result.inserted = self.store.upsert_batch(kind, [x.record for x in extractions])
        result.notified = self.emitter.emit_all(x.notification for x in extractions if x.notification)
        return result
