"""
Ingestion pipeline: extractors, batch scanner, sync manager and CLI.
"""

from res_indexer.core.indexer.extractors import EXTRACTORS, ExtractorSettings, extract
from res_indexer.core.indexer.notifier import NotificationEmitter
from res_indexer.core.indexer.scanner import BatchScanner, ScanReport
from res_indexer.core.indexer.sync import SyncManager, SyncState
from res_indexer.core.indexer.runner import main

__all__ = [
    "EXTRACTORS",
    "ExtractorSettings",
    "extract",
    "NotificationEmitter",
    "BatchScanner",
    "ScanReport",
    "SyncManager",
    "SyncState",
    "main",
]
