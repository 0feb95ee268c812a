"""
Core building blocks: configuration, chain source, store and shared types.
"""

from res_indexer.core.config import IndexerConfig, load_config
from res_indexer.core.source import ChainSource
from res_indexer.core.store import EventStore, SQLiteStore
from res_indexer.core.types import EventKind, RawEvent

__all__ = [
    "IndexerConfig",
    "load_config",
    "ChainSource",
    "EventStore",
    "SQLiteStore",
    "EventKind",
    "RawEvent",
]
