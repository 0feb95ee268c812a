"""
RES Event Indexer

Keeps a local store of the RES marketplace contract events (token and
property transfers, KYC changes, DEX swaps, oracle prices) in sync with the
chain.
"""

__version__ = "1.0.0"

from res_indexer.core.config import IndexerConfig, load_config
from res_indexer.core.types import EventKind

__all__ = [
    "__version__",
    "EventKind",
    "IndexerConfig",
    "load_config",
]
