"""
Exception types raised by the indexer core.
"""


class IndexerError(Exception):
    """Base class for every error raised by res_indexer."""


class ConfigError(IndexerError):
    """Configuration is missing required values or holds invalid ones."""


class SourceError(IndexerError):
    """A chain provider call failed (network, timeout, RPC error)."""

    def __init__(self, message: str, *, kind=None, from_block=None, to_block=None):
        super().__init__(message)
        self.kind = kind
        self.from_block = from_block
        self.to_block = to_block


class SourceConnectionError(SourceError):
    """The provider could not be reached at startup."""


class MalformedEventError(IndexerError):
    """A raw event is missing arguments or carries values of the wrong shape."""


class StoreError(IndexerError):
    """Unexpected persistence failure (anything other than a duplicate key)."""


class SyncBusyError(IndexerError):
    """Another scan holds the sync guard."""
