"""
Chain source adapter.

Wraps a web3 connection (with multi-RPC fallback) and exposes the reads the
indexer needs: head block, ranged event queries per ``EventKind``, block
timestamps and push-style subscriptions.

Provider failures surface as ``SourceError``. Transient failures are never
retried here; the scanner / sync manager own the retry policy. The only
adaptation performed is splitting a block range in two when a provider
rejects it for returning too many results.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from eth_defi.provider.multi_provider import create_multi_provider_web3
from web3 import Web3
from web3._utils.events import get_event_data

from res_indexer.core.abis import EVENT_ABIS, event_topic
from res_indexer.core.config import IndexerConfig
from res_indexer.core.errors import SourceConnectionError, SourceError
from res_indexer.core.types import EventKind, RawEvent
from res_indexer.core.utils import checksum_address, split_range, to_hex

logger = logging.getLogger(__name__)

EventHandler = Callable[[RawEvent], None]

# Provider messages meaning "ask for a smaller range", not "try again later"
RANGE_LIMIT_ERRORS = (
    "exceeds max results",
    "query returned more than",
    "range is too large",
    "block range",
    "max is 1k blocks",
    "response size",
    "-32005",
)


def _is_range_limit(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in RANGE_LIMIT_ERRORS)


class ChainSource:
    """Read-only view of the tracked contracts on one chain."""

    def __init__(self, config: IndexerConfig, w3: Optional[Web3] = None):
        self.config = config
        self.w3 = w3
        self.chain_id: Optional[int] = None
        self._addresses: Dict[EventKind, str] = {}
        self._topics: Dict[EventKind, str] = {kind: event_topic(abi) for kind, abi in EVENT_ABIS.items()}
        self._ts_cache: Dict[int, int] = {}
        self._ts_lock = threading.Lock()
        self._pollers: Dict[EventKind, "_LogPoller"] = {}
        self._pollers_lock = threading.Lock()

    # ---------------- Connection ----------------
    def connect(self) -> "ChainSource":
        """Create the web3 client (unless injected) and verify it answers."""
        try:
            if self.w3 is None:
                self.w3 = create_multi_provider_web3(
                    " ".join(self.config.json_rpc_urls),
                    request_kwargs={"timeout": self.config.request_timeout_s},
                )
            self.chain_id = int(self.w3.eth.chain_id)
        except Exception as exc:
            raise SourceConnectionError(f"Unable to connect to chain provider: {exc}") from exc

        for kind in EventKind:
            address = self.config.contracts.get(kind.contract)
            if address:
                self._addresses[kind] = checksum_address(address)
        logger.info(
            "Connected to chain %s; tracking %d event kinds", self.chain_id, len(self._addresses)
        )
        return self

    def _require_w3(self) -> Web3:
        if self.w3 is None:
            raise SourceError("Chain source is not connected")
        return self.w3

    def tracked_kinds(self) -> List[EventKind]:
        return [kind for kind in EventKind if kind in self._addresses]

    # ---------------- Reads ----------------
    def head_block(self) -> int:
        w3 = self._require_w3()
        try:
            return int(w3.eth.block_number)
        except Exception as exc:
            raise SourceError(f"Failed to read head block: {exc}") from exc

    def block_timestamp(self, block_number: int) -> int:
        with self._ts_lock:
            cached = self._ts_cache.get(block_number)
        if cached is not None:
            return cached
        w3 = self._require_w3()
        try:
            ts = int(w3.eth.get_block(block_number)["timestamp"])
        except Exception as exc:
            raise SourceError(f"Failed to read block {block_number}: {exc}") from exc
        with self._ts_lock:
            self._ts_cache[block_number] = ts
        return ts

    def query_events(self, kind: EventKind, from_block: int, to_block: int) -> List[RawEvent]:
        """Decoded ``kind`` events emitted in ``[from_block, to_block]``.

        Kinds whose contract is not configured yield no events.
        """
        address = self._addresses.get(kind)
        abi = EVENT_ABIS.get(kind)
        if address is None or abi is None or from_block > to_block:
            return []
        w3 = self._require_w3()
        events: List[RawEvent] = []
        for log in self._get_logs(w3, kind, address, from_block, to_block):
            try:
                decoded = get_event_data(w3.codec, abi, log)
            except Exception as exc:
                logger.warning(
                    "Skipping undecodable %s log %s:%s: %s",
                    kind, to_hex(log.get("transactionHash", b"")), log.get("logIndex"), exc,
                )
                continue
            events.append(
                RawEvent(
                    kind=kind,
                    transaction_hash=to_hex(decoded["transactionHash"]),
                    log_index=int(decoded["logIndex"]),
                    block_number=int(decoded["blockNumber"]),
                    args=dict(decoded["args"]),
                    address=str(decoded["address"]).lower(),
                )
            )
        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    def _get_logs(self, w3: Web3, kind: EventKind, address: str, a: int, b: int) -> List[Any]:
        filt = {
            "fromBlock": a,
            "toBlock": b,
            "address": address,
            "topics": [self._topics[kind]],
        }
        try:
            return list(w3.eth.get_logs(filt))
        except Exception as exc:
            if b > a and _is_range_limit(exc):
                logger.debug("Splitting %s log query %d-%d: %s", kind, a, b, str(exc)[:100])
                logs: List[Any] = []
                for lo, hi in split_range(a, b):
                    logs.extend(self._get_logs(w3, kind, address, lo, hi))
                return logs
            raise SourceError(
                f"get_logs failed for {kind} in {a}-{b}: {str(exc)[:200]}",
                kind=kind, from_block=a, to_block=b,
            ) from exc

    # ---------------- Subscriptions ----------------
    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """Deliver ``kind`` events mined after the current head to ``handler``."""
        with self._pollers_lock:
            if kind in self._pollers:
                raise ValueError(f"{kind} is already subscribed")
            poller = _LogPoller(self, kind, handler, self.config.realtime_poll_interval)
            self._pollers[kind] = poller
        poller.start()

    def unsubscribe(self, kind: EventKind) -> None:
        with self._pollers_lock:
            poller = self._pollers.pop(kind, None)
        if poller is not None:
            poller.stop()

    def unsubscribe_all(self) -> None:
        with self._pollers_lock:
            kinds = list(self._pollers)
        for kind in kinds:
            self.unsubscribe(kind)

    def subscribed_kinds(self) -> List[EventKind]:
        with self._pollers_lock:
            return list(self._pollers)


class _LogPoller(threading.Thread):
    """Polls ``(last_seen, head]`` for one kind and pushes new events to a handler."""

    def __init__(self, source: ChainSource, kind: EventKind, handler: EventHandler, interval: float):
        super().__init__(name=f"poller-{kind.tag}", daemon=True)
        self.source = source
        self.kind = kind
        self.handler = handler
        self.interval = interval
        self._stop_event = threading.Event()
        self._next_block: Optional[int] = None

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)

    def run(self) -> None:
        try:
            self._next_block = self.source.head_block() + 1
        except SourceError as exc:
            logger.error("Subscription %s could not read head: %s", self.kind, exc)
        while not self._stop_event.wait(self.interval):
            try:
                self._poll_once()
            except SourceError as exc:
                logger.error("Subscription %s poll failed: %s", self.kind, exc)

    def _poll_once(self) -> None:
        head = self.source.head_block()
        if self._next_block is None:
            self._next_block = head + 1
            return
        if head < self._next_block:
            return
        for event in self.source.query_events(self.kind, self._next_block, head):
            if self._stop_event.is_set():
                return
            try:
                self.handler(event)
            except Exception:
                logger.exception("Subscription handler for %s failed", self.kind)
        self._next_block = head + 1
