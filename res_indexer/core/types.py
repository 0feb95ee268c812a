"""
Data types shared by the chain source, the extractors and the store.

Records mirror the rows written to the store. Every event-derived record is
identified by its natural key ``(transaction_hash, log_index)``.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class EventKind(Enum):
    """Closed set of on-chain events tracked by the indexer.

    Each member carries the contract role it is emitted by (a key of the
    ``contracts`` config section), the Solidity event name and the store
    table its records land in.
    """

    RES_TRANSFER = ("res_transfer", "res_token", "Transfer", "res_transfers")
    PROPERTY_TRANSFER = ("property_transfer", "property_nft", "Transfer", "property_transfers")
    PROPERTY_MINTED = ("property_minted", "property_nft", "PropertyMinted", "property_mints")
    KYC_WHITELISTED = ("kyc_whitelisted", "kyc_registry", "AddressWhitelisted", "kyc_events")
    KYC_WHITELIST_REMOVED = ("kyc_whitelist_removed", "kyc_registry", "AddressRemovedFromWhitelist", "kyc_events")
    KYC_BLACKLISTED = ("kyc_blacklisted", "kyc_registry", "AddressBlacklisted", "kyc_events")
    KYC_BLACKLIST_REMOVED = ("kyc_blacklist_removed", "kyc_registry", "AddressRemovedFromBlacklist", "kyc_events")
    SWAP = ("swap", "res_matic_pair", "Swap", "swap_events")
    PRICE_UPDATE = ("price_update", "price_oracle", "PriceUpdated", "oracle_prices")

    def __init__(self, tag: str, contract: str, event_name: str, table: str):
        self.tag = tag
        self.contract = contract
        self.event_name = event_name
        self.table = table

    @property
    def is_kyc(self) -> bool:
        return self.table == "kyc_events"

    @classmethod
    def from_tag(cls, tag: str) -> "EventKind":
        for kind in cls:
            if kind.tag == tag:
                return kind
        raise ValueError(f"Unknown event kind {tag!r}")

    def __str__(self) -> str:
        return self.tag


# (event_type, is_active) carried by each KYC kind
KYC_FLAGS: Dict[EventKind, Tuple[str, bool]] = {
    EventKind.KYC_WHITELISTED: ("whitelisted", True),
    EventKind.KYC_WHITELIST_REMOVED: ("whitelisted", False),
    EventKind.KYC_BLACKLISTED: ("blacklisted", True),
    EventKind.KYC_BLACKLIST_REMOVED: ("blacklisted", False),
}


NaturalKey = Tuple[str, int]


@dataclass(frozen=True)
class RawEvent:
    """A decoded log as returned by the chain source, before extraction."""

    kind: EventKind
    transaction_hash: str
    log_index: int
    block_number: int
    args: Dict[str, Any] = field(default_factory=dict)
    address: Optional[str] = None

    @property
    def key(self) -> NaturalKey:
        return (self.transaction_hash, self.log_index)


# ---------------- Persisted records ----------------
@dataclass(frozen=True)
class EventRecord:
    transaction_hash: str
    block_number: int
    log_index: int
    timestamp: int

    @property
    def key(self) -> NaturalKey:
        return (self.transaction_hash, self.log_index)

    def as_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TransferRecord(EventRecord):
    from_address: str
    to_address: str
    amount: str


@dataclass(frozen=True)
class PropertyTransferRecord(EventRecord):
    from_address: str
    to_address: str
    token_id: str


@dataclass(frozen=True)
class PropertyMintRecord(EventRecord):
    token_id: str
    owner_address: str
    metadata_uri: str


@dataclass(frozen=True)
class KYCEventRecord(EventRecord):
    user_address: str
    event_type: str  # "whitelisted" | "blacklisted"
    is_active: bool


@dataclass(frozen=True)
class SwapRecord(EventRecord):
    pair_address: str
    sender: str
    to_address: str
    amount0_in: str
    amount1_in: str
    amount0_out: str
    amount1_out: str


@dataclass(frozen=True)
class PriceUpdateRecord(EventRecord):
    token_address: str
    token_symbol: str
    price_usd: str
    source: str = "oracle"


@dataclass(frozen=True)
class Notification:
    """Alert derived from an event. ``(transaction_hash, log_index, type)`` is unique."""

    type: str
    title: str
    message: str
    transaction_hash: str
    log_index: int
    data: Dict[str, Any] = field(default_factory=dict)
    recipient: Optional[str] = None


# ---------------- Sync state / projections ----------------
@dataclass(frozen=True)
class SyncCursor:
    last_synced_block: int
    is_syncing: bool = False
    last_sync_timestamp: Optional[int] = None


@dataclass(frozen=True)
class KYCStatus:
    address: str
    is_whitelisted: bool = False
    is_blacklisted: bool = False
    last_updated_block: Optional[int] = None
    last_updated_timestamp: Optional[int] = None

    @property
    def is_eligible(self) -> bool:
        return self.is_whitelisted and not self.is_blacklisted
