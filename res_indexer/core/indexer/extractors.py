"""
Event extractors: one pure function per ``EventKind``.

Each extractor maps a decoded chain event plus its block timestamp onto the
record persisted for that kind and, optionally, a derived notification.
Missing or ill-typed arguments raise ``MalformedEventError``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from res_indexer.core.errors import MalformedEventError
from res_indexer.core.types import (
    EventKind,
    EventRecord,
    KYC_FLAGS,
    KYCEventRecord,
    Notification,
    PriceUpdateRecord,
    PropertyMintRecord,
    PropertyTransferRecord,
    RawEvent,
    SwapRecord,
    TransferRecord,
)
from res_indexer.core.utils import is_zero_address, normalize_address, short_address, to_token_units


@dataclass(frozen=True)
class ExtractorSettings:
    large_transfer_threshold: float = 1000
    token_decimals: int = 18
    token_symbol: str = "RES"
    pair_address: Optional[str] = None

    @classmethod
    def from_config(cls, config) -> "ExtractorSettings":
        return cls(
            large_transfer_threshold=config.large_transfer_threshold,
            token_decimals=config.token_decimals,
            token_symbol=config.token_symbol,
            pair_address=normalize_address(config.contracts.get("res_matic_pair")),
        )


@dataclass(frozen=True)
class Extraction:
    record: EventRecord
    notification: Optional[Notification] = None


Extractor = Callable[[RawEvent, int, ExtractorSettings], Extraction]


# ---------------- Argument helpers ----------------
def _arg(raw: RawEvent, name: str) -> Any:
    try:
        value = raw.args[name]
    except (KeyError, TypeError):
        raise MalformedEventError(
            f"{raw.kind} event {raw.transaction_hash}:{raw.log_index} is missing argument {name!r}"
        ) from None
    if value is None:
        raise MalformedEventError(
            f"{raw.kind} event {raw.transaction_hash}:{raw.log_index} has null argument {name!r}"
        )
    return value


def _address(raw: RawEvent, name: str) -> str:
    value = _arg(raw, name)
    if not isinstance(value, str) or not value.startswith("0x"):
        raise MalformedEventError(f"{raw.kind} argument {name!r} is not an address: {value!r}")
    return normalize_address(value)


def _uint(raw: RawEvent, name: str) -> int:
    value = _arg(raw, name)
    if isinstance(value, bool):
        raise MalformedEventError(f"{raw.kind} argument {name!r} is not an integer: {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise MalformedEventError(f"{raw.kind} argument {name!r} is not an integer: {value!r}") from None
    if number < 0:
        raise MalformedEventError(f"{raw.kind} argument {name!r} is negative: {number}")
    return number


def _base(raw: RawEvent, block_timestamp: int) -> Dict[str, Any]:
    if not raw.transaction_hash or raw.log_index is None or raw.block_number is None:
        raise MalformedEventError(f"{raw.kind} event lacks its natural key or block number")
    return {
        "transaction_hash": raw.transaction_hash.lower(),
        "block_number": int(raw.block_number),
        "log_index": int(raw.log_index),
        "timestamp": int(block_timestamp),
    }


# ---------------- Extractors ----------------
def extract_res_transfer(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    amount = _uint(raw, "value")
    record = TransferRecord(
        **_base(raw, block_timestamp),
        from_address=_address(raw, "from"),
        to_address=_address(raw, "to"),
        amount=str(amount),
    )
    notification = None
    tokens = to_token_units(amount, settings.token_decimals)
    if tokens > settings.large_transfer_threshold:
        notification = Notification(
            type="transfer",
            title=f"Large {settings.token_symbol} Transfer",
            message=(
                f"{tokens:.2f} {settings.token_symbol} transferred from "
                f"{short_address(record.from_address)} to {short_address(record.to_address)}"
            ),
            transaction_hash=record.transaction_hash,
            log_index=record.log_index,
            data={"transactionHash": record.transaction_hash},
        )
    return Extraction(record, notification)


def extract_property_transfer(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    record = PropertyTransferRecord(
        **_base(raw, block_timestamp),
        from_address=_address(raw, "from"),
        to_address=_address(raw, "to"),
        token_id=str(_uint(raw, "tokenId")),
    )
    # Transfers out of the zero address are mints; they are announced by PropertyMinted instead.
    if is_zero_address(record.from_address):
        return Extraction(record)
    notification = Notification(
        type="property_transfer",
        title="Property NFT Transferred",
        message=f"Property #{record.token_id} transferred to {short_address(record.to_address)}",
        transaction_hash=record.transaction_hash,
        log_index=record.log_index,
        data={"transactionHash": record.transaction_hash, "tokenId": record.token_id},
    )
    return Extraction(record, notification)


def extract_property_minted(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    metadata_uri = _arg(raw, "metadataURI")
    if not isinstance(metadata_uri, str):
        raise MalformedEventError(f"{raw.kind} argument 'metadataURI' is not a string: {metadata_uri!r}")
    record = PropertyMintRecord(
        **_base(raw, block_timestamp),
        token_id=str(_uint(raw, "tokenId")),
        owner_address=_address(raw, "owner"),
        metadata_uri=metadata_uri,
    )
    notification = Notification(
        type="property_mint",
        title="New Property Minted",
        message=f"Property #{record.token_id} has been minted",
        transaction_hash=record.transaction_hash,
        log_index=record.log_index,
        data={"tokenId": record.token_id, "owner": record.owner_address, "metadataURI": metadata_uri},
    )
    return Extraction(record, notification)


def extract_kyc_change(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    try:
        event_type, is_active = KYC_FLAGS[raw.kind]
    except KeyError:
        raise MalformedEventError(f"{raw.kind} is not a KYC event kind") from None
    record = KYCEventRecord(
        **_base(raw, block_timestamp),
        user_address=_address(raw, "user"),
        event_type=event_type,
        is_active=is_active,
    )
    list_name = "Whitelist" if event_type == "whitelisted" else "Blacklist"
    verb = "Added to" if is_active else "Removed from"
    notification = Notification(
        type="kyc",
        title=f"User {verb} {list_name}",
        message=(
            f"Address {short_address(record.user_address)} was {verb.lower()} the {list_name.lower()}"
        ),
        transaction_hash=record.transaction_hash,
        log_index=record.log_index,
        data={"address": record.user_address, "eventType": event_type, "isActive": is_active},
        recipient=record.user_address,
    )
    return Extraction(record, notification)


def extract_swap(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    pair = settings.pair_address or normalize_address(raw.address)
    if not pair:
        raise MalformedEventError("Swap event has no pair address")
    record = SwapRecord(
        **_base(raw, block_timestamp),
        pair_address=pair,
        sender=_address(raw, "sender"),
        to_address=_address(raw, "to"),
        amount0_in=str(_uint(raw, "amount0In")),
        amount1_in=str(_uint(raw, "amount1In")),
        amount0_out=str(_uint(raw, "amount0Out")),
        amount1_out=str(_uint(raw, "amount1Out")),
    )
    notification = Notification(
        type="swap",
        title="DEX Swap Executed",
        message=f"Swap executed on {settings.token_symbol}/MATIC pair",
        transaction_hash=record.transaction_hash,
        log_index=record.log_index,
        data={"transactionHash": record.transaction_hash},
    )
    return Extraction(record, notification)


def extract_price_update(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    record = PriceUpdateRecord(
        **_base(raw, block_timestamp),
        token_address=_address(raw, "token"),
        token_symbol=settings.token_symbol,
        price_usd=str(_uint(raw, "price")),
    )
    return Extraction(record)


EXTRACTORS: Dict[EventKind, Extractor] = {
    EventKind.RES_TRANSFER: extract_res_transfer,
    EventKind.PROPERTY_TRANSFER: extract_property_transfer,
    EventKind.PROPERTY_MINTED: extract_property_minted,
    EventKind.KYC_WHITELISTED: extract_kyc_change,
    EventKind.KYC_WHITELIST_REMOVED: extract_kyc_change,
    EventKind.KYC_BLACKLISTED: extract_kyc_change,
    EventKind.KYC_BLACKLIST_REMOVED: extract_kyc_change,
    EventKind.SWAP: extract_swap,
    EventKind.PRICE_UPDATE: extract_price_update,
}


def extract(raw: RawEvent, block_timestamp: int, settings: ExtractorSettings) -> Extraction:
    return EXTRACTORS[raw.kind](raw, block_timestamp, settings)
