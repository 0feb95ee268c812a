"""
Minimal event ABIs for the tracked contracts.

Only the events the indexer decodes are listed. ERC-20 and ERC-721
``Transfer`` share topic0 and differ in which arguments are indexed, so each
kind keeps its own ABI and logs are always filtered by contract address.
"""
from typing import Any, Dict, List

from web3 import Web3

from res_indexer.core.types import EventKind


def _event(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "anonymous": False,
        "inputs": [
            {"indexed": indexed, "internalType": typ, "name": arg, "type": typ}
            for arg, typ, indexed in inputs
        ],
        "name": name,
        "type": "event",
    }


ERC20_TRANSFER_EVENT_ABI = _event("Transfer", [
    ("from", "address", True),
    ("to", "address", True),
    ("value", "uint256", False),
])
ERC721_TRANSFER_EVENT_ABI = _event("Transfer", [
    ("from", "address", True),
    ("to", "address", True),
    ("tokenId", "uint256", True),
])
PROPERTY_MINTED_EVENT_ABI = _event("PropertyMinted", [
    ("tokenId", "uint256", True),
    ("owner", "address", True),
    ("metadataURI", "string", False),
])


def _kyc_event(name: str) -> Dict[str, Any]:
    return _event(name, [("user", "address", True), ("timestamp", "uint256", False)])


SWAP_EVENT_ABI = _event("Swap", [
    ("sender", "address", True),
    ("amount0In", "uint256", False),
    ("amount1In", "uint256", False),
    ("amount0Out", "uint256", False),
    ("amount1Out", "uint256", False),
    ("to", "address", True),
])
PRICE_UPDATED_EVENT_ABI = _event("PriceUpdated", [
    ("token", "address", True),
    ("price", "uint256", False),
    ("timestamp", "uint256", False),
])

EVENT_ABIS: Dict[EventKind, Dict[str, Any]] = {
    EventKind.RES_TRANSFER: ERC20_TRANSFER_EVENT_ABI,
    EventKind.PROPERTY_TRANSFER: ERC721_TRANSFER_EVENT_ABI,
    EventKind.PROPERTY_MINTED: PROPERTY_MINTED_EVENT_ABI,
    EventKind.KYC_WHITELISTED: _kyc_event("AddressWhitelisted"),
    EventKind.KYC_WHITELIST_REMOVED: _kyc_event("AddressRemovedFromWhitelist"),
    EventKind.KYC_BLACKLISTED: _kyc_event("AddressBlacklisted"),
    EventKind.KYC_BLACKLIST_REMOVED: _kyc_event("AddressRemovedFromBlacklist"),
    EventKind.SWAP: SWAP_EVENT_ABI,
    EventKind.PRICE_UPDATE: PRICE_UPDATED_EVENT_ABI,
}


def event_signature(abi: Dict[str, Any]) -> str:
    types = ",".join(item["type"] for item in abi["inputs"])
    return f"{abi['name']}({types})"


def event_topic(abi: Dict[str, Any]) -> str:
    return "0x" + bytes(Web3.keccak(text=event_signature(abi))).hex()
