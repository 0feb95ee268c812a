from decimal import Decimal
from typing import Any, Iterable, Iterator, List, Optional, Tuple

from web3 import Web3

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(address: Optional[str]) -> Optional[str]:
    if address is None:
        return None
    return address.strip().lower()


def checksum_address(address: str) -> str:
    return Web3.to_checksum_address(address)


def is_zero_address(address: Optional[str]) -> bool:
    return normalize_address(address) == ZERO_ADDRESS


def short_address(address: str, width: int = 10) -> str:
    """Leading characters of an address for human-readable messages."""
    return f"{address[:width]}..."


def to_hex(value: Any) -> str:
    """Render tx hashes / topics as 0x-prefixed lowercase hex strings."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return "0x" + bytes(value).hex()


def to_token_units(amount: Any, decimals: int) -> Decimal:
    """Convert a raw integer amount into token units (e.g. wei -> ether for 18 decimals)."""
    return Decimal(int(amount)) / (Decimal(10) ** int(decimals))


def iter_windows(start_block: int, end_block: int, size: int) -> Iterator[Tuple[int, int]]:
    """Yield consecutive inclusive ``(from, to)`` windows of at most ``size`` blocks."""
    if size <= 0:
        raise ValueError("window size must be positive")
    cur = start_block
    while cur <= end_block:
        to_blk = min(cur + size - 1, end_block)
        yield cur, to_blk
        cur = to_blk + 1


def unique_ordered(values: Iterable[Any]) -> List[Any]:
    seen = set()
    ordered: List[Any] = []
    for val in values:
        if val not in seen:
            seen.add(val)
            ordered.append(val)
    return ordered


def split_range(start_block: int, end_block: int, parts: int = 2) -> List[Tuple[int, int]]:
    """Split an inclusive block range into ``parts`` contiguous sub-ranges."""
    span = end_block - start_block + 1
    parts = max(1, min(parts, span))
    part_size = span // parts
    ranges: List[Tuple[int, int]] = []
    for i in range(parts):
        s = start_block + i * part_size
        e = start_block + (i + 1) * part_size - 1 if i < parts - 1 else end_block
        ranges.append((s, e))
    return ranges
