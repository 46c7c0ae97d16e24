"""Static chain metadata, address rules and native-amount conversion."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext
from typing import Dict

from chainwatch.models import Chain, ChainFamily

AMOUNT_QUANTUM = Decimal("0.00000001")

_EVM_ADDRESS = re.compile(r"^0x[a-fA-F0-9]{40}$")
_BASE58_ADDRESS = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


class UnsupportedChainError(ValueError):
    """Raised when a chain identifier is not one of :class:`Chain`."""


class InvalidAddressError(ValueError):
    """Raised when an address does not match its chain's native format."""


@dataclass(frozen=True, slots=True)
class ChainInfo:
    chain: Chain
    name: str
    family: ChainFamily
    asset: str
    decimals: int
    explorer_url: str
    address_path: str = "address"

    def address_link(self, address: str) -> str:
        return f"{self.explorer_url}/{self.address_path}/{address}"

    def tx_link(self, tx_id: str) -> str:
        return f"{self.explorer_url}/tx/{tx_id}"


CHAINS: Dict[Chain, ChainInfo] = {
    Chain.ETH: ChainInfo(Chain.ETH, "Ethereum", ChainFamily.BLOCK, "ETH", 18, "https://etherscan.io"),
    Chain.BASE: ChainInfo(Chain.BASE, "Base", ChainFamily.BLOCK, "ETH", 18, "https://basescan.org"),
    Chain.AVAX: ChainInfo(Chain.AVAX, "Avalanche", ChainFamily.BLOCK, "AVAX", 18, "https://snowtrace.io"),
    Chain.SOL: ChainInfo(Chain.SOL, "Solana", ChainFamily.SIGNATURE, "SOL", 9, "https://solscan.io", "account"),
}


def parse_chain(value: str | Chain) -> Chain:
    """Return the :class:`Chain` for ``value`` or raise :class:`UnsupportedChainError`."""

    if isinstance(value, Chain):
        return value
    try:
        return Chain(str(value).strip().lower())
    except ValueError as exc:
        supported = ", ".join(chain.value for chain in Chain)
        raise UnsupportedChainError(f"Invalid chain '{value}'. Supported: {supported}") from exc


def chain_info(chain: str | Chain) -> ChainInfo:
    return CHAINS[parse_chain(chain)]


def chains_in_family(family: ChainFamily) -> list[Chain]:
    return [info.chain for info in CHAINS.values() if info.family is family]


def is_valid_address(chain: str | Chain, address: str) -> bool:
    """Return True when ``address`` matches the native format of ``chain``."""

    if not address:
        return False
    candidate = address.strip()
    if chain_info(chain).family is ChainFamily.BLOCK:
        return bool(_EVM_ADDRESS.match(candidate))
    return bool(_BASE58_ADDRESS.match(candidate))


def normalize_address(chain: str | Chain, address: str) -> str:
    """Return the canonical storage/comparison form of ``address``.

    EVM addresses are case-insensitive and lowercased; base58 addresses are
    case-sensitive and only stripped.
    """

    candidate = (address or "").strip()
    if chain_info(chain).family is ChainFamily.BLOCK:
        return candidate.lower()
    return candidate


def validate_address(chain: str | Chain, address: str) -> str:
    """Validate and normalize ``address``; raise :class:`InvalidAddressError` on mismatch."""

    resolved = parse_chain(chain)
    if not is_valid_address(resolved, address):
        raise InvalidAddressError(f"Invalid {resolved.value.upper()} address format")
    return normalize_address(resolved, address)


def to_native_amount(raw: int, decimals: int) -> Decimal:
    """Convert a smallest-unit integer into a native-unit Decimal.

    The result is rounded to 8 decimal places, ties away from zero.
    """

    with localcontext() as ctx:
        ctx.prec = 80
        scaled = Decimal(int(raw)).scaleb(-decimals)
        return scaled.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def parse_hex_quantity(value: str | int | None) -> int:
    """Decode a JSON-RPC hex quantity (``"0x1a"``) into an int."""

    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


__all__ = [
    "AMOUNT_QUANTUM",
    "CHAINS",
    "ChainInfo",
    "InvalidAddressError",
    "UnsupportedChainError",
    "chain_info",
    "chains_in_family",
    "is_valid_address",
    "normalize_address",
    "parse_chain",
    "parse_hex_quantity",
    "to_native_amount",
    "validate_address",
]
