"""Chain metadata and readers that turn JSON-RPC responses into activity records."""

from chainwatch.chains.evm import BlockScan, EvmReader
from chainwatch.chains.metadata import (
    CHAINS,
    ChainInfo,
    InvalidAddressError,
    UnsupportedChainError,
    chain_info,
    chains_in_family,
    is_valid_address,
    normalize_address,
    parse_chain,
    to_native_amount,
    validate_address,
)
from chainwatch.chains.rpc import JsonRpcClient, RpcError
from chainwatch.chains.solana import SignatureScan, SolanaReader

__all__ = [
    "BlockScan",
    "CHAINS",
    "ChainInfo",
    "EvmReader",
    "InvalidAddressError",
    "JsonRpcClient",
    "RpcError",
    "SignatureScan",
    "SolanaReader",
    "UnsupportedChainError",
    "chain_info",
    "chains_in_family",
    "is_valid_address",
    "normalize_address",
    "parse_chain",
    "to_native_amount",
    "validate_address",
]
