"""chainwatch: multi-chain wallet activity monitoring.

This package polls EVM and Solana data sources for activity on registered
wallet addresses, records qualifying transfers in a deduplicated alert ledger,
delivers alert messages, and scores recent address activity for risk.
"""
