"""Block-oriented chain reader for EVM-compatible JSON-RPC endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Set

from chainwatch.chains.metadata import chain_info, normalize_address, parse_hex_quantity, to_native_amount
from chainwatch.chains.rpc import fetch_all
from chainwatch.models import ActivityRecord, Chain, Direction

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_BLOCKS_PER_SCAN = 50


@dataclass(slots=True)
class BlockScan:
    """Result of scanning a bounded block window.

    ``reached_height`` is the last height up to which every block was fetched;
    callers advance their cursor to it, never to ``window_end``.
    """

    start_height: int
    window_end: int
    reached_height: int
    records: List[ActivityRecord] = field(default_factory=list)
    skipped_heights: List[int] = field(default_factory=list)


class EvmReader:
    """Scan native-asset transfers block by block."""

    def __init__(
        self,
        chain: Chain,
        rpc,
        *,
        max_blocks_per_scan: int = DEFAULT_MAX_BLOCKS_PER_SCAN,
        max_fanout: int = 4,
        check_lookback_blocks: int = 200,
    ) -> None:
        self.chain = chain
        self.info = chain_info(chain)
        self._rpc = rpc
        self.max_blocks_per_scan = max(1, max_blocks_per_scan)
        self.max_fanout = max(1, max_fanout)
        self.check_lookback_blocks = max(1, check_lookback_blocks)

    def latest_block(self) -> int:
        return parse_hex_quantity(self._rpc.call("eth_blockNumber", []))

    def get_block(self, height: int) -> Dict[str, Any] | None:
        """Return the block at ``height`` with full transaction objects."""

        return self._rpc.call("eth_getBlockByNumber", [hex(height), True])

    def scan(
        self,
        start_exclusive: int,
        end_inclusive: int,
        addresses: Iterable[str],
        *,
        max_blocks: int | None = None,
    ) -> BlockScan:
        """Collect transfers touching ``addresses`` in ``(start_exclusive, end_inclusive]``.

        Args:
            start_exclusive: Last height already processed.
            end_inclusive: Requested upper bound, usually the chain head.
            addresses: Monitored addresses (any case).
            max_blocks: Override for the per-call window cap.

        Returns:
            A :class:`BlockScan` whose ``reached_height`` never passes a block
            that failed to load.
        """

        cap = max_blocks or self.max_blocks_per_scan
        window_end = min(end_inclusive, start_exclusive + cap)
        if window_end <= start_exclusive:
            return BlockScan(start_height=start_exclusive, window_end=start_exclusive, reached_height=start_exclusive)

        watched = {normalize_address(self.chain, address) for address in addresses}
        heights = list(range(start_exclusive + 1, window_end + 1))
        blocks = fetch_all(self.get_block, heights, max_workers=self.max_fanout)

        scan = BlockScan(start_height=start_exclusive, window_end=window_end, reached_height=start_exclusive)
        contiguous = True
        for height in heights:
            block = blocks.get(height)
            if block is None:
                scan.skipped_heights.append(height)
                contiguous = False
                continue
            if contiguous:
                scan.reached_height = height
            scan.records.extend(self._match_block(block, height, watched))

        if scan.skipped_heights:
            LOGGER.warning(
                "Skipped %s block(s) on %s between %s and %s; cursor held at %s",
                len(scan.skipped_heights),
                self.chain.value,
                heights[0],
                window_end,
                scan.reached_height,
            )
        return scan

    def recent_activity(self, address: str, *, limit: int = 20) -> List[ActivityRecord]:
        """Return up to ``limit`` recent transfers for ``address``, newest first."""

        head = self.latest_block()
        start = max(0, head - self.check_lookback_blocks)
        scan = self.scan(start, head, [address], max_blocks=self.check_lookback_blocks)
        ordered = sorted(scan.records, key=lambda record: (record.block_height or 0, record.timestamp), reverse=True)
        return ordered[:limit]

    def _match_block(self, block: Dict[str, Any], height: int, watched: Set[str]) -> Iterator[ActivityRecord]:
        timestamp = datetime.fromtimestamp(parse_hex_quantity(block.get("timestamp")), tz=timezone.utc)
        block_height = parse_hex_quantity(block.get("number")) or height
        for tx in block.get("transactions") or []:
            if not isinstance(tx, dict):
                continue
            sender = normalize_address(self.chain, tx.get("from") or "")
            recipient = normalize_address(self.chain, tx.get("to") or "")
            if sender not in watched and recipient not in watched:
                continue
            amount = to_native_amount(parse_hex_quantity(tx.get("value")), self.info.decimals)
            base = dict(
                tx_id=tx.get("hash", ""),
                chain=self.chain,
                amount=amount,
                asset=self.info.asset,
                timestamp=timestamp,
                block_height=block_height,
            )
            if sender in watched:
                yield ActivityRecord(address=sender, direction=Direction.OUT, counterparty=recipient or None, **base)
            if recipient in watched and recipient != sender:
                yield ActivityRecord(address=recipient, direction=Direction.IN, counterparty=sender or None, **base)


__all__ = ["BlockScan", "DEFAULT_MAX_BLOCKS_PER_SCAN", "EvmReader"]
