"""Account-signature-oriented chain reader for Solana JSON-RPC endpoints."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

from chainwatch.chains.metadata import chain_info, normalize_address, to_native_amount
from chainwatch.chains.rpc import fetch_all
from chainwatch.models import ActivityRecord, Chain, Direction

LOGGER = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


@dataclass(slots=True)
class SignaturePage:
    """Signatures newer than a cursor, most recent first."""

    signatures: List[Dict[str, Any]]
    head: str | None
    cursor_found: bool


@dataclass(slots=True)
class SignatureScan:
    records: List[ActivityRecord] = field(default_factory=list)
    new_cursor: str | None = None
    new_signatures: int = 0
    failed_signatures: List[str] = field(default_factory=list)
    cursor_found: bool = True


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    message = (tx.get("transaction") or {}).get("message") or {}
    keys: List[str] = []
    for key in message.get("accountKeys") or []:
        if isinstance(key, dict):
            keys.append(key.get("pubkey") or "")
        else:
            keys.append(str(key))
    return keys


def _balance(balances: Sequence[int], index: int) -> int:
    return int(balances[index]) if index < len(balances) else 0


class SolanaReader:
    """Read address signature history and balance deltas."""

    def __init__(
        self,
        rpc,
        *,
        chain: Chain = Chain.SOL,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_backfill_pages: int = 2,
        max_fanout: int = 4,
    ) -> None:
        self.chain = chain
        self.info = chain_info(chain)
        self._rpc = rpc
        self.page_size = max(1, page_size)
        self.max_backfill_pages = max(0, max_backfill_pages)
        self.max_fanout = max(1, max_fanout)

    def get_signatures(self, address: str, limit: int, before: str | None = None) -> List[Dict[str, Any]]:
        options: Dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        return self._rpc.call("getSignaturesForAddress", [address, options]) or []

    def latest_signature(self, address: str) -> str | None:
        page = self.get_signatures(address, 1)
        return page[0]["signature"] if page else None

    def get_transaction(self, signature: str) -> Dict[str, Any] | None:
        return self._rpc.call(
            "getTransaction",
            [signature, {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}],
        )

    def new_signatures(self, address: str, cursor: str | None) -> SignaturePage:
        """Return signatures newer than ``cursor`` by position in the head page.

        Without a cursor only the head page is returned. When the cursor is
        not in the head page, older pages are requested (up to
        ``max_backfill_pages``); if it is still missing every fetched
        signature is treated as new.
        """

        collected = self.get_signatures(address, self.page_size)
        if not collected:
            return SignaturePage(signatures=[], head=None, cursor_found=cursor is None)
        head = collected[0]["signature"]
        if cursor is None:
            return SignaturePage(signatures=collected, head=head, cursor_found=True)

        last_page_size = len(collected)
        for backfilled in range(self.max_backfill_pages + 1):
            for index, entry in enumerate(collected):
                if entry.get("signature") == cursor:
                    return SignaturePage(signatures=collected[:index], head=head, cursor_found=True)
            if backfilled == self.max_backfill_pages or last_page_size < self.page_size:
                break
            older = self.get_signatures(address, self.page_size, before=collected[-1]["signature"])
            if not older:
                break
            last_page_size = len(older)
            collected.extend(older)

        LOGGER.warning(
            "Cursor %s not found for %s within %s signature(s); treating all as new",
            cursor,
            address,
            len(collected),
        )
        return SignaturePage(signatures=collected, head=head, cursor_found=False)

    def parse_activity(
        self,
        address: str,
        signature_info: Dict[str, Any],
        tx: Dict[str, Any],
    ) -> ActivityRecord | None:
        """Derive the native balance change of ``address`` from ``tx``."""

        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            return None
        keys = _account_keys(tx)
        target = normalize_address(self.chain, address)
        if target not in keys:
            return None
        pre = meta.get("preBalances") or []
        post = meta.get("postBalances") or []
        index = keys.index(target)
        delta = _balance(post, index) - _balance(pre, index)
        direction = Direction.IN if delta >= 0 else Direction.OUT

        counterparty = None
        best = 0
        for other, key in enumerate(keys):
            if other == index:
                continue
            other_delta = _balance(post, other) - _balance(pre, other)
            opposite = -other_delta if direction is Direction.IN else other_delta
            if opposite > best:
                best = opposite
                counterparty = key

        block_time = signature_info.get("blockTime") or tx.get("blockTime")
        timestamp = (
            datetime.fromtimestamp(block_time, tz=timezone.utc) if block_time else datetime.now(timezone.utc)
        )
        return ActivityRecord(
            tx_id=signature_info["signature"],
            chain=self.chain,
            address=target,
            direction=direction,
            amount=abs(to_native_amount(delta, self.info.decimals)),
            asset=self.info.asset,
            timestamp=timestamp,
            counterparty=counterparty,
        )

    def scan(self, address: str, cursor: str | None) -> SignatureScan:
        """Collect activity newer than ``cursor`` and compute the next cursor."""

        page = self.new_signatures(address, cursor)
        if page.head is None:
            return SignatureScan(new_cursor=cursor, cursor_found=page.cursor_found)

        candidates = [entry for entry in page.signatures if entry.get("err") is None]
        transactions = fetch_all(
            self.get_transaction,
            [entry["signature"] for entry in candidates],
            max_workers=self.max_fanout,
        )

        scan = SignatureScan(new_signatures=len(page.signatures), cursor_found=page.cursor_found)
        for entry in candidates:
            tx = transactions.get(entry["signature"])
            if tx is None:
                scan.failed_signatures.append(entry["signature"])
                continue
            record = self.parse_activity(address, entry, tx)
            if record is not None:
                scan.records.append(record)

        scan.new_cursor = self._next_cursor(page, set(scan.failed_signatures), cursor)
        return scan

    def recent_activity(self, address: str, *, limit: int = 20) -> List[ActivityRecord]:
        """Return up to ``limit`` recent balance changes, newest first."""

        page = [entry for entry in self.get_signatures(address, limit) if entry.get("err") is None]
        transactions = fetch_all(
            self.get_transaction,
            [entry["signature"] for entry in page],
            max_workers=self.max_fanout,
        )
        records: List[ActivityRecord] = []
        for entry in page:
            tx = transactions.get(entry["signature"])
            if tx is None:
                continue
            record = self.parse_activity(address, entry, tx)
            if record is not None:
                records.append(record)
        return records

    @staticmethod
    def _next_cursor(page: SignaturePage, failed: set[str], cursor: str | None) -> str | None:
        if not failed:
            return page.head
        # Walk oldest to newest and stop below the first signature that could not be fetched.
        candidate = cursor
        for entry in reversed(page.signatures):
            if entry["signature"] in failed:
                break
            candidate = entry["signature"]
        return candidate


__all__ = ["DEFAULT_PAGE_SIZE", "SignaturePage", "SignatureScan", "SolanaReader"]
