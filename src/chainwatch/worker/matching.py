"""Address membership and threshold rules applied to scanned activity."""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List

from chainwatch.chains.metadata import normalize_address
from chainwatch.models import Chain, MonitoredEntity


def qualifies(amount: Decimal, minimum: Decimal) -> bool:
    """Inclusive lower bound: a zero minimum lets every transfer through."""

    return amount >= minimum


class AddressIndex:
    """Normalized address -> active entities on one chain.

    Built once per cycle from the registry snapshot so matching a record is a
    dictionary lookup instead of a scan over every entity.
    """

    def __init__(self, chain: Chain, entities: Iterable[MonitoredEntity]) -> None:
        self.chain = chain
        self._by_address: Dict[str, List[MonitoredEntity]] = defaultdict(list)
        for entity in entities:
            if entity.chain is chain and entity.is_active:
                self._by_address[normalize_address(chain, entity.address)].append(entity)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._by_address.values())

    def __bool__(self) -> bool:
        return bool(self._by_address)

    @property
    def addresses(self) -> List[str]:
        return list(self._by_address)

    def entities_for(self, address: str) -> List[MonitoredEntity]:
        return list(self._by_address.get(normalize_address(self.chain, address), ()))


__all__ = ["AddressIndex", "qualifies"]
