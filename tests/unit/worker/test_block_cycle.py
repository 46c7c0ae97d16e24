"""Unit tests for the block-family poll cycle."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from chainwatch.chains.evm import EvmReader
from chainwatch.chains.rpc import RpcError
from chainwatch.models import Chain, Direction
from chainwatch.store.cursor_store import CursorStore
from chainwatch.worker.cycle import BlockChainCycle, CycleError, CycleStage

WATCHED = "0x" + "ab" * 20
OTHER = "0x" + "cd" * 20
WEI = 10**18


class _FakeEvmRpc:
    def __init__(self, head: int, transfers: dict[int, list[dict]] | None = None):
        self.head = head
        self.transfers = transfers or {}
        self.fail_head = False

    def call(self, method, params=None):
        if method == "eth_blockNumber":
            if self.fail_head:
                raise RpcError(method, "connection refused")
            return hex(self.head)
        height = int(params[0], 16)
        return {
            "number": hex(height),
            "timestamp": hex(1_700_000_000 + height),
            "transactions": self.transfers.get(height, []),
        }


class _RecordingDispatcher:
    name = "recording"

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.sent: list[tuple[str, str]] = []

    def deliver(self, destination: str, text: str) -> bool:
        self.sent.append((destination, text))
        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _CrashOnceCursorStore(CursorStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.crashed = False

    def advance_chain_cursor(self, chain, height):
        if not self.crashed:
            self.crashed = True
            raise RuntimeError("process killed before advance")
        return super().advance_chain_cursor(chain, height)


class _PeerAdvancingEvmRpc(_FakeEvmRpc):
    """Moves the shared cursor ahead, as a second poller would, while the head block is fetched."""

    def __init__(self, head: int, cursors: CursorStore, peer_height: int, transfers=None):
        super().__init__(head, transfers)
        self.cursors = cursors
        self.peer_height = peer_height

    def call(self, method, params=None):
        if method == "eth_getBlockByNumber" and int(params[0], 16) == self.head:
            self.cursors.advance_chain_cursor(Chain.ETH, self.peer_height)
        return super().call(method, params)


class _DestinationDispatcher:
    name = "destination"

    def __init__(self, blocked: set[str], flaky: set[str]):
        self.blocked = blocked
        self.flaky = set(flaky)
        self.sent: list[str] = []

    def deliver(self, destination: str, text: str) -> bool:
        self.sent.append(destination)
        if destination in self.flaky:
            self.flaky.discard(destination)
            return False
        return destination not in self.blocked


def _outbound(amount: str) -> dict:
    return {"hash": "0xfeed", "from": WATCHED, "to": OTHER, "value": hex(int(Decimal(amount) * WEI))}


def _cycle(registry, cursors, ledger, dispatcher, rpc, **kwargs) -> BlockChainCycle:
    return BlockChainCycle(
        Chain.ETH,
        EvmReader(Chain.ETH, rpc),
        registry=registry,
        cursors=cursors,
        ledger=ledger,
        dispatcher=dispatcher,
        **kwargs,
    )


def _track(registry, minimum: str, cursor: str | None = "100"):
    return registry.register(
        user_external_id="1001",
        chain=Chain.ETH,
        address=WATCHED,
        label="Hot wallet",
        min_amount=Decimal(minimum),
        cursor=cursor,
    )


def test_transfer_below_threshold_is_ignored_and_cursor_advances(registry, cursors, ledger):
    entity = _track(registry, "0.1")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    dispatcher = _RecordingDispatcher()

    report = _cycle(registry, cursors, ledger, dispatcher, _FakeEvmRpc(105, {103: [_outbound("0.05")]})).run()

    assert report.records_seen == 1
    assert report.below_threshold == 1
    assert report.alerts_created == 0
    assert dispatcher.sent == []
    assert ledger.list_for_entity(entity.entity_id) == []
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 105
    assert report.cursor_after == "105"


def test_qualifying_transfer_alerts_once_across_retries(registry, session_factory, ledger):
    entity = _track(registry, "0.01")
    cursors = _CrashOnceCursorStore(session_factory=session_factory)
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    dispatcher = _RecordingDispatcher()
    cycle = _cycle(registry, cursors, ledger, dispatcher, _FakeEvmRpc(105, {103: [_outbound("0.05")]}))

    with pytest.raises(CycleError) as excinfo:
        cycle.run()
    assert excinfo.value.stage is CycleStage.ADVANCING
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 100

    (event,) = ledger.list_for_entity(entity.entity_id)
    assert (event.direction, event.amount, event.asset) == (Direction.OUT, Decimal("0.05"), "ETH")
    assert event.tx_id == "0xfeed"
    assert ledger.get(event.event_id).delivered is True
    assert len(dispatcher.sent) == 1

    report = cycle.run()

    assert report.alerts_created == 0
    assert report.duplicates == 1
    assert len(dispatcher.sent) == 1
    assert len(ledger.list_for_entity(entity.entity_id)) == 1
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 105


def test_alert_text_goes_to_entity_owner(registry, cursors, ledger):
    _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    dispatcher = _RecordingDispatcher()

    _cycle(registry, cursors, ledger, dispatcher, _FakeEvmRpc(101, {101: [_outbound("1.5")]})).run()

    ((destination, text),) = dispatcher.sent
    assert destination == "1001"
    assert "Hot wallet" in text
    assert "Amount: 1.5 ETH" in text
    assert "https://etherscan.io/tx/0xfeed" in text


def test_first_cycle_seeds_cursor_without_scanning(registry, cursors, ledger):
    _track(registry, "0")
    rpc = _FakeEvmRpc(5_000, {4_999: [_outbound("10")]})

    report = _cycle(registry, cursors, ledger, _RecordingDispatcher(), rpc).run()

    assert report.skipped_reason == "cursor_seeded"
    assert report.records_seen == 0
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 5_000


def test_no_entities_leaves_cursor_untouched(registry, cursors, ledger):
    cursors.ensure_chain_cursor(Chain.ETH, 100)

    report = _cycle(registry, cursors, ledger, _RecordingDispatcher(), _FakeEvmRpc(150)).run()

    assert report.skipped_reason == "no_entities"
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 100


def test_activity_at_or_before_registration_is_not_alerted(registry, cursors, ledger):
    _track(registry, "0", cursor="104")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    rpc = _FakeEvmRpc(105, {103: [_outbound("1")], 104: [_outbound("2")], 105: [_outbound("3")]})

    report = _cycle(registry, cursors, ledger, _RecordingDispatcher(), rpc).run()

    assert report.below_floor == 2
    assert report.alerts_created == 1


def test_scan_window_is_capped(registry, cursors, ledger):
    _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    cycle = BlockChainCycle(
        Chain.ETH,
        EvmReader(Chain.ETH, _FakeEvmRpc(1_000), max_blocks_per_scan=25),
        registry=registry,
        cursors=cursors,
        ledger=ledger,
        dispatcher=_RecordingDispatcher(),
    )

    cycle.run()

    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 125


def test_failed_delivery_is_retried_on_next_cycle(registry, cursors, ledger):
    entity = _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    dispatcher = _RecordingDispatcher(False, True)
    cycle = _cycle(registry, cursors, ledger, dispatcher, _FakeEvmRpc(101, {101: [_outbound("1")]}))

    first = cycle.run()
    (event,) = ledger.list_for_entity(entity.entity_id)
    assert first.delivery_failures == 1
    assert first.redelivered == 0
    assert ledger.get(event.event_id).delivered is False
    assert ledger.get(event.event_id).last_error == "recording delivery failed"

    second = cycle.run()
    assert second.alerts_created == 0
    assert second.redelivered == 1
    stored = ledger.get(event.event_id)
    assert stored.delivered is True
    assert stored.delivery_attempts == 2


def test_dispatcher_exception_counts_as_failure(registry, cursors, ledger):
    entity = _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    dispatcher = _RecordingDispatcher(RuntimeError("socket closed"))

    report = _cycle(registry, cursors, ledger, dispatcher, _FakeEvmRpc(101, {101: [_outbound("1")]})).run()

    assert report.delivery_failures == 1
    (event,) = ledger.list_for_entity(entity.entity_id)
    assert event.last_error == "socket closed"
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 101


def test_rpc_failure_aborts_without_touching_cursor(registry, cursors, ledger):
    _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    rpc = _FakeEvmRpc(105)
    rpc.fail_head = True
    observability = Mock()

    with pytest.raises(CycleError) as excinfo:
        _cycle(registry, cursors, ledger, _RecordingDispatcher(), rpc, observability=observability).run()

    assert excinfo.value.stage is CycleStage.SCANNING
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 100
    assert observability.emit_event.call_args[0][0] == "poll_cycle.failed"


def test_completed_cycle_emits_event_and_metrics(registry, cursors, ledger):
    _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    observability = Mock()

    _cycle(registry, cursors, ledger, _RecordingDispatcher(), _FakeEvmRpc(101), observability=observability).run()

    event_name = observability.emit_event.call_args[0][0]
    fields = observability.emit_event.call_args[1]
    assert event_name == "poll_cycle.completed"
    assert fields["chain"] == "eth"
    assert fields["cursor_after"] == "101"
    observability.record_timing.assert_called_once()


def test_cursor_already_advanced_by_another_poller_is_kept(registry, cursors, ledger):
    entity = _track(registry, "0")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    rpc = _PeerAdvancingEvmRpc(105, cursors, peer_height=110, transfers={103: [_outbound("1")]})

    report = _cycle(registry, cursors, ledger, _RecordingDispatcher(), rpc).run()

    assert report.alerts_created == 1
    assert report.cursor_after == "110"
    assert cursors.get_chain_cursor(Chain.ETH).last_block_number == 110
    assert len(ledger.list_for_entity(entity.entity_id)) == 1


def test_failing_destination_does_not_starve_redelivery(registry, cursors, ledger):
    for user in ("1001", "2002"):
        registry.register(user_external_id=user, chain=Chain.ETH, address=WATCHED, label=f"wallet-{user}", cursor="100")
    cursors.ensure_chain_cursor(Chain.ETH, 100)
    dispatcher = _DestinationDispatcher(blocked={"1001"}, flaky={"2002"})
    cycle = _cycle(
        registry, cursors, ledger, dispatcher, _FakeEvmRpc(101, {101: [_outbound("1")]}), redelivery_limit=1
    )

    first = cycle.run()
    assert first.delivery_failures == 2

    for _ in range(4):
        cycle.run()

    assert "2002" in dispatcher.sent[2:]
    assert ledger.pending_deliveries(Chain.ETH)[0].entity.destination == "1001"
    assert len(ledger.pending_deliveries(Chain.ETH)) == 1
