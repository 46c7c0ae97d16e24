"""Unit tests for the poller and redelivery job entrypoints."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from chainwatch.models import ActivityRecord, Chain, Direction
from chainwatch.services.factories import ChainNotConfiguredError
from chainwatch.worker.cycle import CycleError, CycleReport, CycleStage
from chainwatch.worker.jobs import poller, redeliver
from chainwatch.worker.scheduler import ChainScheduler

WATCHED = "0x" + "ab" * 20


class _StubCycle:
    def __init__(self, chain: Chain, fail: bool = False):
        self.chain = chain
        self.fail = fail

    def run(self) -> CycleReport:
        if self.fail:
            raise CycleError(self.chain, CycleStage.SCANNING, "rpc down")
        return CycleReport(chain=self.chain)


class _StubDispatcher:
    name = "stub"

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[str] = []

    def deliver(self, destination: str, text: str) -> bool:
        self.sent.append(destination)
        return self.ok


def _pending_event(registry, ledger, tx_id: str = "0xtx"):
    entity = registry.register(user_external_id="1001", chain=Chain.ETH, address=WATCHED, label="Hot wallet")
    record = ActivityRecord(
        tx_id=tx_id,
        chain=Chain.ETH,
        address=WATCHED,
        direction=Direction.IN,
        amount=Decimal("2"),
        asset="ETH",
        timestamp=datetime(2026, 10, 1, tzinfo=timezone.utc),
    )
    return ledger.record_if_new(Chain.ETH, tx_id, entity.entity_id, record).event


def test_poller_once_returns_zero_when_every_chain_succeeds(monkeypatch):
    seen = {}

    def _build(chains, settings):
        seen["chains"] = chains
        return [ChainScheduler(_StubCycle(Chain.ETH), interval_seconds=45)]

    monkeypatch.setattr(poller, "build_schedulers", _build)

    assert poller.main(["--once", "--chain", "ETH"]) == 0
    assert seen["chains"] == [Chain.ETH]


def test_poller_once_reports_failed_chain(monkeypatch):
    monkeypatch.setattr(
        poller,
        "build_schedulers",
        lambda chains, settings: [
            ChainScheduler(_StubCycle(Chain.ETH), interval_seconds=45),
            ChainScheduler(_StubCycle(Chain.SOL, fail=True), interval_seconds=180),
        ],
    )

    assert poller.main(["--once"]) == 1


def test_poller_fails_fast_on_configuration_errors(monkeypatch):
    def _build(chains, settings):
        raise ChainNotConfiguredError("No RPC endpoint configured for sol")

    monkeypatch.setattr(poller, "build_schedulers", _build)

    assert poller.main(["--once", "--chain", "sol"]) == 1
    assert poller.main(["--once", "--chain", "doge"]) == 1


def test_poller_without_chains_exits_nonzero(monkeypatch):
    monkeypatch.setattr(poller, "build_schedulers", lambda chains, settings: [])
    assert poller.main(["--once"]) == 1


def test_redeliver_delivers_pending_alerts(monkeypatch, registry, ledger):
    event = _pending_event(registry, ledger)
    dispatcher = _StubDispatcher()
    monkeypatch.setattr(redeliver, "build_alert_ledger", lambda: ledger)
    monkeypatch.setattr(redeliver, "build_dispatcher", lambda: dispatcher)

    assert redeliver.main(["--chain", "eth"]) == 0
    assert dispatcher.sent == ["1001"]
    assert ledger.get(event.event_id).delivered is True
    assert redeliver.main([]) == 0
    assert dispatcher.sent == ["1001"]


def test_redeliver_records_failures(monkeypatch, registry, ledger):
    event = _pending_event(registry, ledger)
    monkeypatch.setattr(redeliver, "build_alert_ledger", lambda: ledger)
    monkeypatch.setattr(redeliver, "build_dispatcher", lambda: _StubDispatcher(ok=False))

    assert redeliver.main([]) == 1
    stored = ledger.get(event.event_id)
    assert stored.delivered is False
    assert stored.delivery_attempts == 1
    assert stored.last_error == "stub delivery failed"


def test_redeliver_dry_run_sends_nothing(monkeypatch, registry, ledger):
    event = _pending_event(registry, ledger)
    monkeypatch.setattr(redeliver, "build_alert_ledger", lambda: ledger)

    def _no_dispatcher():
        raise AssertionError("dry run must not build a dispatcher")

    monkeypatch.setattr(redeliver, "build_dispatcher", _no_dispatcher)

    assert redeliver.main(["--dry-run", "--limit", "5"]) == 0
    assert ledger.get(event.event_id).delivery_attempts == 0


def test_redeliver_rejects_unknown_chain():
    assert redeliver.main(["--chain", "doge"]) == 2
