"""Long-running poller entrypoint: one scheduler thread per chain."""

from __future__ import annotations

import argparse
import logging
import signal
import sys

from chainwatch.chains.metadata import UnsupportedChainError, parse_chain
from chainwatch.observability import configure_logging
from chainwatch.services.factories import ChainNotConfiguredError, build_schedulers
from chainwatch.settings import get_settings
from chainwatch.worker.scheduler import PollerService

LOGGER = logging.getLogger("chainwatch.worker.jobs.poller")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Poll monitored wallets and dispatch activity alerts")
    parser.add_argument("--once", action="store_true", help="Run a single cycle per chain and exit")
    parser.add_argument(
        "--chain",
        action="append",
        default=None,
        help="Restrict polling to this chain (repeatable); defaults to every chain with an RPC endpoint",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``chainwatch-poller`` console script."""

    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    try:
        chains = [parse_chain(value) for value in args.chain] if args.chain else None
        schedulers = build_schedulers(chains, settings)
    except (UnsupportedChainError, ChainNotConfiguredError, ValueError):
        LOGGER.exception("Failed to initialise poller")
        return 1
    if not schedulers:
        LOGGER.error("No chains have an RPC endpoint configured; nothing to poll")
        return 1

    LOGGER.info(
        "Starting poller chains=%s evm_interval=%ss solana_interval=%ss max_per_user=%s max_total=%s",
        ",".join(scheduler.chain.value for scheduler in schedulers),
        settings.poller.evm_poll_interval_seconds,
        settings.poller.solana_poll_interval_seconds,
        settings.limits.max_tracked_per_user,
        settings.limits.max_tracked_total,
    )
    service = PollerService(schedulers, tick_seconds=settings.poller.tick_seconds)

    if args.once:
        reports = service.run_once()
        failed = sorted(chain.value for chain, report in reports.items() if report is None)
        if failed:
            LOGGER.error("Cycle failed for: %s", ", ".join(failed))
            return 1
        return 0

    def _handle_signal(signum, _frame) -> None:
        LOGGER.info("Signal %s received, shutting down poller", signum)
        service.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    service.start()
    try:
        while not service.wait(settings.poller.tick_seconds):
            pass
    finally:
        service.stop()
    LOGGER.info("Poller stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
