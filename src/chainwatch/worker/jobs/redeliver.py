"""Reconciliation job that re-attempts delivery of undelivered alerts."""

from __future__ import annotations

import argparse
import logging
import sys

from chainwatch.chains.metadata import UnsupportedChainError, parse_chain
from chainwatch.notifications.formatter import format_alert
from chainwatch.observability import configure_logging
from chainwatch.services.factories import build_alert_ledger, build_dispatcher
from chainwatch.settings import get_settings

LOGGER = logging.getLogger("chainwatch.worker.jobs.redeliver")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Re-send alerts whose delivery previously failed")
    parser.add_argument("--limit", type=int, default=None, help="Maximum alerts to process (default from settings)")
    parser.add_argument("--chain", default=None, help="Only reconcile alerts for this chain")
    parser.add_argument("--dry-run", action="store_true", help="List pending alerts without sending them")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``chainwatch-redeliver`` console script."""

    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    limit = args.limit if args.limit is not None else settings.poller.redelivery_batch_limit
    try:
        chain = parse_chain(args.chain) if args.chain else None
    except UnsupportedChainError:
        LOGGER.exception("Invalid --chain value")
        return 2

    try:
        ledger = build_alert_ledger()
    except Exception:
        LOGGER.exception("Failed to initialise alert ledger")
        return 1

    pending = ledger.pending_deliveries(chain, limit=limit)
    if not pending:
        LOGGER.info("No undelivered alerts; exiting")
        return 0

    LOGGER.info("Reconciling %s undelivered alert(s) dry_run=%s", len(pending), args.dry_run)
    if args.dry_run:
        for item in pending:
            LOGGER.info(
                "Dry run: would deliver event_id=%s chain=%s tx=%s to %s attempts=%s",
                item.event.event_id,
                item.event.chain.value,
                item.event.tx_id,
                item.entity.destination,
                item.event.delivery_attempts,
            )
        return 0

    try:
        dispatcher = build_dispatcher()
    except ValueError:
        LOGGER.exception("Failed to initialise notification dispatcher")
        return 1

    delivered = 0
    failures = 0
    for item in pending:
        if dispatcher.deliver(item.entity.destination, format_alert(item.entity, item.event)):
            ledger.mark_delivered(item.event.event_id)
            delivered += 1
        else:
            ledger.record_delivery_failure(item.event.event_id, f"{dispatcher.name} delivery failed")
            failures += 1

    LOGGER.info("Redelivery batch complete: delivered=%s failures=%s", delivered, failures)
    return 0 if failures == 0 else 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
