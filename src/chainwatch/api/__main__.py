"""Serve the chainwatch API with uvicorn using the configured host and port."""

from __future__ import annotations

import argparse

import uvicorn

from chainwatch.observability import configure_logging
from chainwatch.settings import get_settings


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``chainwatch-api`` console script."""

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the chainwatch HTTP API")
    parser.add_argument("--host", default=settings.api.host)
    parser.add_argument("--port", type=int, default=settings.api.port)
    args = parser.parse_args(argv)

    configure_logging(settings)
    uvicorn.run("chainwatch.api.app:app", host=args.host, port=args.port, log_level=settings.runtime.log_level.lower())
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
