from __future__ import annotations

import argparse
import asyncio

from siemrelay.core.logging import configure_logging
from siemrelay.services.delivery.transport import HttpxTransport
from siemrelay.services.delivery.worker import DeliveryWorkerPool


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the polling SIEM delivery worker pool")
    parser.add_argument("--concurrency", type=int, default=None, help="Global in-flight attempt limit")
    parser.add_argument("--batch-size", type=int, default=None, help="Due jobs fetched per poll")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between polls")
    parser.add_argument("--once", action="store_true", help="Drain currently due jobs and exit")
    return parser


async def _main(args: argparse.Namespace) -> None:
    # Run delivery independently from API handlers so retries continue with no producer traffic.
    configure_logging()
    pool = DeliveryWorkerPool(
        transport=HttpxTransport(),
        concurrency=args.concurrency,
        batch_size=args.batch_size,
        poll_interval_s=args.poll_interval,
    )
    if args.once:
        stats = await pool.run_once()
        print(f"due={stats['due']} started={stats['started']} skipped={stats['skipped']} processed={stats['processed']}")
        return
    await pool.run_forever()


if __name__ == "__main__":
    asyncio.run(_main(_build_parser().parse_args()))
