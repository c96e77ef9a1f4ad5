from __future__ import annotations

import argparse
import asyncio
import sys

from siemrelay.persistence.db import SessionLocal
from siemrelay.services.delivery.dead_letters import list_failures


def _build_parser() -> argparse.ArgumentParser:
    # Keep listing scoped to one tenant to avoid accidental cross-tenant operator exposure.
    parser = argparse.ArgumentParser(description="List dead-lettered SIEM deliveries for a tenant")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--limit", type=int, default=50, help="Maximum rows to print")
    return parser


async def _list(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        rows = await list_failures(session=session, tenant_id=args.tenant, limit=args.limit)
    print("job_id\tendpoint_id\tevent_id\tattempts_made\tlast_outcome\tlast_http_status\tcreated_at\tlast_error")
    for row in rows:
        print(
            f"{row.job_id}\t{row.endpoint_id}\t{row.event_id}\t{row.attempts_made}\t{row.last_outcome}\t"
            f"{row.last_http_status if row.last_http_status is not None else ''}\t"
            f"{row.created_at.isoformat()}\t{row.last_error or ''}"
        )
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_list(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_failures failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
