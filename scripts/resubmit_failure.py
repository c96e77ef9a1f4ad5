from __future__ import annotations

import argparse
import asyncio
import sys

from siemrelay.core.errors import ConfigurationMissingError, DeadLetterNotFoundError
from siemrelay.persistence.db import SessionLocal
from siemrelay.services.delivery.dead_letters import resubmit


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resubmit a dead-lettered SIEM delivery as a new job")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--job-id", required=True, help="Dead-lettered job id")
    parser.add_argument("--actor", default=None, help="Operator id recorded in the audit trail")
    return parser


async def _resubmit(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        try:
            job = await resubmit(session=session, tenant_id=args.tenant, job_id=args.job_id, actor_id=args.actor)
        except DeadLetterNotFoundError:
            print(f"no dead letter for job {args.job_id} in tenant {args.tenant}", file=sys.stderr)
            return 2
        except ConfigurationMissingError as exc:
            print(f"endpoint unavailable: {exc.reason}", file=sys.stderr)
            return 3
    print(f"job_id={job.id} resubmitted_from_job_id={job.resubmitted_from_job_id} status={job.status}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_resubmit(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"resubmit_failure failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
