from __future__ import annotations

import argparse
import asyncio
import sys

from clawkeeper.core.logging import configure_logging
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.services.credits import get_credit_ledger
from clawkeeper.services.plans import PLAN_LIMITS


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Move an organization to another plan and reconcile its scan credits"
    )
    parser.add_argument("org_id", help="Organization id")
    parser.add_argument("plan", choices=sorted(PLAN_LIMITS), help="Target plan")
    return parser


async def _apply(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        balance = await get_credit_ledger().apply_plan_change(
            session=session, org_id=args.org_id, plan=args.plan
        )
    remaining = "unlimited" if balance.remaining is None else balance.remaining
    cap = "unlimited" if balance.cap is None else balance.cap
    print(f"Plan changed: org_id={args.org_id} plan={args.plan} remaining={remaining} cap={cap}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_apply(args))
    except Exception as exc:  # noqa: BLE001 - surface plan change failures clearly in CLI output.
        print(f"apply_plan_change failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
