from __future__ import annotations

import asyncio
import sys

from sqlalchemy import select

from clawkeeper.domain.models import AlertRule, NotificationSettings, Organization, OrgMember
from clawkeeper.persistence.db import SessionLocal
from clawkeeper.services.plans import get_plan_limits


DEMO_ORG_ID = "org-demo"
DEMO_PLAN = "pro"
DEMO_OWNER_EMAIL = "owner@example.com"


def build_demo_rules() -> list[AlertRule]:
    return [
        AlertRule(
            org_id=DEMO_ORG_ID,
            name="Grade dropped",
            rule_type="grade_drop",
            config_json={},
        ),
        AlertRule(
            org_id=DEMO_ORG_ID,
            name="Score under 70",
            rule_type="score_below",
            config_json={"threshold": 70},
        ),
        AlertRule(
            org_id=DEMO_ORG_ID,
            name="Firewall failing",
            rule_type="check_fail",
            config_json={"check_name": "firewall"},
        ),
    ]


async def seed_demo() -> int:
    async with SessionLocal() as session:
        org = await session.get(Organization, DEMO_ORG_ID)
        if org is not None:
            await session.commit()
            print("Demo organization already seeded; skipping.")
            return 0

        limits = get_plan_limits(DEMO_PLAN)
        session.add(
            Organization(
                id=DEMO_ORG_ID,
                name="Demo Org",
                plan=DEMO_PLAN,
                credits_balance=limits.credits_monthly or 0,
                credits_monthly_cap=limits.credits_monthly,
            )
        )
        await session.flush()
        session.add(
            OrgMember(org_id=DEMO_ORG_ID, user_id="demo-owner", email=DEMO_OWNER_EMAIL, role="owner")
        )
        session.add(
            NotificationSettings(
                org_id=DEMO_ORG_ID,
                email_enabled=True,
                email_address=DEMO_OWNER_EMAIL,
            )
        )
        session.add_all(build_demo_rules())
        await session.commit()

        rule_count = len(
            (await session.execute(select(AlertRule.id).where(AlertRule.org_id == DEMO_ORG_ID))).all()
        )
    print(f"Seeded {DEMO_ORG_ID} ({DEMO_PLAN}) with {rule_count} alert rules.")
    print(f"Upload with: curl -H 'X-Org-Id: {DEMO_ORG_ID}' -d @scan.json localhost:8000/v1/scans")
    return 0


def main() -> int:
    # Exit non-zero so CI/dev scripts can detect setup failures.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
