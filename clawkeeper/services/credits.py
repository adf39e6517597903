from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clawkeeper.core.config import get_settings
from clawkeeper.core.errors import LedgerContentionError, OrganizationNotFound, PersistenceError
from clawkeeper.domain.models import Organization
from clawkeeper.services.plans import PlanLimits, get_plan_limits, normalize_plan


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CreditCheckResult:
    # remaining/cap are None for plans with unlimited credits.
    allowed: bool
    remaining: int | None
    cap: int | None


@dataclass(frozen=True)
class CreditBalance:
    remaining: int | None
    cap: int | None


@dataclass(frozen=True)
class _LedgerRow:
    # Detached snapshot of the ledger columns, including the CAS version.
    plan: str
    balance: int
    cap: int | None
    last_refill_at: datetime
    version: int


def refill_balance(balance: int, monthly_cap: int, *, rollover: bool) -> int:
    # Rollover plans accumulate up to twice the allotment; others hard-reset.
    if rollover:
        return min(balance + monthly_cap, monthly_cap * 2)
    return monthly_cap


class CreditLedger:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic refill tests.
        self._time_provider = time_provider or _utc_now

    async def check_and_deduct(self, *, session: AsyncSession, org_id: str) -> CreditCheckResult:
        # Refill lazily, then spend one credit; every write is a versioned compare-and-swap.
        settings = get_settings()
        attempts = max(1, int(settings.credit_cas_max_attempts))
        for attempt in range(1, attempts + 1):
            row = await _load_ledger_row(session, org_id)
            if row is None:
                return CreditCheckResult(allowed=False, remaining=0, cap=0)
            limits = get_plan_limits(row.plan)
            monthly_cap = limits.credits_monthly
            if monthly_cap is None:
                await _end_read(session)
                return CreditCheckResult(allowed=True, remaining=None, cap=None)

            now = self._time_provider()
            balance = row.balance
            version = row.version
            if self._refill_due(row.last_refill_at, now):
                balance = refill_balance(balance, monthly_cap, rollover=limits.credits_rollover)
                # Persist the refill on its own so peek and later calls see it even if the deduction loses.
                swapped = await _compare_and_swap(
                    session,
                    org_id=org_id,
                    expected_version=version,
                    values={
                        "credits_balance": balance,
                        "credits_monthly_cap": monthly_cap,
                        "credits_last_refill_at": now,
                    },
                )
                if not swapped:
                    logger.debug("credit_refill_cas_conflict org_id=%s attempt=%s", org_id, attempt)
                    continue
                version += 1
                logger.info(
                    "credits_refilled org_id=%s plan=%s balance=%s cap=%s",
                    org_id,
                    row.plan,
                    balance,
                    monthly_cap,
                )

            if balance <= 0:
                await _end_read(session)
                return CreditCheckResult(allowed=False, remaining=0, cap=monthly_cap)

            swapped = await _compare_and_swap(
                session,
                org_id=org_id,
                expected_version=version,
                values={"credits_balance": balance - 1},
            )
            if not swapped:
                logger.debug("credit_deduct_cas_conflict org_id=%s attempt=%s", org_id, attempt)
                continue
            return CreditCheckResult(allowed=True, remaining=balance - 1, cap=monthly_cap)

        logger.warning("credit_ledger_contention org_id=%s attempts=%s", org_id, attempts)
        raise LedgerContentionError("Credit ledger is busy; retry the upload")

    async def peek(self, *, session: AsyncSession, org_id: str) -> CreditBalance:
        # Project a due refill without persisting it so dashboard reads never mutate state.
        row = await _load_ledger_row(session, org_id)
        if row is None:
            raise OrganizationNotFound("Organization not found")
        await _end_read(session)
        limits = get_plan_limits(row.plan)
        monthly_cap = limits.credits_monthly
        if monthly_cap is None:
            return CreditBalance(remaining=None, cap=None)
        balance = row.balance
        if self._refill_due(row.last_refill_at, self._time_provider()):
            balance = refill_balance(balance, monthly_cap, rollover=limits.credits_rollover)
        return CreditBalance(remaining=balance, cap=monthly_cap)

    async def apply_plan_change(
        self,
        *,
        session: AsyncSession,
        org_id: str,
        plan: str,
    ) -> CreditBalance:
        # Called by the billing collaborator; a capped target plan clamps any over-cap balance.
        settings = get_settings()
        normalized = normalize_plan(plan)
        limits = get_plan_limits(normalized)
        for _attempt in range(max(1, int(settings.credit_cas_max_attempts))):
            row = await _load_ledger_row(session, org_id)
            if row is None:
                raise OrganizationNotFound("Organization not found")
            balance = _balance_for_plan(row.balance, limits)
            swapped = await _compare_and_swap(
                session,
                org_id=org_id,
                expected_version=row.version,
                values={
                    "plan": normalized,
                    "credits_balance": balance,
                    "credits_monthly_cap": limits.credits_monthly,
                },
            )
            if swapped:
                logger.info(
                    "credits_plan_changed org_id=%s from_plan=%s to_plan=%s balance=%s",
                    org_id,
                    row.plan,
                    normalized,
                    balance,
                )
                return CreditBalance(
                    remaining=None if limits.credits_monthly is None else balance,
                    cap=limits.credits_monthly,
                )
        raise LedgerContentionError("Credit ledger is busy; retry the plan change")

    def _refill_due(self, last_refill_at: datetime, now: datetime) -> bool:
        interval = timedelta(days=get_settings().credit_refill_interval_days)
        return now - _as_utc(last_refill_at) >= interval


_credit_ledger: CreditLedger | None = None


def get_credit_ledger() -> CreditLedger:
    # Cache the ledger for reuse across requests.
    global _credit_ledger
    if _credit_ledger is None:
        _credit_ledger = CreditLedger()
    return _credit_ledger


def reset_credit_ledger() -> None:
    # Reset cached services for deterministic tests.
    global _credit_ledger
    _credit_ledger = None


def credit_headers(result: CreditCheckResult | CreditBalance) -> dict[str, str]:
    # Render ledger state for agents with the same unlimited token used in dashboards.
    return {
        "X-Credits-Remaining": "unlimited" if result.remaining is None else str(result.remaining),
        "X-Credits-Cap": "unlimited" if result.cap is None else str(result.cap),
    }


def _balance_for_plan(balance: int, limits: PlanLimits) -> int:
    if limits.credits_monthly is None:
        return balance
    return max(0, min(balance, limits.credits_monthly))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _load_ledger_row(session: AsyncSession, org_id: str) -> _LedgerRow | None:
    # Read columns directly so a retry never sees a stale identity-map instance.
    try:
        result = await session.execute(
            select(
                Organization.plan,
                Organization.credits_balance,
                Organization.credits_monthly_cap,
                Organization.credits_last_refill_at,
                Organization.version,
            ).where(Organization.id == org_id)
        )
        row = result.one_or_none()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Database error while reading credit balance") from exc
    if row is None:
        await _end_read(session)
        return None
    return _LedgerRow(
        plan=normalize_plan(row.plan),
        balance=int(row.credits_balance or 0),
        cap=row.credits_monthly_cap,
        last_refill_at=row.credits_last_refill_at,
        version=int(row.version or 0),
    )


async def _compare_and_swap(
    session: AsyncSession,
    *,
    org_id: str,
    expected_version: int,
    values: dict,
) -> bool:
    # Write only if nobody else touched the row since we read it; commit or roll back immediately.
    try:
        result = await session.execute(
            update(Organization)
            .where(Organization.id == org_id, Organization.version == expected_version)
            .values(version=Organization.version + 1, updated_at=_utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await session.rollback()
            return False
        await session.commit()
        return True
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Database error while updating credit balance") from exc


async def _end_read(session: AsyncSession) -> None:
    # Release the read transaction so the next attempt observes fresh committed state.
    if session.in_transaction():
        await session.rollback()
