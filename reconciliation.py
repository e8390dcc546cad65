from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from cube_store import CubeCoordinate, CubeStore, Facts
from errors import RebuildFailedError, RebuildReadError, TransientStoreError
from ledger import SqlLedgerReader
from models import CubeDiscrepancy, CubeRecord
from periods import Period, PeriodCalculator
from rebuild import RebuildEngine
from retry import RetryPolicy, run_unit

logger = logging.getLogger(__name__)


def local_today() -> date:
    return datetime.now(ZoneInfo(get_settings().timezone)).date()


@dataclass(frozen=True)
class ReconciliationWindow:
    weeks: int
    months: int
    today: Optional[date] = None

    @classmethod
    def from_settings(cls, today: Optional[date] = None) -> "ReconciliationWindow":
        settings = get_settings()
        return cls(
            weeks=settings.reconcile_weeks,
            months=settings.reconcile_months,
            today=today,
        )


@dataclass(frozen=True)
class Discrepancy:
    coordinate: CubeCoordinate
    expected: Facts
    actual: Facts


@dataclass
class ReconciliationReport:
    run_id: str
    tenant_id: str
    periods_checked: int = 0
    discrepancies: list[Discrepancy] = field(default_factory=list)
    repeated: list[Discrepancy] = field(default_factory=list)
    rebuilt_periods: list[Period] = field(default_factory=list)
    failed_periods: list[Period] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies and not self.failed_periods


def diff_facts(
    expected: dict[CubeCoordinate, Facts], actual: dict[CubeCoordinate, Facts]
) -> list[Discrepancy]:
    found = []
    for coordinate in sorted(set(expected) | set(actual)):
        want = expected.get(coordinate, Facts())
        have = actual.get(coordinate, Facts())
        if want != have:
            found.append(Discrepancy(coordinate, want, have))
    return found


class ReconciliationService:
    def __init__(
        self,
        session: Session,
        *,
        store: Optional[CubeStore] = None,
        calculator: Optional[PeriodCalculator] = None,
        rebuild: Optional[RebuildEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.session = session
        self.store = store or CubeStore(session)
        self.calculator = calculator or PeriodCalculator(get_settings().week_starts_on)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.rebuild = rebuild or RebuildEngine(
            session,
            store=self.store,
            calculator=self.calculator,
            retry_policy=self.retry_policy,
        )

    def check_period(self, tenant_id: str, period: Period) -> list[Discrepancy]:
        """Shadow-compute one period and diff it against the live records."""

        def unit() -> list[Discrepancy]:
            self.store.lock_periods(tenant_id, [period])
            expected = self.rebuild.compute(tenant_id, period)
            actual = self.store.facts_by_coordinate(tenant_id, period)
            return diff_facts(expected, actual)

        return run_unit(
            self.session,
            unit,
            self.retry_policy,
            label=f"reconcile_check:{tenant_id}:{period.period_type.value}:{period.start}",
        )

    def run(
        self, tenant_id: str, window: Optional[ReconciliationWindow] = None
    ) -> ReconciliationReport:
        window = window or ReconciliationWindow.from_settings()
        today = window.today or local_today()
        report = ReconciliationReport(run_id=uuid.uuid4().hex, tenant_id=tenant_id)

        for period in self.calculator.recent_periods(today, window.weeks, window.months):
            try:
                found = self.check_period(tenant_id, period)
            except (TransientStoreError, RebuildReadError) as exc:
                logger.error(
                    f"reconcile_check_failed: tenant={tenant_id} "
                    f"period_type={period.period_type.value} start={period.start} error={exc}"
                )
                report.failed_periods.append(period)
                continue
            report.periods_checked += 1
            if not found:
                continue

            report.discrepancies.extend(found)
            report.repeated.extend(self._record(report.run_id, found))
            try:
                self.rebuild.rebuild(tenant_id, period)
            except RebuildFailedError:
                # Left for the next scheduled run.
                report.failed_periods.append(period)
                continue
            report.rebuilt_periods.append(period)

        logger.info(
            f"reconcile_run: tenant={tenant_id} run_id={report.run_id} "
            f"periods={report.periods_checked} discrepancies={len(report.discrepancies)} "
            f"repeated={len(report.repeated)} rebuilt={len(report.rebuilt_periods)} "
            f"failed={len(report.failed_periods)}"
        )
        return report

    def _record(self, run_id: str, found: list[Discrepancy]) -> list[Discrepancy]:
        """Persist discrepancies; returns those already seen by an earlier run."""

        def unit() -> list[Discrepancy]:
            repeated = []
            for item in found:
                c = item.coordinate
                prior = self.session.scalar(
                    select(CubeDiscrepancy.id)
                    .where(
                        CubeDiscrepancy.tenant_id == c.tenant_id,
                        CubeDiscrepancy.period_type == c.period_type,
                        CubeDiscrepancy.period_start == c.period_start,
                        CubeDiscrepancy.entry_type == c.entry_type,
                        CubeDiscrepancy.category_key == c.category_key,
                        CubeDiscrepancy.account_id == c.account_id,
                        CubeDiscrepancy.is_recurring == c.is_recurring,
                        CubeDiscrepancy.run_id != run_id,
                    )
                    .limit(1)
                )
                if prior is not None:
                    repeated.append(item)
                self.session.add(
                    CubeDiscrepancy(
                        run_id=run_id,
                        tenant_id=c.tenant_id,
                        period_type=c.period_type,
                        period_start=c.period_start,
                        entry_type=c.entry_type,
                        category_key=c.category_key,
                        account_id=c.account_id,
                        is_recurring=c.is_recurring,
                        expected_total_cents=item.expected.total_amount_cents,
                        expected_count=item.expected.entry_count,
                        actual_total_cents=item.actual.total_amount_cents,
                        actual_count=item.actual.entry_count,
                    )
                )
            self.session.flush()
            return repeated

        repeated = run_unit(
            self.session, unit, self.retry_policy, label=f"reconcile_record:{run_id}"
        )
        for item in found:
            c = item.coordinate
            level = logging.ERROR if item in repeated else logging.WARNING
            logger.log(
                level,
                f"cube_discrepancy: run_id={run_id} tenant={c.tenant_id} "
                f"period_type={c.period_type.value} start={c.period_start} "
                f"entry_type={c.entry_type.value} category={c.category_key} "
                f"account={c.account_id} recurring={c.is_recurring} "
                f"expected={item.expected.total_amount_cents}/{item.expected.entry_count} "
                f"actual={item.actual.total_amount_cents}/{item.actual.entry_count} "
                f"repeated={item in repeated}",
            )
        return repeated


def run_reconciliation(
    session: Session,
    tenant_id: str,
    window: Optional[ReconciliationWindow] = None,
) -> ReconciliationReport:
    return ReconciliationService(session).run(tenant_id, window)


def reconcile_all_tenants(
    session: Session, window: Optional[ReconciliationWindow] = None
) -> list[ReconciliationReport]:
    tenants = set(SqlLedgerReader(session).tenants())
    tenants.update(session.scalars(select(CubeRecord.tenant_id).distinct()).all())
    service = ReconciliationService(session)
    return [service.run(tenant_id, window) for tenant_id in sorted(tenants)]
