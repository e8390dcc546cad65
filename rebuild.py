from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from config import get_settings
from cube_store import CubeCoordinate, CubeStore, DimensionFilter, Facts
from errors import RebuildFailedError, RebuildReadError, TransientStoreError
from ledger import DisplayNameResolver, LedgerReader, SqlLedgerReader, SqlNameLookup
from periods import Period, PeriodCalculator, PeriodType
from retry import RetryPolicy, run_unit

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    tenant_id: str
    period: Period
    records_deleted: int
    records_inserted: int


@dataclass
class PopulateResult:
    periods_processed: int = 0
    records_created: int = 0
    failed_periods: list[Period] = field(default_factory=list)
    elapsed_secs: float = 0.0


class RebuildEngine:
    def __init__(
        self,
        session: Session,
        *,
        store: Optional[CubeStore] = None,
        calculator: Optional[PeriodCalculator] = None,
        ledger: Optional[LedgerReader] = None,
        names: Optional[DisplayNameResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.session = session
        self.store = store or CubeStore(session)
        self.calculator = calculator or PeriodCalculator(get_settings().week_starts_on)
        self.ledger = ledger or SqlLedgerReader(session)
        self.names = names or DisplayNameResolver(SqlNameLookup(session))
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    def _check_aligned(self, period: Period) -> None:
        if self.calculator.period_for(period.start, period.period_type) != period:
            raise ValueError(f"Period {period} is not aligned to its boundary rule")

    def compute(
        self,
        tenant_id: str,
        period: Period,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> dict[CubeCoordinate, Facts]:
        """Recompute a slice from the ledger without writing anything."""
        self._check_aligned(period)
        facts: dict[CubeCoordinate, Facts] = {}
        for group in self.ledger.aggregate(
            tenant_id, period.start, period.end, dimension_filter
        ):
            coordinate = CubeCoordinate(
                tenant_id=tenant_id,
                period_type=period.period_type,
                period_start=period.start,
                period_end=period.end,
                entry_type=group.entry_type,
                category_key=group.category_key,
                account_id=group.account_id,
                is_recurring=group.is_recurring,
            )
            facts[coordinate] = facts.get(coordinate, Facts()) + Facts(
                group.total_amount_cents, group.entry_count
            )
        return facts

    def rebuild_in_unit(
        self,
        tenant_id: str,
        period: Period,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> RebuildResult:
        """Delete and recompute one slice.

        The caller owns the transaction and must already hold the period lock.
        """
        deleted = self.store.delete_matching(tenant_id, period, dimension_filter)
        facts = self.compute(tenant_id, period, dimension_filter)
        names = {coordinate: self.names.names_for(coordinate) for coordinate in facts}
        inserted = self.store.insert_records(facts, names)
        return RebuildResult(
            tenant_id=tenant_id,
            period=period,
            records_deleted=deleted,
            records_inserted=inserted,
        )

    def rebuild(
        self,
        tenant_id: str,
        period: Period,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> RebuildResult:
        self._check_aligned(period)

        def unit() -> RebuildResult:
            self.store.lock_periods(tenant_id, [period])
            return self.rebuild_in_unit(tenant_id, period, dimension_filter)

        label = f"rebuild:{tenant_id}:{period.period_type.value}:{period.start}"
        try:
            result = run_unit(self.session, unit, self.retry_policy, label=label)
        except (TransientStoreError, RebuildReadError) as exc:
            logger.error(
                f"cube_rebuild_failed: tenant={tenant_id} period_type={period.period_type.value} "
                f"start={period.start} error={exc}"
            )
            raise RebuildFailedError(
                f"Rebuild failed for {period.period_type.value} {period.start}",
                tenant_id=tenant_id,
                period=period,
            ) from exc

        logger.info(
            f"cube_rebuild: tenant={tenant_id} period_type={period.period_type.value} "
            f"start={period.start} deleted={result.records_deleted} "
            f"inserted={result.records_inserted}"
        )
        return result

    def rebuild_range(
        self,
        tenant_id: str,
        start: date,
        end: date,
        period_type: Optional[PeriodType] = None,
    ) -> list[RebuildResult]:
        periods = self.calculator.periods_between(start, end)
        if period_type is not None:
            periods = [p for p in periods if p.period_type == period_type]
        return [self.rebuild(tenant_id, period) for period in periods]

    def populate(
        self,
        tenant_id: str,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        clear_existing: bool = False,
    ) -> PopulateResult:
        """Build every weekly and monthly period from the ledger's history.

        A period that fails to rebuild is recorded and skipped; the next
        reconciliation or populate run picks it up again.
        """
        started = time.perf_counter()
        result = PopulateResult()

        bounds = self.ledger.date_bounds(tenant_id)
        if bounds is not None:
            start = start or bounds[0]
            end = end or bounds[1]
        if start is None or end is None:
            result.elapsed_secs = time.perf_counter() - started
            return result

        if clear_existing:
            self.clear(tenant_id)

        for period in self.calculator.periods_between(start, end):
            try:
                rebuilt = self.rebuild(tenant_id, period)
            except RebuildFailedError:
                result.failed_periods.append(period)
                continue
            result.periods_processed += 1
            result.records_created += rebuilt.records_inserted

        result.elapsed_secs = time.perf_counter() - started
        logger.info(
            f"cube_populate: tenant={tenant_id} start={start} end={end} "
            f"periods={result.periods_processed} records={result.records_created} "
            f"failed={len(result.failed_periods)}"
        )
        return result

    def clear(self, tenant_id: str) -> int:
        removed = run_unit(
            self.session,
            lambda: self.store.clear_tenant(tenant_id),
            self.retry_policy,
            label=f"clear:{tenant_id}",
        )
        logger.info(f"cube_clear: tenant={tenant_id} removed={removed}")
        return removed
