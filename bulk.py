"""Regeneration of cube slices after a uniform bulk edit of the ledger."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from config import get_settings
from cube_store import CubeStore, DimensionFilter
from errors import RebuildFailedError, RebuildReadError, TransientStoreError
from models import EntryType, category_key
from periods import Period, PeriodCalculator
from rebuild import RebuildEngine
from retry import RetryPolicy, run_unit
from schemas import (
    BulkUpdate,
    ChangeEvent,
    ChangeOperation,
    CubeField,
    DateRange,
    EntryValues,
    FieldChange,
)

logger = logging.getLogger(__name__)

_VALUE_ATTRS = {
    CubeField.account: "account_id",
    CubeField.category: "category_id",
    CubeField.amount: "amount_cents",
    CubeField.date: "date",
    CubeField.entry_type: "entry_type",
    CubeField.is_recurring: "is_recurring",
}


@dataclass(frozen=True)
class RegenerationTarget:
    """A slice of one period; ``None`` dimensions cover every value."""

    period: Period
    entry_type: Optional[EntryType] = None
    category_key: Optional[int] = None

    @property
    def dimension_filter(self) -> DimensionFilter:
        return DimensionFilter(
            entry_type=self.entry_type, category_key=self.category_key
        )

    def sort_key(self) -> tuple:
        return (
            self.period,
            "" if self.entry_type is None else self.entry_type.value,
            -1 if self.category_key is None else self.category_key,
        )


@dataclass
class BulkUpdateResult:
    targets: list[RegenerationTarget] = field(default_factory=list)
    affected_periods: list[Period] = field(default_factory=list)
    records_deleted: int = 0
    records_inserted: int = 0


def targets_for_change(
    change: FieldChange, period: Period, entry_type: Optional[EntryType]
) -> tuple[RegenerationTarget, RegenerationTarget]:
    """The (old, new) slices of ``period`` a single field change can touch."""
    if change.field == CubeField.category:
        return (
            RegenerationTarget(period, entry_type, category_key(change.old_value)),
            RegenerationTarget(period, entry_type, category_key(change.new_value)),
        )
    if change.field == CubeField.entry_type:
        return (
            RegenerationTarget(period, change.old_value),
            RegenerationTarget(period, change.new_value),
        )
    return (
        RegenerationTarget(period, entry_type),
        RegenerationTarget(period, entry_type),
    )


class BulkUpdateOptimizer:
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

    def affected_periods(self, update: BulkUpdate) -> list[Period]:
        periods = set(
            self.calculator.periods_between(
                update.date_range.start, update.date_range.end
            )
        )
        for change in update.changes:
            if change.field == CubeField.date:
                periods.update(
                    self.calculator.distinct_periods(
                        [change.old_value, change.new_value]
                    )
                )
        return sorted(periods)

    def plan_targets(self, update: BulkUpdate) -> list[RegenerationTarget]:
        targets: set[RegenerationTarget] = set()
        for period in self.affected_periods(update):
            for change in update.changes:
                targets.update(targets_for_change(change, period, update.entry_type))
        return sorted(targets, key=RegenerationTarget.sort_key)

    def apply(self, update: BulkUpdate) -> BulkUpdateResult:
        targets = self.plan_targets(update)
        by_period: dict[Period, list[RegenerationTarget]] = defaultdict(list)
        for target in targets:
            by_period[target.period].append(target)

        result = BulkUpdateResult(targets=targets, affected_periods=sorted(by_period))
        for period in result.affected_periods:
            deleted, inserted = self._regenerate(
                update.tenant_id, period, by_period[period]
            )
            result.records_deleted += deleted
            result.records_inserted += inserted

        logger.info(
            f"bulk_regenerated: tenant={update.tenant_id} "
            f"fields={','.join(c.field.value for c in update.changes)} "
            f"periods={len(result.affected_periods)} targets={len(targets)} "
            f"deleted={result.records_deleted} inserted={result.records_inserted}"
        )
        return result

    def _regenerate(
        self, tenant_id: str, period: Period, targets: list[RegenerationTarget]
    ) -> tuple[int, int]:
        def unit() -> tuple[int, int]:
            self.store.lock_periods(tenant_id, [period])
            deleted = inserted = 0
            for target in targets:
                rebuilt = self.rebuild.rebuild_in_unit(
                    tenant_id, period, target.dimension_filter
                )
                deleted += rebuilt.records_deleted
                inserted += rebuilt.records_inserted
            return deleted, inserted

        try:
            return run_unit(
                self.session,
                unit,
                self.retry_policy,
                label=f"bulk:{tenant_id}:{period.period_type.value}:{period.start}",
            )
        except (TransientStoreError, RebuildReadError) as exc:
            logger.error(
                f"bulk_regenerate_failed: tenant={tenant_id} "
                f"period_type={period.period_type.value} start={period.start} error={exc}"
            )
            raise RebuildFailedError(
                f"Bulk regeneration failed for {period.period_type.value} {period.start}",
                tenant_id=tenant_id,
                period=period,
            ) from exc


def _changed_fields(old: EntryValues, new: EntryValues) -> dict[CubeField, tuple]:
    changed = {}
    for cube_field, attr in _VALUE_ATTRS.items():
        before, after = getattr(old, attr), getattr(new, attr)
        if before != after:
            changed[cube_field] = (before, after)
    return changed


def plan_bulk_update(
    events: Sequence[ChangeEvent], threshold: int
) -> Optional[BulkUpdate]:
    """Describe ``events`` as one uniform bulk edit, or return ``None``.

    A batch qualifies only when it holds at least ``threshold`` UPDATE events
    for a single tenant and every event changes the same fields from the same
    old value to the same new value.
    """
    if threshold <= 0 or len(events) < threshold:
        return None
    tenants = {event.tenant_id for event in events}
    if len(tenants) != 1:
        return None
    if any(event.operation != ChangeOperation.update for event in events):
        return None

    signature: Optional[dict[CubeField, tuple]] = None
    dates: list[date] = []
    for event in events:
        changed = _changed_fields(event.old_values, event.new_values)
        if not changed:
            return None
        if signature is None:
            signature = changed
        elif changed != signature:
            return None
        dates.extend([event.old_values.date, event.new_values.date])

    old_types = {event.old_values.entry_type for event in events}
    new_types = {event.new_values.entry_type for event in events}
    entry_type = None
    if len(old_types) == 1 and old_types == new_types:
        entry_type = next(iter(old_types))

    return BulkUpdate(
        tenant_id=tenants.pop(),
        changes=[
            FieldChange(field=cube_field, old_value=before, new_value=after)
            for cube_field, (before, after) in signature.items()
        ],
        date_range=DateRange(start=min(dates), end=max(dates)),
        entry_type=entry_type,
    )
