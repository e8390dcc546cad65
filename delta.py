"""Incremental maintenance of the cube from ledger change events."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from cube_store import CubeCoordinate, CubeStore, Facts, dialect_insert
from errors import CubeInvariantError, TransientStoreError
from ledger import DisplayNameResolver, SqlNameLookup
from models import AppliedEvent
from periods import Period, PeriodCalculator
from rebuild import RebuildEngine
from retry import RetryPolicy, run_unit
from schemas import ChangeEvent, EntryValues

logger = logging.getLogger(__name__)


@dataclass
class DeltaResult:
    events_applied: int = 0
    events_skipped: int = 0
    coordinates_written: int = 0
    records_deleted: int = 0
    escalated_periods: list[Period] = field(default_factory=list)

    def merge(self, other: "DeltaResult") -> "DeltaResult":
        self.events_applied += other.events_applied
        self.events_skipped += other.events_skipped
        self.coordinates_written += other.coordinates_written
        self.records_deleted += other.records_deleted
        self.escalated_periods.extend(other.escalated_periods)
        return self


def _values_of(event: ChangeEvent) -> list[EntryValues]:
    return [v for v in (event.old_values, event.new_values) if v is not None]


def contributions(
    event: ChangeEvent, calculator: PeriodCalculator
) -> list[tuple[CubeCoordinate, Facts]]:
    """Signed fact contributions of one event, one per covering period.

    Old values are retracted and new values added, so an UPDATE that moves an
    entry between coordinates yields a negative and a positive contribution.
    """
    out: list[tuple[CubeCoordinate, Facts]] = []
    for values, sign in ((event.old_values, -1), (event.new_values, 1)):
        if values is None:
            continue
        for period in calculator.periods_covering(values.date):
            coordinate = CubeCoordinate.for_values(event.tenant_id, period, values)
            out.append((coordinate, Facts(sign * values.amount_cents, sign)))
    return out


def net_deltas(
    events: Iterable[ChangeEvent], calculator: PeriodCalculator
) -> dict[CubeCoordinate, Facts]:
    netted: dict[CubeCoordinate, Facts] = defaultdict(Facts)
    for event in events:
        for coordinate, facts in contributions(event, calculator):
            netted[coordinate] = netted[coordinate] + facts
    return {c: f for c, f in netted.items() if not f.is_zero}


def affected_periods(
    events: Iterable[ChangeEvent], calculator: PeriodCalculator
) -> list[Period]:
    dates = [values.date for event in events for values in _values_of(event)]
    return sorted(calculator.distinct_periods(dates))


class DeltaEngine:
    def __init__(
        self,
        session: Session,
        *,
        store: Optional[CubeStore] = None,
        calculator: Optional[PeriodCalculator] = None,
        rebuild: Optional[RebuildEngine] = None,
        names: Optional[DisplayNameResolver] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.session = session
        self.store = store or CubeStore(session)
        self.calculator = calculator or PeriodCalculator(get_settings().week_starts_on)
        self.names = names or DisplayNameResolver(SqlNameLookup(session))
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.rebuild = rebuild or RebuildEngine(
            session,
            store=self.store,
            calculator=self.calculator,
            names=self.names,
            retry_policy=self.retry_policy,
        )

    def apply(self, events: Sequence[ChangeEvent]) -> DeltaResult:
        by_tenant: dict[str, list[ChangeEvent]] = defaultdict(list)
        for event in events:
            by_tenant[event.tenant_id].append(event)

        result = DeltaResult()
        for tenant_id in sorted(by_tenant):
            result.merge(self._apply_tenant(tenant_id, by_tenant[tenant_id]))
        return result

    def apply_in_unit(self, tenant_id: str, events: Sequence[ChangeEvent]) -> DeltaResult:
        """Lock, dedupe and apply one tenant's events inside the caller's unit.

        Nothing is committed here. A ledger write staged on the same session
        lands together with these increments, so a rebuild of the same period
        sees either both or neither.
        """
        events = list(events)
        self.store.lock_periods(tenant_id, affected_periods(events, self.calculator))
        fresh = self._claim(tenant_id, events)
        outcome = DeltaResult(
            events_applied=len(fresh), events_skipped=len(events) - len(fresh)
        )
        deltas = net_deltas(fresh, self.calculator)
        for coordinate in sorted(deltas):
            facts = deltas[coordinate]
            self.store.increment(
                coordinate,
                facts.total_amount_cents,
                facts.entry_count,
                self.names.names_for(coordinate),
            )
            outcome.coordinates_written += 1
            if self.store.delete_if_zero(coordinate):
                outcome.records_deleted += 1
        return outcome

    def _apply_tenant(self, tenant_id: str, events: list[ChangeEvent]) -> DeltaResult:
        try:
            outcome = run_unit(
                self.session,
                lambda: self.apply_in_unit(tenant_id, events),
                self.retry_policy,
                label=f"delta:{tenant_id}:{len(events)}",
            )
        except (TransientStoreError, CubeInvariantError) as exc:
            return self.escalate(tenant_id, events, exc)

        if outcome.events_applied or outcome.events_skipped:
            logger.info(
                f"delta_applied: tenant={tenant_id} applied={outcome.events_applied} "
                f"skipped={outcome.events_skipped} written={outcome.coordinates_written} "
                f"deleted={outcome.records_deleted}"
            )
        return outcome

    def _claim(self, tenant_id: str, events: list[ChangeEvent]) -> list[ChangeEvent]:
        """Drop already-applied keyed events and record the rest as applied."""
        keys = {e.idempotency_key for e in events if e.idempotency_key}
        seen: set[str] = set()
        if keys:
            seen = set(
                self.session.scalars(
                    select(AppliedEvent.idempotency_key).where(
                        AppliedEvent.tenant_id == tenant_id,
                        AppliedEvent.idempotency_key.in_(keys),
                    )
                ).all()
            )

        fresh: list[ChangeEvent] = []
        claimed: list[ChangeEvent] = []
        for event in events:
            key = event.idempotency_key
            if key:
                if key in seen:
                    continue
                seen.add(key)
                claimed.append(event)
            fresh.append(event)
        self._record_applied(tenant_id, claimed)
        return fresh

    def _record_applied(self, tenant_id: str, events: list[ChangeEvent]) -> None:
        if not events:
            return
        stmt = dialect_insert(self.session, AppliedEvent).values(
            [
                {
                    "tenant_id": tenant_id,
                    "idempotency_key": event.idempotency_key,
                    "entry_id": event.entry_id,
                }
                for event in events
            ]
        )
        self.session.execute(
            stmt.on_conflict_do_nothing(
                index_elements=[AppliedEvent.tenant_id, AppliedEvent.idempotency_key]
            )
        )

    def record_applied(self, tenant_id: str, events: Sequence[ChangeEvent]) -> int:
        """Mark keyed events as applied after another path made them effective."""
        keyed = [e for e in events if e.idempotency_key]
        if not keyed:
            return 0

        def unit() -> int:
            return len(self._claim(tenant_id, keyed))

        return run_unit(
            self.session,
            unit,
            self.retry_policy,
            label=f"record_applied:{tenant_id}",
        )

    def escalate(
        self, tenant_id: str, events: Sequence[ChangeEvent], error: Exception
    ) -> DeltaResult:
        """Rebuild every period the batch touches instead of applying it.

        Only a failing rebuild propagates.
        """
        events = list(events)
        periods = affected_periods(events, self.calculator)
        entry_ids = ",".join(str(e.entry_id) for e in events)
        logger.warning(
            f"delta_escalated: tenant={tenant_id} entries=[{entry_ids}] "
            f"periods={len(periods)} error={type(error).__name__}: {error}"
        )
        for period in periods:
            self.rebuild.rebuild(tenant_id, period)

        applied = len(events)
        keyed = [e for e in events if e.idempotency_key]
        if keyed:
            try:
                newly = self.record_applied(tenant_id, keyed)
            except TransientStoreError as exc:
                logger.error(
                    f"idempotency_record_failed: tenant={tenant_id} "
                    f"keys={len(keyed)} error={exc}"
                )
            else:
                applied -= len(keyed) - newly
        return DeltaResult(
            events_applied=applied,
            events_skipped=len(events) - applied,
            escalated_periods=list(periods),
        )
