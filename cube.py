from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence, Union

from sqlalchemy.orm import Session

from bulk import BulkUpdateOptimizer, BulkUpdateResult, plan_bulk_update
from config import get_settings
from cube_store import CubeStore
from delta import DeltaEngine, DeltaResult
from errors import CubeInvariantError, TransientStoreError
from ledger import DisplayNameResolver, NameLookup, SqlLedgerReader, SqlNameLookup
from periods import PeriodCalculator
from queries import CubeQueryService
from rebuild import RebuildEngine
from reconciliation import ReconciliationService
from retry import RetryPolicy, run_unit
from schemas import BulkUpdate, ChangeEvent

logger = logging.getLogger(__name__)


class CubeService:
    """Entry point wiring the store, engines and read path for one session."""

    def __init__(
        self,
        session: Session,
        *,
        calculator: Optional[PeriodCalculator] = None,
        name_lookup: Optional[NameLookup] = None,
        retry_policy: Optional[RetryPolicy] = None,
        bulk_threshold: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.session = session
        self.calculator = calculator or PeriodCalculator(settings.week_starts_on)
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.bulk_threshold = (
            settings.bulk_threshold if bulk_threshold is None else bulk_threshold
        )
        self.store = CubeStore(session)
        self.names = DisplayNameResolver(name_lookup or SqlNameLookup(session))
        self.rebuild = RebuildEngine(
            session,
            store=self.store,
            calculator=self.calculator,
            ledger=SqlLedgerReader(session),
            names=self.names,
            retry_policy=self.retry_policy,
        )
        self.delta = DeltaEngine(
            session,
            store=self.store,
            calculator=self.calculator,
            rebuild=self.rebuild,
            names=self.names,
            retry_policy=self.retry_policy,
        )
        self.bulk = BulkUpdateOptimizer(
            session,
            store=self.store,
            calculator=self.calculator,
            rebuild=self.rebuild,
            retry_policy=self.retry_policy,
        )
        self.reconciliation = ReconciliationService(
            session,
            store=self.store,
            calculator=self.calculator,
            rebuild=self.rebuild,
            retry_policy=self.retry_policy,
        )
        self.queries = CubeQueryService(session)

    def apply_events(
        self, events: Sequence[ChangeEvent]
    ) -> Union[DeltaResult, BulkUpdateResult]:
        if not events:
            return DeltaResult()
        update = plan_bulk_update(events, self.bulk_threshold)
        if update is None:
            return self.delta.apply(events)

        logger.info(
            f"bulk_path_selected: tenant={update.tenant_id} events={len(events)} "
            f"threshold={self.bulk_threshold}"
        )
        result = self.bulk.apply(update)
        self._record_applied(update.tenant_id, events)
        return result

    def _record_applied(self, tenant_id: str, events: Sequence[ChangeEvent]) -> None:
        try:
            self.delta.record_applied(tenant_id, events)
        except TransientStoreError as exc:
            # The cube already reflects the batch; only redelivery dedupe is lost.
            logger.error(
                f"idempotency_record_failed: tenant={tenant_id} events={len(events)} "
                f"error={exc}"
            )

    def write_through(
        self,
        tenant_id: str,
        write: Callable[[], Sequence[ChangeEvent]],
        *,
        label: str,
    ) -> list[ChangeEvent]:
        """Run a ledger write and its cube delta in one transaction.

        ``write`` stages the ledger change on this session, flushes it and
        returns the change events it caused. It may run more than once, so it
        must reload and reapply everything it touches on each call.

        A per-entry batch commits together with its increments. A batch big
        enough for the bulk path commits the ledger alone and then regenerates
        the affected slices from it. When the combined unit cannot land, the
        ledger change is committed on its own and the touched periods are
        rebuilt; ``RebuildFailedError`` from that rebuild reaches the caller
        with the ledger change already saved.
        """
        bulk_update = None

        def combined() -> list[ChangeEvent]:
            nonlocal bulk_update
            events = list(write())
            bulk_update = plan_bulk_update(events, self.bulk_threshold) if events else None
            if events and bulk_update is None:
                self.delta.apply_in_unit(tenant_id, events)
            return events

        try:
            events = run_unit(self.session, combined, self.retry_policy, label=label)
        except (TransientStoreError, CubeInvariantError) as exc:
            events = run_unit(
                self.session,
                lambda: list(write()),
                self.retry_policy,
                label=f"{label}:ledger",
            )
            if events:
                self.delta.escalate(tenant_id, events, exc)
            return events

        if bulk_update is not None:
            logger.info(
                f"bulk_path_selected: tenant={tenant_id} events={len(events)} "
                f"threshold={self.bulk_threshold}"
            )
            self.bulk.apply(bulk_update)
        return events

    def apply_bulk_update(self, update: BulkUpdate) -> BulkUpdateResult:
        return self.bulk.apply(update)

    def rename_category(
        self,
        tenant_id: str,
        key: int,
        name: str,
        write: Optional[Callable[[], object]] = None,
    ) -> int:
        """Rename a category's cube records, together with ``write`` if given."""

        def unit() -> int:
            if write is not None:
                write()
            return self.store.rename_category(tenant_id, key, name)

        renamed = run_unit(
            self.session,
            unit,
            self.retry_policy,
            label=f"rename_category:{tenant_id}:{key}",
        )
        self.names.forget(tenant_id)
        return renamed

    def rename_account(
        self,
        tenant_id: str,
        account_id: int,
        name: str,
        write: Optional[Callable[[], object]] = None,
    ) -> int:
        def unit() -> int:
            if write is not None:
                write()
            return self.store.rename_account(tenant_id, account_id, name)

        renamed = run_unit(
            self.session,
            unit,
            self.retry_policy,
            label=f"rename_account:{tenant_id}:{account_id}",
        )
        self.names.forget(tenant_id)
        return renamed
