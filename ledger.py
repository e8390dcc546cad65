"""Read-side boundary to the ledger and its category/account metadata."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cube_store import CubeCoordinate, DimensionFilter, DisplayNames
from errors import RebuildReadError
from models import UNCATEGORIZED, Account, Category, EntryType, Transaction
from retry import TRANSIENT_ERRORS

logger = logging.getLogger(__name__)

UNCATEGORIZED_NAME = "Uncategorized"
UNKNOWN_CATEGORY_NAME = "Unknown category"
UNKNOWN_ACCOUNT_NAME = "Unknown account"


@dataclass(frozen=True)
class LedgerGroup:
    entry_type: EntryType
    category_key: int
    account_id: int
    is_recurring: bool
    total_amount_cents: int
    entry_count: int


class LedgerReader(Protocol):
    def aggregate(
        self,
        tenant_id: str,
        start: date,
        end: date,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> list[LedgerGroup]:
        """Grouped sums of live entries dated in ``[start, end)``."""

    def date_bounds(self, tenant_id: str) -> Optional[tuple[date, date]]:
        ...

    def tenants(self) -> list[str]:
        ...


class NameLookup(Protocol):
    def category_name(self, tenant_id: str, category_id: int) -> Optional[str]:
        ...

    def account_name(self, tenant_id: str, account_id: int) -> Optional[str]:
        ...


class SqlLedgerReader:
    def __init__(self, session: Session) -> None:
        self.session = session

    def aggregate(
        self,
        tenant_id: str,
        start: date,
        end: date,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> list[LedgerGroup]:
        stmt = (
            select(
                Transaction.type,
                Transaction.category_id,
                Transaction.account_id,
                Transaction.is_recurring,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            )
            .where(
                Transaction.tenant_id == tenant_id,
                Transaction.deleted_at.is_(None),
                Transaction.date >= start,
                Transaction.date < end,
            )
            .group_by(
                Transaction.type,
                Transaction.category_id,
                Transaction.account_id,
                Transaction.is_recurring,
            )
        )
        if dimension_filter is not None:
            if dimension_filter.entry_type is not None:
                stmt = stmt.where(Transaction.type == dimension_filter.entry_type)
            if dimension_filter.category_key == UNCATEGORIZED:
                stmt = stmt.where(Transaction.category_id.is_(None))
            elif dimension_filter.category_key is not None:
                stmt = stmt.where(
                    Transaction.category_id == dimension_filter.category_key
                )
            if dimension_filter.account_id is not None:
                stmt = stmt.where(Transaction.account_id == dimension_filter.account_id)
            if dimension_filter.is_recurring is not None:
                stmt = stmt.where(
                    Transaction.is_recurring == dimension_filter.is_recurring
                )

        try:
            rows = self.session.execute(stmt).all()
        except TRANSIENT_ERRORS:
            raise
        except SQLAlchemyError as exc:
            raise RebuildReadError(
                f"Ledger read failed for tenant {tenant_id} {start}..{end}"
            ) from exc

        return [
            LedgerGroup(
                entry_type=row[0],
                category_key=UNCATEGORIZED if row[1] is None else row[1],
                account_id=row[2],
                is_recurring=bool(row[3]),
                total_amount_cents=int(row[4] or 0),
                entry_count=int(row[5] or 0),
            )
            for row in rows
            if row[5]
        ]

    def date_bounds(self, tenant_id: str) -> Optional[tuple[date, date]]:
        row = self.session.execute(
            select(func.min(Transaction.date), func.max(Transaction.date)).where(
                Transaction.tenant_id == tenant_id,
                Transaction.deleted_at.is_(None),
            )
        ).one()
        if row[0] is None:
            return None
        return row[0], row[1]

    def tenants(self) -> list[str]:
        stmt = (
            select(Transaction.tenant_id)
            .where(Transaction.deleted_at.is_(None))
            .distinct()
            .order_by(Transaction.tenant_id)
        )
        return list(self.session.scalars(stmt).all())


class SqlNameLookup:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Savepoints keep a failed lookup from aborting the enclosing unit.
    def category_name(self, tenant_id: str, category_id: int) -> Optional[str]:
        with self.session.begin_nested():
            return self.session.scalar(
                select(Category.name).where(
                    Category.tenant_id == tenant_id, Category.id == category_id
                )
            )

    def account_name(self, tenant_id: str, account_id: int) -> Optional[str]:
        with self.session.begin_nested():
            return self.session.scalar(
                select(Account.name).where(
                    Account.tenant_id == tenant_id, Account.id == account_id
                )
            )


class DisplayNameResolver:
    """Caches display names and never lets a lookup failure escape."""

    def __init__(self, lookup: NameLookup) -> None:
        self.lookup = lookup
        self._categories: dict[tuple[str, int], str] = {}
        self._accounts: dict[tuple[str, int], str] = {}

    def names_for(self, coordinate: CubeCoordinate) -> DisplayNames:
        return DisplayNames(
            category_name=self.category(coordinate.tenant_id, coordinate.category_key),
            account_name=self.account(coordinate.tenant_id, coordinate.account_id),
        )

    def category(self, tenant_id: str, key: int) -> str:
        if key == UNCATEGORIZED:
            return UNCATEGORIZED_NAME
        cache_key = (tenant_id, key)
        if cache_key in self._categories:
            return self._categories[cache_key]
        try:
            name = self.lookup.category_name(tenant_id, key)
        except Exception as exc:
            logger.warning(
                f"name_lookup_failed: kind=category tenant={tenant_id} id={key} error={exc}"
            )
            return UNKNOWN_CATEGORY_NAME
        name = name or UNKNOWN_CATEGORY_NAME
        self._categories[cache_key] = name
        return name

    def account(self, tenant_id: str, account_id: int) -> str:
        cache_key = (tenant_id, account_id)
        if cache_key in self._accounts:
            return self._accounts[cache_key]
        try:
            name = self.lookup.account_name(tenant_id, account_id)
        except Exception as exc:
            logger.warning(
                f"name_lookup_failed: kind=account tenant={tenant_id} id={account_id} error={exc}"
            )
            return UNKNOWN_ACCOUNT_NAME
        name = name or UNKNOWN_ACCOUNT_NAME
        self._accounts[cache_key] = name
        return name

    def forget(self, tenant_id: str) -> None:
        for cache in (self._categories, self._accounts):
            for key in [k for k in cache if k[0] == tenant_id]:
                del cache[key]
