from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Mapping, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from errors import NegativeCountError, ResidualAmountError
from models import (
    CubePeriodLock,
    CubeRecord,
    EntryType,
    category_key,
    utcnow,
)
from periods import Period, PeriodType
from schemas import EntryValues


@dataclass(frozen=True, order=True)
class CubeCoordinate:
    tenant_id: str
    period_type: PeriodType
    period_start: date
    period_end: date
    entry_type: EntryType
    category_key: int
    account_id: int
    is_recurring: bool

    @property
    def period(self) -> Period:
        return Period(self.period_type, self.period_start, self.period_end)

    @classmethod
    def for_values(
        cls, tenant_id: str, period: Period, values: EntryValues
    ) -> "CubeCoordinate":
        return cls(
            tenant_id=tenant_id,
            period_type=period.period_type,
            period_start=period.start,
            period_end=period.end,
            entry_type=values.entry_type,
            category_key=category_key(values.category_id),
            account_id=values.account_id,
            is_recurring=values.is_recurring,
        )


@dataclass(frozen=True)
class Facts:
    total_amount_cents: int = 0
    entry_count: int = 0

    def __add__(self, other: "Facts") -> "Facts":
        return Facts(
            self.total_amount_cents + other.total_amount_cents,
            self.entry_count + other.entry_count,
        )

    @property
    def is_zero(self) -> bool:
        return self.total_amount_cents == 0 and self.entry_count == 0


@dataclass(frozen=True)
class DimensionFilter:
    """Partial coordinate; ``None`` means any value for that dimension."""

    entry_type: Optional[EntryType] = None
    category_key: Optional[int] = None
    account_id: Optional[int] = None
    is_recurring: Optional[bool] = None

    def matches(self, coordinate: CubeCoordinate) -> bool:
        return (
            (self.entry_type is None or coordinate.entry_type == self.entry_type)
            and (
                self.category_key is None
                or coordinate.category_key == self.category_key
            )
            and (self.account_id is None or coordinate.account_id == self.account_id)
            and (
                self.is_recurring is None
                or coordinate.is_recurring == self.is_recurring
            )
        )


@dataclass(frozen=True)
class DisplayNames:
    category_name: str
    account_name: str


COORDINATE_COLUMNS = (
    CubeRecord.tenant_id,
    CubeRecord.period_type,
    CubeRecord.period_start,
    CubeRecord.entry_type,
    CubeRecord.category_key,
    CubeRecord.account_id,
    CubeRecord.is_recurring,
)


def dialect_insert(session: Session, model):
    """INSERT construct supporting ``on_conflict_do_*`` for the bound dialect."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise ValueError(f"Unsupported database dialect: {dialect}")


def coordinate_of(record: CubeRecord) -> CubeCoordinate:
    return CubeCoordinate(
        tenant_id=record.tenant_id,
        period_type=record.period_type,
        period_start=record.period_start,
        period_end=record.period_end,
        entry_type=record.entry_type,
        category_key=record.category_key,
        account_id=record.account_id,
        is_recurring=record.is_recurring,
    )


class CubeStore:
    """Keyed storage for cube records.

    Facts are only ever changed through single ``UPDATE ... SET x = x + :d``
    statements or dialect upserts, never read-modify-write in Python.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _insert(self, model):
        return dialect_insert(self.session, model)

    @staticmethod
    def _key_clause(coordinate: CubeCoordinate) -> list:
        return [
            CubeRecord.tenant_id == coordinate.tenant_id,
            CubeRecord.period_type == coordinate.period_type,
            CubeRecord.period_start == coordinate.period_start,
            CubeRecord.entry_type == coordinate.entry_type,
            CubeRecord.category_key == coordinate.category_key,
            CubeRecord.account_id == coordinate.account_id,
            CubeRecord.is_recurring == coordinate.is_recurring,
        ]

    @staticmethod
    def _slice_clause(
        tenant_id: str,
        period: Optional[Period],
        dimension_filter: Optional[DimensionFilter],
    ) -> list:
        clauses = [CubeRecord.tenant_id == tenant_id]
        if period is not None:
            clauses.append(CubeRecord.period_type == period.period_type)
            clauses.append(CubeRecord.period_start == period.start)
        if dimension_filter is not None:
            if dimension_filter.entry_type is not None:
                clauses.append(CubeRecord.entry_type == dimension_filter.entry_type)
            if dimension_filter.category_key is not None:
                clauses.append(
                    CubeRecord.category_key == dimension_filter.category_key
                )
            if dimension_filter.account_id is not None:
                clauses.append(CubeRecord.account_id == dimension_filter.account_id)
            if dimension_filter.is_recurring is not None:
                clauses.append(
                    CubeRecord.is_recurring == dimension_filter.is_recurring
                )
        return clauses

    def lock_periods(self, tenant_id: str, periods: Iterable[Period]) -> None:
        """Take the write lock of each (tenant, period) inside the current unit.

        Locks are always taken in sorted order so two units touching
        overlapping periods cannot deadlock.
        """
        for period in sorted(set(periods)):
            now = utcnow()
            stmt = self._insert(CubePeriodLock).values(
                tenant_id=tenant_id,
                period_type=period.period_type,
                period_start=period.start,
                version=1,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[
                    CubePeriodLock.tenant_id,
                    CubePeriodLock.period_type,
                    CubePeriodLock.period_start,
                ],
                set_={"version": CubePeriodLock.version + 1, "updated_at": now},
            )
            self.session.execute(stmt)

    def increment(
        self,
        coordinate: CubeCoordinate,
        amount_delta: int,
        count_delta: int,
        names: DisplayNames,
    ) -> None:
        key = self._key_clause(coordinate)
        result = self.session.execute(
            update(CubeRecord)
            .where(*key, CubeRecord.entry_count + count_delta >= 0)
            .values(
                total_amount_cents=CubeRecord.total_amount_cents + amount_delta,
                entry_count=CubeRecord.entry_count + count_delta,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return

        existing = self.session.execute(
            select(CubeRecord.entry_count).where(*key)
        ).scalar_one_or_none()
        if existing is not None:
            raise NegativeCountError(
                f"entry_count would drop to {existing + count_delta}", coordinate
            )
        if count_delta <= 0:
            raise NegativeCountError(
                f"no record to apply count delta {count_delta} to", coordinate
            )

        now = utcnow()
        stmt = self._insert(CubeRecord).values(
            tenant_id=coordinate.tenant_id,
            period_type=coordinate.period_type,
            period_start=coordinate.period_start,
            period_end=coordinate.period_end,
            entry_type=coordinate.entry_type,
            category_key=coordinate.category_key,
            category_name=names.category_name,
            account_id=coordinate.account_id,
            account_name=names.account_name,
            is_recurring=coordinate.is_recurring,
            total_amount_cents=amount_delta,
            entry_count=count_delta,
            created_at=now,
            updated_at=now,
        )
        # A concurrent unit may create the same record between our UPDATE
        # and this INSERT; fold into it instead of failing.
        stmt = stmt.on_conflict_do_update(
            index_elements=list(COORDINATE_COLUMNS),
            set_={
                "total_amount_cents": CubeRecord.total_amount_cents
                + stmt.excluded.total_amount_cents,
                "entry_count": CubeRecord.entry_count + stmt.excluded.entry_count,
                "updated_at": now,
            },
        )
        self.session.execute(stmt)

    def delete_if_zero(self, coordinate: CubeCoordinate) -> bool:
        key = self._key_clause(coordinate)
        result = self.session.execute(
            delete(CubeRecord)
            .where(
                *key,
                CubeRecord.entry_count == 0,
                CubeRecord.total_amount_cents == 0,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return True
        residual = self.session.execute(
            select(CubeRecord.total_amount_cents).where(
                *key, CubeRecord.entry_count == 0
            )
        ).scalar_one_or_none()
        if residual is not None:
            raise ResidualAmountError(
                f"zero-count record still holds {residual} cents", coordinate
            )
        return False

    def delete_matching(
        self,
        tenant_id: str,
        period: Optional[Period] = None,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> int:
        result = self.session.execute(
            delete(CubeRecord)
            .where(*self._slice_clause(tenant_id, period, dimension_filter))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def insert_records(
        self,
        facts: Mapping[CubeCoordinate, Facts],
        names: Mapping[CubeCoordinate, DisplayNames],
    ) -> int:
        rows = []
        now = utcnow()
        for coordinate, fact in sorted(facts.items()):
            if fact.entry_count <= 0:
                continue
            display = names[coordinate]
            rows.append(
                {
                    "tenant_id": coordinate.tenant_id,
                    "period_type": coordinate.period_type,
                    "period_start": coordinate.period_start,
                    "period_end": coordinate.period_end,
                    "entry_type": coordinate.entry_type,
                    "category_key": coordinate.category_key,
                    "category_name": display.category_name,
                    "account_id": coordinate.account_id,
                    "account_name": display.account_name,
                    "is_recurring": coordinate.is_recurring,
                    "total_amount_cents": fact.total_amount_cents,
                    "entry_count": fact.entry_count,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        if rows:
            self.session.execute(insert(CubeRecord), rows)
        return len(rows)

    def fetch(
        self,
        tenant_id: str,
        period: Optional[Period] = None,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> list[CubeRecord]:
        stmt = (
            select(CubeRecord)
            .where(*self._slice_clause(tenant_id, period, dimension_filter))
            .order_by(*COORDINATE_COLUMNS)
            .execution_options(populate_existing=True)
        )
        return list(self.session.scalars(stmt).all())

    def facts_by_coordinate(
        self,
        tenant_id: str,
        period: Optional[Period] = None,
        dimension_filter: Optional[DimensionFilter] = None,
    ) -> dict[CubeCoordinate, Facts]:
        return {
            coordinate_of(record): Facts(
                record.total_amount_cents, record.entry_count
            )
            for record in self.fetch(tenant_id, period, dimension_filter)
        }

    def clear_tenant(self, tenant_id: str) -> int:
        return self.delete_matching(tenant_id)

    def rename_category(self, tenant_id: str, key: int, name: str) -> int:
        result = self.session.execute(
            update(CubeRecord)
            .where(CubeRecord.tenant_id == tenant_id, CubeRecord.category_key == key)
            .values(category_name=name, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def rename_account(self, tenant_id: str, account_id: int, name: str) -> int:
        result = self.session.execute(
            update(CubeRecord)
            .where(CubeRecord.tenant_id == tenant_id, CubeRecord.account_id == account_id)
            .values(account_name=name, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
