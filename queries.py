"""Read path over the cube: trends and grouped totals at any granularity."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import UNCATEGORIZED, CubeRecord, EntryType
from periods import bucket_end, bucket_start
from schemas import TrendFilters

GROUP_BY_FIELDS = ("period_start", "entry_type", "category", "account", "is_recurring")


@dataclass(frozen=True)
class TrendRow:
    period_start: date
    period_end: date
    entry_type: EntryType
    category_id: Optional[int]
    category_name: str
    account_id: int
    account_name: str
    is_recurring: bool
    total_amount_cents: int
    entry_count: int

    @property
    def avg_amount_cents(self) -> float:
        if not self.entry_count:
            return 0.0
        return self.total_amount_cents / self.entry_count


def _group_value(row: TrendRow, name: str):
    if name == "category":
        return row.category_id
    if name == "account":
        return row.account_id
    return getattr(row, name)


class CubeQueryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _records(self, tenant_id: str, filters: TrendFilters) -> list[CubeRecord]:
        stmt = select(CubeRecord).where(
            CubeRecord.tenant_id == tenant_id,
            CubeRecord.period_type == filters.granularity.base_type,
        )
        if filters.start:
            stmt = stmt.where(CubeRecord.period_end > filters.start)
        if filters.end:
            stmt = stmt.where(CubeRecord.period_start <= filters.end)
        if filters.entry_type:
            stmt = stmt.where(CubeRecord.entry_type == filters.entry_type)
        if filters.category_ids:
            stmt = stmt.where(CubeRecord.category_key.in_(filters.category_ids))
        if filters.account_ids:
            stmt = stmt.where(CubeRecord.account_id.in_(filters.account_ids))
        if filters.is_recurring is not None:
            stmt = stmt.where(CubeRecord.is_recurring == filters.is_recurring)
        stmt = stmt.order_by(
            CubeRecord.period_start,
            CubeRecord.entry_type,
            CubeRecord.category_key,
            CubeRecord.account_id,
            CubeRecord.is_recurring,
        ).execution_options(populate_existing=True)
        return list(self.session.scalars(stmt).all())

    def trends(self, tenant_id: str, filters: Optional[TrendFilters] = None) -> list[TrendRow]:
        filters = filters or TrendFilters()
        granularity = filters.granularity
        buckets: dict[tuple, list[CubeRecord]] = defaultdict(list)
        for record in self._records(tenant_id, filters):
            start = (
                record.period_start
                if granularity.is_persisted
                else bucket_start(record.period_start, granularity)
            )
            key = (
                start,
                record.entry_type,
                record.category_key,
                record.account_id,
                record.is_recurring,
            )
            buckets[key].append(record)

        rows = []
        for key in sorted(buckets, key=lambda k: (k[0], k[1].value, k[2], k[3], k[4])):
            start, entry_type, cat_key, account_id, is_recurring = key
            records = buckets[key]
            latest = max(records, key=lambda r: r.period_start)
            rows.append(
                TrendRow(
                    period_start=start,
                    period_end=(
                        latest.period_end
                        if granularity.is_persisted
                        else max(bucket_end(start, granularity), latest.period_end)
                    ),
                    entry_type=entry_type,
                    category_id=None if cat_key == UNCATEGORIZED else cat_key,
                    category_name=latest.category_name,
                    account_id=account_id,
                    account_name=latest.account_name,
                    is_recurring=is_recurring,
                    total_amount_cents=sum(r.total_amount_cents for r in records),
                    entry_count=sum(r.entry_count for r in records),
                )
            )
        return rows

    def aggregated_totals(
        self,
        tenant_id: str,
        group_by: Sequence[str],
        filters: Optional[TrendFilters] = None,
    ) -> list[dict[str, object]]:
        unknown = [name for name in group_by if name not in GROUP_BY_FIELDS]
        if unknown:
            raise ValueError(f"Unsupported group_by field(s): {', '.join(unknown)}")

        groups: dict[tuple, dict[str, object]] = {}
        for row in self.trends(tenant_id, filters):
            key = tuple(_group_value(row, name) for name in group_by)
            group = groups.get(key)
            if group is None:
                group = {name: _group_value(row, name) for name in group_by}
                if "category" in group_by:
                    group["category_name"] = row.category_name
                if "account" in group_by:
                    group["account_name"] = row.account_name
                group["total_amount_cents"] = 0
                group["entry_count"] = 0
                groups[key] = group
            group["total_amount_cents"] += row.total_amount_cents
            group["entry_count"] += row.entry_count

        results = list(groups.values())
        for group in results:
            count = group["entry_count"]
            group["avg_amount_cents"] = group["total_amount_cents"] / count if count else 0.0
        return results

    def category_trends(
        self, tenant_id: str, filters: Optional[TrendFilters] = None
    ) -> list[dict[str, object]]:
        return self.aggregated_totals(
            tenant_id, ["period_start", "entry_type", "category"], filters
        )

    def account_trends(
        self, tenant_id: str, filters: Optional[TrendFilters] = None
    ) -> list[dict[str, object]]:
        return self.aggregated_totals(
            tenant_id, ["period_start", "entry_type", "account"], filters
        )

    def income_expense_trends(
        self, tenant_id: str, filters: Optional[TrendFilters] = None
    ) -> list[dict[str, object]]:
        series: dict[date, dict[str, object]] = {}
        for group in self.aggregated_totals(
            tenant_id, ["period_start", "entry_type"], filters
        ):
            start = group["period_start"]
            point = series.setdefault(
                start,
                {"period_start": start, "income_cents": 0, "expense_cents": 0, "transfer_cents": 0},
            )
            entry_type = group["entry_type"]
            if entry_type == EntryType.income:
                point["income_cents"] += group["total_amount_cents"]
            elif entry_type == EntryType.expense:
                point["expense_cents"] += group["total_amount_cents"]
            else:
                point["transfer_cents"] += group["total_amount_cents"]

        points = [series[start] for start in sorted(series)]
        for point in points:
            point["net_cents"] = point["income_cents"] - point["expense_cents"]
        return points

    def statistics(self, tenant_id: str) -> dict[str, object]:
        by_type = dict(
            self.session.execute(
                select(CubeRecord.period_type, func.count(CubeRecord.id))
                .where(CubeRecord.tenant_id == tenant_id)
                .group_by(CubeRecord.period_type)
            ).all()
        )
        bounds = self.session.execute(
            select(
                func.min(CubeRecord.period_start),
                func.max(CubeRecord.period_end),
                func.max(CubeRecord.updated_at),
            ).where(CubeRecord.tenant_id == tenant_id)
        ).one()
        return {
            "tenant_id": tenant_id,
            "total_records": sum(by_type.values()),
            "records_by_period_type": {k.value: v for k, v in by_type.items()},
            "earliest_period_start": bounds[0],
            "latest_period_end": bounds[1],
            "last_updated": bounds[2],
        }
