from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import PeriodType

# Null ledger categories are stored under this key so that "uncategorized" is
# a regular member of the cube's unique coordinate.
UNCATEGORIZED = 0


class EntryType(str, Enum):
    income = "INCOME"
    expense = "EXPENSE"
    transfer = "TRANSFER"


ENTRY_TYPE_ENUM = SAEnum(
    EntryType,
    name="entrytype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)

PERIOD_TYPE_ENUM = SAEnum(
    PeriodType,
    name="periodtype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def category_key(category_id: Optional[int]) -> int:
    return UNCATEGORIZED if category_id is None else category_id


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_account_tenant_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "type", "name", name="uq_category_tenant_type_name"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[EntryType] = mapped_column(ENTRY_TYPE_ENUM, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[EntryType] = mapped_column(ENTRY_TYPE_ENUM, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_tenant_date", "tenant_id", "date"),
        Index("ix_transactions_tenant_category_date", "tenant_id", "category_id", "date"),
        Index("ix_transactions_tenant_type_date", "tenant_id", "type", "date"),
    )


class CubeRecord(Base, TimestampMixin):
    __tablename__ = "financial_cube"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(PERIOD_TYPE_ENUM, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(ENTRY_TYPE_ENUM, nullable=False)
    category_key: Mapped[int] = mapped_column(
        Integer, nullable=False, default=UNCATEGORIZED
    )
    category_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0
    )
    entry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "period_type",
            "period_start",
            "entry_type",
            "category_key",
            "account_id",
            "is_recurring",
            name="uq_cube_coordinate",
        ),
        CheckConstraint("entry_count >= 0", name="ck_cube_count_non_negative"),
        Index("ix_cube_tenant_category_start", "tenant_id", "category_key", "period_start"),
        Index("ix_cube_tenant_account_start", "tenant_id", "account_id", "period_start"),
        Index("ix_cube_tenant_type_start", "tenant_id", "entry_type", "period_start"),
        Index("ix_cube_updated_at", "updated_at"),
    )

    @property
    def category_id(self) -> Optional[int]:
        return None if self.category_key == UNCATEGORIZED else self.category_key

    @property
    def avg_amount_cents(self) -> float:
        if not self.entry_count:
            return 0.0
        return self.total_amount_cents / self.entry_count


class CubePeriodLock(Base, TimestampMixin):
    __tablename__ = "cube_period_locks"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "period_type", "period_start", name="uq_cube_period_lock"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(PERIOD_TYPE_ENUM, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class AppliedEvent(Base, TimestampMixin):
    __tablename__ = "cube_applied_events"
    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_applied_event_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(200), nullable=False)
    entry_id: Mapped[int] = mapped_column(Integer, nullable=False)


class CubeDiscrepancy(Base, TimestampMixin):
    __tablename__ = "cube_discrepancies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(32), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(PERIOD_TYPE_ENUM, nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(ENTRY_TYPE_ENUM, nullable=False)
    category_key: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(Integer, nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False)
    expected_total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expected_count: Mapped[int] = mapped_column(Integer, nullable=False)
    actual_total_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actual_count: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index(
            "ix_cube_discrepancy_coordinate",
            "tenant_id",
            "period_type",
            "period_start",
            "entry_type",
            "category_key",
            "account_id",
            "is_recurring",
        ),
    )
