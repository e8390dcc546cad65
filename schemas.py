import datetime as dt
from datetime import date
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    model_validator,
)

from models import EntryType
from periods import Granularity, PeriodType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: EntryType


class TransactionIn(BaseModel):
    account_id: int
    category_id: Optional[int] = None
    date: date
    type: EntryType
    amount_cents: int
    is_recurring: bool = False
    description: Optional[str] = Field(default=None, max_length=200)


class TransactionPatch(BaseModel):
    """Fields applied identically to every entry of a bulk edit.

    Only fields explicitly present are changed, so ``category_id=None`` means
    "make uncategorized" while an absent ``category_id`` leaves it alone.
    """

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    type: Optional[EntryType] = None
    amount_cents: Optional[int] = None
    is_recurring: Optional[bool] = None


class EntryValues(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: int
    category_id: Optional[int] = None
    amount_cents: int
    date: date
    entry_type: EntryType
    is_recurring: bool = False


class ChangeOperation(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


class ChangeEvent(BaseModel):
    entry_id: int
    tenant_id: str = Field(..., min_length=1, max_length=64)
    operation: ChangeOperation
    old_values: Optional[EntryValues] = None
    new_values: Optional[EntryValues] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _check_values_for_operation(self) -> "ChangeEvent":
        if self.operation == ChangeOperation.insert:
            if self.new_values is None or self.old_values is not None:
                raise ValueError("INSERT events carry only new_values")
        elif self.operation == ChangeOperation.delete:
            if self.old_values is None or self.new_values is not None:
                raise ValueError("DELETE events carry only old_values")
        elif self.old_values is None or self.new_values is None:
            raise ValueError("UPDATE events carry old_values and new_values")
        return self


class CubeField(str, Enum):
    account = "account"
    category = "category"
    amount = "amount"
    date = "date"
    entry_type = "entry_type"
    is_recurring = "is_recurring"


_FIELD_ADAPTERS: dict[CubeField, TypeAdapter] = {
    CubeField.account: TypeAdapter(int),
    CubeField.category: TypeAdapter(Optional[int]),
    CubeField.amount: TypeAdapter(int),
    CubeField.date: TypeAdapter(date),
    CubeField.entry_type: TypeAdapter(EntryType),
    CubeField.is_recurring: TypeAdapter(bool),
}


class FieldChange(BaseModel):
    field: CubeField
    old_value: Any = None
    new_value: Any = None

    @model_validator(mode="after")
    def _coerce_values(self) -> "FieldChange":
        adapter = _FIELD_ADAPTERS[self.field]
        try:
            self.old_value = adapter.validate_python(self.old_value)
            self.new_value = adapter.validate_python(self.new_value)
        except ValidationError as exc:
            raise ValueError(f"Invalid value for {self.field.value}: {exc}") from exc
        return self


class DateRange(BaseModel):
    start: date
    end: date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.start > self.end:
            raise ValueError("Start date must be before end date")
        return self


class BulkUpdate(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    changes: list[FieldChange] = Field(..., min_length=1)
    date_range: DateRange
    entry_type: Optional[EntryType] = None


class TrendFilters(BaseModel):
    granularity: Granularity = Granularity.monthly
    start: Optional[date] = None
    end: Optional[date] = None
    entry_type: Optional[EntryType] = None
    category_ids: Optional[list[int]] = None
    account_ids: Optional[list[int]] = None
    is_recurring: Optional[bool] = None


class PopulateIn(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    start: Optional[date] = None
    end: Optional[date] = None
    clear_existing: bool = False


class RebuildIn(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    start: date
    end: date
    period_type: Optional[PeriodType] = None


class ReconcileIn(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    weeks: Optional[int] = Field(default=None, ge=0, le=104)
    months: Optional[int] = Field(default=None, ge=0, le=36)
    today: Optional[date] = None


class TransactionBulkIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)
    patch: TransactionPatch
