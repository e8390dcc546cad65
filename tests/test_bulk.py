from datetime import date, timedelta

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from bulk import BulkUpdateOptimizer, BulkUpdateResult, RegenerationTarget, plan_bulk_update
from cube import CubeService
from cube_store import CubeCoordinate, Facts
from database import Base
from errors import TransientStoreError
from models import CubeRecord, EntryType, Transaction
from periods import PeriodCalculator, PeriodType
from retry import RetryPolicy
from schemas import (
    AccountIn,
    BulkUpdate,
    CategoryIn,
    ChangeEvent,
    ChangeOperation,
    CubeField,
    DateRange,
    EntryValues,
    FieldChange,
    TransactionIn,
    TransactionPatch,
)
from services import AccountService, CategoryService, TransactionService, entry_values

FAST = RetryPolicy(total=1, base=0.0, cap=0.0, jitter=False)
TENANT = "t1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def ledger_facts(session) -> dict[CubeCoordinate, Facts]:
    calc = PeriodCalculator()
    expected: dict[CubeCoordinate, Facts] = {}
    for txn in session.scalars(
        select(Transaction).where(Transaction.deleted_at.is_(None))
    ).all():
        for period in calc.periods_covering(txn.date):
            coord = CubeCoordinate.for_values(txn.tenant_id, period, entry_values(txn))
            expected[coord] = expected.get(coord, Facts()) + Facts(txn.amount_cents, 1)
    return expected


def _values(day: date, category_id=1, **overrides) -> EntryValues:
    data = {
        "account_id": 1,
        "category_id": category_id,
        "amount_cents": 100,
        "date": day,
        "entry_type": EntryType.expense,
    }
    data.update(overrides)
    return EntryValues(**data)


def _recategorize(count: int, tenant_id: str = TENANT) -> list[ChangeEvent]:
    events = []
    for i in range(count):
        day = date(2024, 1, 1) + timedelta(days=i % 31)
        events.append(
            ChangeEvent(
                entry_id=i + 1,
                tenant_id=tenant_id,
                operation=ChangeOperation.update,
                old_values=_values(day, category_id=1, amount_cents=100 + i),
                new_values=_values(day, category_id=2, amount_cents=100 + i),
            )
        )
    return events


def test_plan_requires_threshold_and_uniform_changes():
    events = _recategorize(10)
    assert plan_bulk_update(events, threshold=11) is None
    assert plan_bulk_update(events, threshold=0) is None

    update = plan_bulk_update(events, threshold=10)
    assert update is not None
    assert update.tenant_id == TENANT
    assert [(c.field, c.old_value, c.new_value) for c in update.changes] == [
        (CubeField.category, 1, 2)
    ]
    assert update.entry_type == EntryType.expense
    assert update.date_range.start == date(2024, 1, 1)
    assert update.date_range.end == date(2024, 1, 10)


def test_plan_rejects_mixed_batches():
    mixed_tenants = _recategorize(5) + _recategorize(5, tenant_id="t2")
    assert plan_bulk_update(mixed_tenants, threshold=2) is None

    non_uniform = _recategorize(5)
    odd = non_uniform[0]
    non_uniform[0] = odd.model_copy(
        update={"new_values": odd.new_values.model_copy(update={"category_id": 3})}
    )
    assert plan_bulk_update(non_uniform, threshold=2) is None

    with_insert = _recategorize(4) + [
        ChangeEvent(
            entry_id=99,
            tenant_id=TENANT,
            operation=ChangeOperation.insert,
            new_values=_values(date(2024, 1, 5)),
        )
    ]
    assert plan_bulk_update(with_insert, threshold=2) is None


def test_plan_leaves_entry_type_unset_when_not_uniform():
    events = _recategorize(2) + [
        ChangeEvent(
            entry_id=50,
            tenant_id=TENANT,
            operation=ChangeOperation.update,
            old_values=_values(date(2024, 1, 3), entry_type=EntryType.income),
            new_values=_values(date(2024, 1, 3), category_id=2, entry_type=EntryType.income),
        )
    ]
    update = plan_bulk_update(events, threshold=3)
    assert update is not None
    assert update.entry_type is None


def test_category_change_emits_old_and_new_target_per_period():
    session = make_session()
    optimizer = BulkUpdateOptimizer(session, retry_policy=FAST)
    update = BulkUpdate(
        tenant_id=TENANT,
        changes=[FieldChange(field=CubeField.category, old_value=1, new_value=2)],
        date_range=DateRange(start=date(2024, 1, 1), end=date(2024, 1, 31)),
        entry_type=EntryType.expense,
    )

    targets = optimizer.plan_targets(update)
    periods = {t.period for t in targets}

    # Five Sunday-anchored weeks touch January 2024, plus the month itself.
    assert len(periods) == 6
    assert len(targets) == 12
    for period in periods:
        assert {
            (t.entry_type, t.category_key) for t in targets if t.period == period
        } == {(EntryType.expense, 1), (EntryType.expense, 2)}


def test_entry_type_and_date_changes_widen_targets():
    session = make_session()
    optimizer = BulkUpdateOptimizer(session, retry_policy=FAST)
    update = BulkUpdate(
        tenant_id=TENANT,
        changes=[
            FieldChange(field="entry_type", old_value="EXPENSE", new_value="INCOME"),
            FieldChange(field="date", old_value="2024-01-10", new_value="2024-03-05"),
        ],
        date_range=DateRange(start=date(2024, 1, 10), end=date(2024, 1, 10)),
    )

    targets = optimizer.plan_targets(update)
    starts = {(t.period.period_type, t.period.start) for t in targets}
    assert starts == {
        (PeriodType.weekly, date(2024, 1, 7)),
        (PeriodType.monthly, date(2024, 1, 1)),
        (PeriodType.weekly, date(2024, 3, 3)),
        (PeriodType.monthly, date(2024, 3, 1)),
    }
    march = [t for t in targets if t.period.start == date(2024, 3, 1)]
    assert RegenerationTarget(march[0].period, EntryType.expense) in march
    assert RegenerationTarget(march[0].period, EntryType.income) in march
    # The date change regenerates the whole period.
    assert RegenerationTarget(march[0].period) in march


def test_bulk_recategorize_january_leaves_february_untouched(monkeypatch):
    session = make_session()
    cube = CubeService(session, retry_policy=FAST, bulk_threshold=50)
    account = AccountService(session, TENANT, cube).create(AccountIn(name="A"))
    categories = CategoryService(session, TENANT, cube)
    cat_a = categories.create(CategoryIn(name="A", type=EntryType.expense))
    cat_b = categories.create(CategoryIn(name="B", type=EntryType.expense))
    txns = TransactionService(session, TENANT, cube)

    january = [
        txns.create(
            TransactionIn(
                account_id=account.id,
                category_id=cat_a.id,
                date=date(2024, 1, 1) + timedelta(days=i % 31),
                type=EntryType.expense,
                amount_cents=100 + i,
            )
        )
        for i in range(100)
    ]
    txns.create(
        TransactionIn(
            account_id=account.id,
            category_id=cat_a.id,
            date=date(2024, 2, 20),
            type=EntryType.expense,
            amount_cents=999,
        )
    )
    february_before = {
        (r.id, r.period_type, r.total_amount_cents, r.entry_count, r.updated_at)
        for r in cube.store.fetch(TENANT)
        if r.period_start >= date(2024, 2, 1)
    }
    assert len(february_before) == 2

    def per_entry_path(*args):
        raise AssertionError("bulk edit should not take the per-entry path")

    monkeypatch.setattr(cube.delta, "apply", per_entry_path)
    monkeypatch.setattr(cube.delta, "apply_in_unit", per_entry_path)
    txns.bulk_update([t.id for t in january], TransactionPatch(category_id=cat_b.id))

    records = cube.store.fetch(TENANT)
    january_monthly = [
        r for r in records
        if r.period_type == PeriodType.monthly and r.period_start == date(2024, 1, 1)
    ]
    assert [(r.category_name, r.entry_count) for r in january_monthly] == [("B", 100)]
    assert january_monthly[0].total_amount_cents == sum(100 + i for i in range(100))

    february_after = {
        (r.id, r.period_type, r.total_amount_cents, r.entry_count, r.updated_at)
        for r in records
        if r.period_start >= date(2024, 2, 1)
    }
    assert february_after == february_before
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)


def test_apply_events_selects_bulk_path():
    session = make_session()
    cube = CubeService(session, retry_policy=FAST, bulk_threshold=3)
    result = cube.apply_events(_recategorize(3))
    assert isinstance(result, BulkUpdateResult)
    assert result.affected_periods

    small = CubeService(session, retry_policy=FAST, bulk_threshold=4)
    # Below the threshold the per-entry path runs; with no ledger or cube
    # rows the retractions escalate to a rebuild of an empty slice.
    outcome = small.apply_events(_recategorize(3))
    assert not isinstance(outcome, BulkUpdateResult)
    assert session.scalars(select(CubeRecord)).all() == []


def test_unrecorded_idempotency_keys_do_not_fail_the_batch(monkeypatch, caplog):
    session = make_session()
    cube = CubeService(session, retry_policy=FAST, bulk_threshold=3)

    def busy(*args, **kwargs):
        raise TransientStoreError("database is locked")

    monkeypatch.setattr(cube.delta, "record_applied", busy)
    with caplog.at_level("ERROR", logger="cube"):
        result = cube.apply_events(_recategorize(3))

    assert isinstance(result, BulkUpdateResult)
    assert any("idempotency_record_failed" in rec.message for rec in caplog.records)


def test_apply_bulk_update_regenerates_from_ledger():
    session = make_session()
    cube = CubeService(session, retry_policy=FAST, bulk_threshold=0)
    account = AccountService(session, TENANT, cube).create(AccountIn(name="A"))
    food = CategoryService(session, TENANT, cube).create(
        CategoryIn(name="Food", type=EntryType.expense)
    )
    txn = TransactionService(session, TENANT, cube).create(
        TransactionIn(
            account_id=account.id,
            category_id=food.id,
            date=date(2024, 5, 6),
            type=EntryType.expense,
            amount_cents=400,
        )
    )
    # Recurring flag flipped behind the cube's back, then announced as a bulk edit.
    session.get(Transaction, txn.id).is_recurring = True
    session.commit()

    result = cube.apply_bulk_update(
        BulkUpdate(
            tenant_id=TENANT,
            changes=[FieldChange(field="is_recurring", old_value=False, new_value=True)],
            date_range=DateRange(start=date(2024, 5, 6), end=date(2024, 5, 6)),
            entry_type=EntryType.expense,
        )
    )

    assert len(result.affected_periods) == 2
    assert (result.records_deleted, result.records_inserted) == (2, 2)
    assert {r.is_recurring for r in cube.store.fetch(TENANT)} == {True}
