import random
from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from cube import CubeService
from cube_store import CubeCoordinate, Facts
from database import Base
from errors import RebuildFailedError, RebuildReadError, TransientStoreError
from models import CubeRecord, EntryType, Transaction
from periods import PeriodCalculator, PeriodType
from retry import RetryPolicy
from schemas import (
    AccountIn,
    CategoryIn,
    ChangeEvent,
    ChangeOperation,
    EntryValues,
    TransactionIn,
    TransactionPatch,
)
from services import AccountService, CategoryService, TransactionService, entry_values

FAST = RetryPolicy(total=2, base=0.0, cap=0.0, jitter=False)
TENANT = "t1"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_ledger(session, tenant_id: str = TENANT):
    cube = CubeService(session, retry_policy=FAST, bulk_threshold=0)
    accounts = AccountService(session, tenant_id, cube)
    categories = CategoryService(session, tenant_id, cube)
    refs = {
        "A": accounts.create(AccountIn(name="A")).id,
        "B": accounts.create(AccountIn(name="B")).id,
        "Food": categories.create(CategoryIn(name="Food", type=EntryType.expense)).id,
        "Entertainment": categories.create(
            CategoryIn(name="Entertainment", type=EntryType.expense)
        ).id,
        "Salary": categories.create(CategoryIn(name="Salary", type=EntryType.income)).id,
    }
    return cube, TransactionService(session, tenant_id, cube), refs


def ledger_facts(session, tenant_id: str = TENANT) -> dict[CubeCoordinate, Facts]:
    """Independent recomputation of the cube straight from live ledger rows."""
    calc = PeriodCalculator()
    expected: dict[CubeCoordinate, Facts] = {}
    txns = session.scalars(
        select(Transaction).where(
            Transaction.tenant_id == tenant_id, Transaction.deleted_at.is_(None)
        )
    ).all()
    for txn in txns:
        for period in calc.periods_covering(txn.date):
            coord = CubeCoordinate.for_values(tenant_id, period, entry_values(txn))
            expected[coord] = expected.get(coord, Facts()) + Facts(txn.amount_cents, 1)
    return expected


def zero_count_records(session) -> int:
    return session.scalar(
        select(func.count(CubeRecord.id)).where(CubeRecord.entry_count == 0)
    )


def food_expense(refs, **overrides) -> TransactionIn:
    data = {
        "account_id": refs["A"],
        "category_id": refs["Food"],
        "date": date(2024, 1, 15),
        "type": EntryType.expense,
        "amount_cents": 100,
    }
    data.update(overrides)
    return TransactionIn(**data)


def test_insert_creates_weekly_and_monthly_record():
    session = make_session()
    cube, txns, refs = setup_ledger(session)

    txns.create(food_expense(refs))

    records = cube.store.fetch(TENANT)
    assert {(r.period_type, r.period_start) for r in records} == {
        (PeriodType.weekly, date(2024, 1, 14)),
        (PeriodType.monthly, date(2024, 1, 1)),
    }
    for record in records:
        assert record.entry_type == EntryType.expense
        assert record.category_id == refs["Food"]
        assert record.category_name == "Food"
        assert record.account_name == "A"
        assert record.is_recurring is False
        assert record.total_amount_cents == 100
        assert record.entry_count == 1


def test_recategorize_then_delete_scenario():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))

    txns.update(txn.id, food_expense(refs, category_id=refs["Entertainment"]))
    records = cube.store.fetch(TENANT)
    assert len(records) == 2
    assert {r.category_name for r in records} == {"Entertainment"}
    assert all((r.total_amount_cents, r.entry_count) == (100, 1) for r in records)

    txns.soft_delete(txn.id)
    assert cube.store.fetch(TENANT) == []


def test_amount_change_nets_to_one_write_per_period():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    before = entry_values(txn)
    after = before.model_copy(update={"amount_cents": 150})

    result = cube.delta.apply(
        [
            ChangeEvent(
                entry_id=txn.id,
                tenant_id=TENANT,
                operation=ChangeOperation.update,
                old_values=before,
                new_values=after,
            )
        ]
    )

    assert result.coordinates_written == 2
    assert result.records_deleted == 0
    assert {f for f in cube.store.facts_by_coordinate(TENANT).values()} == {Facts(150, 1)}


def test_description_only_update_writes_nothing():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    values = entry_values(txn)

    result = cube.delta.apply(
        [
            ChangeEvent(
                entry_id=txn.id,
                tenant_id=TENANT,
                operation=ChangeOperation.update,
                old_values=values,
                new_values=values,
            )
        ]
    )
    assert result.events_applied == 1
    assert result.coordinates_written == 0


def test_date_change_across_month_boundary():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs, date=date(2024, 1, 31)))

    txns.update(txn.id, food_expense(refs, date=date(2024, 2, 1)))

    starts = {(r.period_type, r.period_start) for r in cube.store.fetch(TENANT)}
    # Both dates fall in the week starting Sunday 2024-01-28.
    assert starts == {
        (PeriodType.weekly, date(2024, 1, 28)),
        (PeriodType.monthly, date(2024, 2, 1)),
    }
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)


def test_uncategorized_entries_share_a_coordinate():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txns.create(food_expense(refs, category_id=None, amount_cents=40))
    txns.create(food_expense(refs, category_id=None, amount_cents=60))

    records = cube.store.fetch(TENANT)
    assert len(records) == 2
    for record in records:
        assert record.category_id is None
        assert record.category_name == "Uncategorized"
        assert (record.total_amount_cents, record.entry_count) == (100, 2)


def test_restore_adds_entry_back():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    txns.soft_delete(txn.id)
    txns.restore(txn.id)
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)
    assert len(ledger_facts(session)) == 2


def test_insert_and_delete_in_one_batch_cancel_out():
    session = make_session()
    cube, _, refs = setup_ledger(session)
    values = EntryValues(
        account_id=refs["A"],
        category_id=refs["Food"],
        amount_cents=100,
        date=date(2024, 1, 15),
        entry_type=EntryType.expense,
    )
    result = cube.delta.apply(
        [
            ChangeEvent(entry_id=9, tenant_id=TENANT, operation=ChangeOperation.insert, new_values=values),
            ChangeEvent(entry_id=9, tenant_id=TENANT, operation=ChangeOperation.delete, old_values=values),
        ]
    )
    assert result.events_applied == 2
    assert result.coordinates_written == 0
    assert cube.store.fetch(TENANT) == []


def test_keyed_event_is_applied_once():
    session = make_session()
    cube, _, refs = setup_ledger(session)
    event = ChangeEvent(
        entry_id=1,
        tenant_id=TENANT,
        operation=ChangeOperation.insert,
        new_values=EntryValues(
            account_id=refs["A"],
            category_id=refs["Food"],
            amount_cents=100,
            date=date(2024, 1, 15),
            entry_type=EntryType.expense,
        ),
        idempotency_key="txn-1-insert",
    )

    first = cube.delta.apply([event])
    second = cube.delta.apply([event, event])

    assert (first.events_applied, first.events_skipped) == (1, 0)
    assert (second.events_applied, second.events_skipped) == (0, 2)
    assert set(cube.store.facts_by_coordinate(TENANT).values()) == {Facts(100, 1)}


def test_batch_spanning_tenants_is_applied_per_tenant():
    session = make_session()
    cube, _, refs = setup_ledger(session)
    values = EntryValues(
        account_id=refs["A"],
        category_id=None,
        amount_cents=100,
        date=date(2024, 1, 15),
        entry_type=EntryType.expense,
    )
    result = cube.delta.apply(
        [
            ChangeEvent(entry_id=1, tenant_id="t1", operation=ChangeOperation.insert, new_values=values),
            ChangeEvent(entry_id=2, tenant_id="t2", operation=ChangeOperation.insert, new_values=values),
        ]
    )
    assert result.events_applied == 2
    assert len(cube.store.fetch("t1")) == 2
    assert len(cube.store.fetch("t2")) == 2


def test_negative_count_escalates_to_rebuild():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    keep = txns.create(food_expense(refs, amount_cents=70))
    drop = txns.create(food_expense(refs, amount_cents=30))

    # Simulate drift: the cube lost its records behind the engine's back.
    cube.store.clear_tenant(TENANT)
    session.commit()

    txns.soft_delete(drop.id)

    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)
    assert set(ledger_facts(session).values()) == {Facts(keep.amount_cents, 1)}


def test_residual_amount_escalates_to_rebuild():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    stale = entry_values(txn).model_copy(update={"amount_cents": 90})

    result = cube.delta.apply(
        [
            ChangeEvent(
                entry_id=txn.id,
                tenant_id=TENANT,
                operation=ChangeOperation.delete,
                old_values=stale,
            )
        ]
    )

    assert len(result.escalated_periods) == 2
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)
    assert zero_count_records(session) == 0


def test_transient_failure_is_retried(monkeypatch):
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    original = cube.store.increment
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("UPDATE financial_cube", {}, Exception("database is locked"))
        return original(*args, **kwargs)

    monkeypatch.setattr(cube.store, "increment", flaky)
    txns.create(food_expense(refs))

    assert calls["n"] == 3
    assert session.scalar(select(func.count(Transaction.id))) == 1
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)


def test_exhausted_retries_escalate_to_rebuild(monkeypatch):
    session = make_session()
    cube, txns, refs = setup_ledger(session)

    def locked(*args, **kwargs):
        raise OperationalError("UPDATE financial_cube", {}, Exception("database is locked"))

    monkeypatch.setattr(cube.store, "increment", locked)
    txns.create(food_expense(refs))

    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)
    assert len(cube.store.fetch(TENANT)) == 2


def test_failed_rebuild_after_escalation_propagates(monkeypatch):
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    stale = entry_values(txn).model_copy(update={"amount_cents": 90})

    def unavailable(*args, **kwargs):
        raise RebuildReadError("ledger offline")

    monkeypatch.setattr(cube.rebuild.ledger, "aggregate", unavailable)
    with pytest.raises(RebuildFailedError) as excinfo:
        cube.delta.apply(
            [
                ChangeEvent(
                    entry_id=txn.id,
                    tenant_id=TENANT,
                    operation=ChangeOperation.delete,
                    old_values=stale,
                )
            ]
        )
    assert excinfo.value.tenant_id == TENANT
    # The failed unit rolled back; the previous records are intact.
    assert set(cube.store.facts_by_coordinate(TENANT).values()) == {Facts(100, 1)}


def test_failed_cube_unit_rolls_back_its_ledger_write(monkeypatch):
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    attempts = {"n": 0}

    def locked(*args, **kwargs):
        attempts["n"] += 1
        raise OperationalError("INSERT cube_period_locks", {}, Exception("database is locked"))

    monkeypatch.setattr(cube.store, "lock_periods", locked)
    with pytest.raises(RebuildFailedError):
        txns.update(txn.id, food_expense(refs, amount_cents=250))
    monkeypatch.undo()

    # Three tries of the combined unit, then three of the first rebuild.
    assert attempts["n"] == 6
    # The ledger change landed on its own; the cube still shows the old amount
    # until the stale periods are rebuilt.
    session.expire_all()
    assert session.get(Transaction, txn.id).amount_cents == 250
    assert set(cube.store.facts_by_coordinate(TENANT).values()) == {Facts(100, 1)}
    cube.rebuild.rebuild_range(TENANT, date(2024, 1, 1), date(2024, 1, 31))
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)


def test_store_outage_leaves_ledger_and_cube_untouched(monkeypatch):
    session = make_session()
    cube, txns, refs = setup_ledger(session)

    def locked(*args, **kwargs):
        raise OperationalError("INSERT transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(session, "flush", locked)
    with pytest.raises(TransientStoreError):
        txns.create(food_expense(refs))
    monkeypatch.undo()

    assert session.scalar(select(func.count(Transaction.id))) == 0
    assert cube.store.fetch(TENANT) == []


def test_update_retried_after_contention_applies_once(monkeypatch):
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    original = cube.store.delete_if_zero
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise OperationalError("DELETE financial_cube", {}, Exception("database is locked"))
        return original(*args, **kwargs)

    monkeypatch.setattr(cube.store, "delete_if_zero", flaky)
    updated = txns.update(txn.id, food_expense(refs, category_id=refs["Entertainment"]))

    assert updated.category_id == refs["Entertainment"]
    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)
    assert zero_count_records(session) == 0


def test_random_edit_sequence_keeps_cube_additive():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    rng = random.Random(7)
    categories = [refs["Food"], refs["Entertainment"], None]
    live: list[int] = []
    deleted: list[int] = []

    for _ in range(120):
        action = rng.choice(["create", "create", "update", "delete", "restore", "bulk"])
        if action == "create" or not live:
            txn = txns.create(
                food_expense(
                    refs,
                    account_id=rng.choice([refs["A"], refs["B"]]),
                    category_id=rng.choice(categories),
                    date=date(2024, rng.randint(1, 3), rng.randint(1, 28)),
                    amount_cents=rng.randint(1, 500),
                    is_recurring=rng.random() < 0.3,
                )
            )
            live.append(txn.id)
        elif action == "update":
            txn_id = rng.choice(live)
            txns.update(
                txn_id,
                food_expense(
                    refs,
                    category_id=rng.choice(categories),
                    date=date(2024, rng.randint(1, 3), rng.randint(1, 28)),
                    amount_cents=rng.randint(1, 500),
                ),
            )
        elif action == "delete":
            txn_id = live.pop(rng.randrange(len(live)))
            txns.soft_delete(txn_id)
            deleted.append(txn_id)
        elif action == "restore" and deleted:
            txn_id = deleted.pop()
            txns.restore(txn_id)
            live.append(txn_id)
        elif action == "bulk":
            chosen = rng.sample(live, k=min(len(live), 5))
            txns.bulk_update(chosen, TransactionPatch(category_id=rng.choice(categories)))

    assert cube.store.facts_by_coordinate(TENANT) == ledger_facts(session)
    assert zero_count_records(session) == 0


def test_incremental_edits_match_a_single_rebuild():
    session = make_session()
    cube, txns, refs = setup_ledger(session)
    txn = txns.create(food_expense(refs))
    txns.update(txn.id, food_expense(refs, amount_cents=250, is_recurring=True))
    txns.update(txn.id, food_expense(refs, account_id=refs["B"], date=date(2024, 2, 3)))
    txns.update(txn.id, food_expense(refs, category_id=None, date=date(2024, 3, 9)))
    incremental = cube.store.facts_by_coordinate(TENANT)

    cube.rebuild.clear(TENANT)
    cube.rebuild.populate(TENANT, start=date(2024, 1, 1), end=date(2024, 3, 31))

    assert cube.store.facts_by_coordinate(TENANT) == incremental
    assert incremental == ledger_facts(session)
