from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from cube import CubeService
from database import SessionLocal
from errors import CubeError, RebuildFailedError, TransientStoreError
from models import EntryType, Transaction
from periods import Granularity, Period
from reconciliation import ReconciliationWindow
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    CategoryIn,
    PopulateIn,
    ReconcileIn,
    RebuildIn,
    TransactionBulkIn,
    TransactionIn,
    TrendFilters,
)
from services import AccountService, CategoryService, TransactionService


app = FastAPI(title="Finance Cube")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _period(period: Period) -> dict:
    return {
        "period_type": period.period_type.value,
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
    }


def _transaction(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "date": txn.date.isoformat(),
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "is_recurring": txn.is_recurring,
        "description": txn.description,
    }


def _unavailable(exc: CubeError, *, ledger_saved: bool = False) -> HTTPException:
    if isinstance(exc, TransientStoreError):
        detail = "Store busy, retry"
    elif ledger_saved and isinstance(exc, RebuildFailedError):
        detail = f"Change saved; cube stale until rebuilt: {exc}"
    else:
        detail = str(exc)
    return HTTPException(status_code=503, detail=detail)


def trend_filters(
    granularity: Granularity = Granularity.monthly,
    start: Optional[date] = None,
    end: Optional[date] = None,
    entry_type: Optional[EntryType] = None,
    category_ids: Optional[List[int]] = Query(None),
    account_ids: Optional[List[int]] = Query(None),
    is_recurring: Optional[bool] = None,
) -> TrendFilters:
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    return TrendFilters(
        granularity=granularity,
        start=start,
        end=end,
        entry_type=entry_type,
        category_ids=category_ids,
        account_ids=account_ids,
        is_recurring=is_recurring,
    )


@app.get("/cube/status")
def cube_status(tenant_id: str, db: Session = Depends(get_db)):
    return CubeService(db).queries.statistics(tenant_id)


@app.post("/cube/populate")
def cube_populate(data: PopulateIn, db: Session = Depends(get_db)):
    try:
        result = CubeService(db).rebuild.populate(
            data.tenant_id,
            start=data.start,
            end=data.end,
            clear_existing=data.clear_existing,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc) from exc
    return {
        "tenant_id": data.tenant_id,
        "periods_processed": result.periods_processed,
        "records_created": result.records_created,
        "failed_periods": [_period(p) for p in result.failed_periods],
        "elapsed_secs": round(result.elapsed_secs, 3),
    }


@app.post("/cube/rebuild")
def cube_rebuild(data: RebuildIn, db: Session = Depends(get_db)):
    try:
        results = CubeService(db).rebuild.rebuild_range(
            data.tenant_id, data.start, data.end, data.period_type
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc) from exc
    return {
        "tenant_id": data.tenant_id,
        "periods": [
            {
                **_period(r.period),
                "records_deleted": r.records_deleted,
                "records_inserted": r.records_inserted,
            }
            for r in results
        ],
    }


@app.post("/cube/clear")
def cube_clear(tenant_id: str, db: Session = Depends(get_db)):
    try:
        removed = CubeService(db).rebuild.clear(tenant_id)
    except CubeError as exc:
        raise _unavailable(exc) from exc
    return {"tenant_id": tenant_id, "removed": removed}


@app.post("/cube/reconcile")
def cube_reconcile(data: ReconcileIn, db: Session = Depends(get_db)):
    defaults = ReconciliationWindow.from_settings()
    window = ReconciliationWindow(
        weeks=defaults.weeks if data.weeks is None else data.weeks,
        months=defaults.months if data.months is None else data.months,
        today=data.today,
    )
    try:
        report = CubeService(db).reconciliation.run(data.tenant_id, window)
    except CubeError as exc:
        raise _unavailable(exc) from exc
    return {
        "run_id": report.run_id,
        "tenant_id": report.tenant_id,
        "periods_checked": report.periods_checked,
        "consistent": report.is_consistent,
        "discrepancies": [
            {
                **_period(d.coordinate.period),
                "entry_type": d.coordinate.entry_type.value,
                "category_key": d.coordinate.category_key,
                "account_id": d.coordinate.account_id,
                "is_recurring": d.coordinate.is_recurring,
                "expected_total_cents": d.expected.total_amount_cents,
                "expected_count": d.expected.entry_count,
                "actual_total_cents": d.actual.total_amount_cents,
                "actual_count": d.actual.entry_count,
                "repeated": d in report.repeated,
            }
            for d in report.discrepancies
        ],
        "rebuilt_periods": [_period(p) for p in report.rebuilt_periods],
        "failed_periods": [_period(p) for p in report.failed_periods],
    }


@app.get("/trends")
def trends(
    tenant_id: str,
    filters: TrendFilters = Depends(trend_filters),
    db: Session = Depends(get_db),
):
    rows = CubeService(db).queries.trends(tenant_id, filters)
    return {
        "granularity": filters.granularity.value,
        "items": [
            {
                "period_start": row.period_start.isoformat(),
                "period_end": row.period_end.isoformat(),
                "entry_type": row.entry_type.value,
                "category_id": row.category_id,
                "category_name": row.category_name,
                "account_id": row.account_id,
                "account_name": row.account_name,
                "is_recurring": row.is_recurring,
                "total_amount_cents": row.total_amount_cents,
                "entry_count": row.entry_count,
                "avg_amount_cents": row.avg_amount_cents,
            }
            for row in rows
        ],
    }


@app.get("/trends/totals")
def trend_totals(
    tenant_id: str,
    group_by: List[str] = Query(["period_start"]),
    filters: TrendFilters = Depends(trend_filters),
    db: Session = Depends(get_db),
):
    try:
        items = CubeService(db).queries.aggregated_totals(tenant_id, group_by, filters)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"granularity": filters.granularity.value, "group_by": group_by, "items": items}


@app.get("/trends/income-expense")
def income_expense(
    tenant_id: str,
    filters: TrendFilters = Depends(trend_filters),
    db: Session = Depends(get_db),
):
    points = CubeService(db).queries.income_expense_trends(tenant_id, filters)
    return {"granularity": filters.granularity.value, "items": points}


@app.get("/accounts")
def list_accounts(tenant_id: str, db: Session = Depends(get_db)):
    return {
        "items": [
            {"id": a.id, "name": a.name} for a in AccountService(db, tenant_id).list_all()
        ]
    }


@app.get("/categories")
def list_categories(tenant_id: str, db: Session = Depends(get_db)):
    return {
        "items": [
            {"id": c.id, "name": c.name, "type": c.type.value}
            for c in CategoryService(db, tenant_id).list_all()
        ]
    }


@app.get("/transactions")
def list_transactions(
    tenant_id: str,
    start: Optional[date] = None,
    end: Optional[date] = None,
    entry_type: Optional[EntryType] = None,
    db: Session = Depends(get_db),
):
    txns = TransactionService(db, tenant_id).list_all(start, end, entry_type=entry_type)
    return {"items": [_transaction(txn) for txn in txns]}


@app.post("/accounts")
def create_account(tenant_id: str, data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db, tenant_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": account.id, "name": account.name}


@app.post("/categories")
def create_category(tenant_id: str, data: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db, tenant_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": category.id, "name": category.name, "type": category.type.value}


@app.post("/transactions")
def create_transaction(
    tenant_id: str, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db, tenant_id).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc, ledger_saved=True) from exc
    return _transaction(txn)


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    tenant_id: str,
    data: TransactionIn,
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, tenant_id).update(transaction_id, data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc, ledger_saved=True) from exc
    return _transaction(txn)


@app.post("/transactions/bulk-update")
def bulk_update_transactions(
    tenant_id: str, data: TransactionBulkIn, db: Session = Depends(get_db)
):
    try:
        txns = TransactionService(db, tenant_id).bulk_update(
            data.transaction_ids, data.patch
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc, ledger_saved=True) from exc
    return {"items": [_transaction(txn) for txn in txns]}


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, tenant_id: str, db: Session = Depends(get_db)
):
    try:
        TransactionService(db, tenant_id).soft_delete(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc, ledger_saved=True) from exc
    return {"deleted": transaction_id}


@app.post("/transactions/{transaction_id}/restore")
def restore_transaction(
    transaction_id: int, tenant_id: str, db: Session = Depends(get_db)
):
    try:
        TransactionService(db, tenant_id).restore(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CubeError as exc:
        raise _unavailable(exc, ledger_saved=True) from exc
    return {"restored": transaction_id}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
