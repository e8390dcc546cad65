from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cube import CubeService
from models import Account, Category, EntryType, Transaction, utcnow
from schemas import (
    AccountIn,
    CategoryIn,
    ChangeEvent,
    ChangeOperation,
    EntryValues,
    TransactionIn,
    TransactionPatch,
)

logger = logging.getLogger(__name__)


def entry_values(txn: Transaction) -> EntryValues:
    return EntryValues(
        account_id=txn.account_id,
        category_id=txn.category_id,
        amount_cents=txn.amount_cents,
        date=txn.date,
        entry_type=txn.type,
        is_recurring=txn.is_recurring,
    )


class AccountService:
    def __init__(
        self, session: Session, tenant_id: str, cube: Optional[CubeService] = None
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.cube = cube or CubeService(session)

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.tenant_id == self.tenant_id)
            .order_by(Account.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.tenant_id != self.tenant_id:
            raise ValueError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        existing = self.session.scalar(
            select(Account).where(
                Account.tenant_id == self.tenant_id,
                func.lower(Account.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Account with this name already exists")
        account = Account(tenant_id=self.tenant_id, name=data.name.strip())
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def rename(self, account_id: int, name: str) -> Account:
        account = self.get(account_id)
        new_name = name.strip()

        def write() -> None:
            account.name = new_name
            self.session.flush()

        self.cube.rename_account(self.tenant_id, account.id, new_name, write)
        return account


class CategoryService:
    def __init__(
        self, session: Session, tenant_id: str, cube: Optional[CubeService] = None
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.cube = cube or CubeService(session)

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.tenant_id == self.tenant_id)
            .order_by(Category.type, Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.tenant_id != self.tenant_id:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(
            select(Category).where(
                Category.tenant_id == self.tenant_id,
                Category.type == data.type,
                func.lower(Category.name) == data.name.strip().lower(),
            )
        )
        if existing:
            raise ValueError("Category with this name already exists")
        category = Category(
            tenant_id=self.tenant_id, name=data.name.strip(), type=data.type
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        new_name = name.strip()

        def write() -> None:
            category.name = new_name
            self.session.flush()

        self.cube.rename_category(self.tenant_id, category.id, new_name, write)
        return category


class TransactionService:
    """Ledger writes for one tenant.

    Every mutation lands in the same transaction as the cube increments it
    causes, through ``CubeService.write_through``. Store errors that outlive
    the retries reach the caller as ``CubeError``; a ``RebuildFailedError``
    means the ledger change was saved but its periods are stale until the
    next rebuild or reconciliation.
    """

    def __init__(
        self, session: Session, tenant_id: str, cube: Optional[CubeService] = None
    ) -> None:
        self.session = session
        self.tenant_id = tenant_id
        self.cube = cube or CubeService(session)

    def _check_dimensions(
        self, account_id: int, category_id: Optional[int], entry_type: EntryType
    ) -> None:
        account = self.session.get(Account, account_id)
        if not account or account.tenant_id != self.tenant_id:
            raise ValueError("Account not found")
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category or category.tenant_id != self.tenant_id:
            raise ValueError("Category not found")
        if category.type != entry_type:
            raise ValueError("Category type mismatch")

    def _event(
        self,
        txn: Transaction,
        operation: ChangeOperation,
        old_values: Optional[EntryValues] = None,
        new_values: Optional[EntryValues] = None,
    ) -> ChangeEvent:
        return ChangeEvent(
            entry_id=txn.id,
            tenant_id=self.tenant_id,
            operation=operation,
            old_values=old_values,
            new_values=new_values,
        )

    def _scoped(self, *, include_deleted: bool = False):
        stmt = select(Transaction).where(Transaction.tenant_id == self.tenant_id)
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        return stmt

    def get(
        self,
        transaction_id: int,
        *,
        include_deleted: bool = False,
        for_update: bool = False,
    ) -> Transaction:
        stmt = self._scoped(include_deleted=include_deleted).where(
            Transaction.id == transaction_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list_all(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        *,
        entry_type: Optional[EntryType] = None,
    ) -> list[Transaction]:
        stmt = self._scoped()
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)
        if entry_type:
            stmt = stmt.where(Transaction.type == entry_type)
        stmt = stmt.order_by(Transaction.date, Transaction.id)
        return list(self.session.scalars(stmt).all())

    def create(self, data: TransactionIn) -> Transaction:
        txn: Optional[Transaction] = None

        def write() -> list[ChangeEvent]:
            nonlocal txn
            self._check_dimensions(data.account_id, data.category_id, data.type)
            txn = Transaction(
                tenant_id=self.tenant_id,
                account_id=data.account_id,
                category_id=data.category_id,
                date=data.date,
                type=data.type,
                amount_cents=data.amount_cents,
                is_recurring=data.is_recurring,
                description=data.description,
            )
            self.session.add(txn)
            self.session.flush()
            return [self._event(txn, ChangeOperation.insert, new_values=entry_values(txn))]

        self.cube.write_through(self.tenant_id, write, label=f"create:{self.tenant_id}")
        self.session.refresh(txn)
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn: Optional[Transaction] = None

        def write() -> list[ChangeEvent]:
            nonlocal txn
            txn = self.get(transaction_id, for_update=True)
            self._check_dimensions(data.account_id, data.category_id, data.type)
            before = entry_values(txn)
            txn.account_id = data.account_id
            txn.category_id = data.category_id
            txn.date = data.date
            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.is_recurring = data.is_recurring
            txn.description = data.description
            self.session.flush()
            after = entry_values(txn)
            if after == before:
                return []
            return [self._event(txn, ChangeOperation.update, before, after)]

        self.cube.write_through(
            self.tenant_id, write, label=f"update:{self.tenant_id}:{transaction_id}"
        )
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        def write() -> list[ChangeEvent]:
            txn = self.get(transaction_id, include_deleted=True, for_update=True)
            if txn.deleted_at is not None:
                return []
            txn.deleted_at = utcnow()
            self.session.flush()
            return [self._event(txn, ChangeOperation.delete, old_values=entry_values(txn))]

        self.cube.write_through(
            self.tenant_id, write, label=f"delete:{self.tenant_id}:{transaction_id}"
        )

    def restore(self, transaction_id: int) -> None:
        def write() -> list[ChangeEvent]:
            txn = self.get(transaction_id, include_deleted=True, for_update=True)
            if txn.deleted_at is None:
                return []
            txn.deleted_at = None
            self.session.flush()
            return [self._event(txn, ChangeOperation.insert, new_values=entry_values(txn))]

        self.cube.write_through(
            self.tenant_id, write, label=f"restore:{self.tenant_id}:{transaction_id}"
        )

    def bulk_update(
        self, transaction_ids: Sequence[int], patch: TransactionPatch
    ) -> list[Transaction]:
        """Apply the same field values to many entries in one ledger commit."""
        fields = patch.model_fields_set
        if not fields:
            raise ValueError("No fields to update")
        if "account_id" in fields and patch.account_id is None:
            raise ValueError("account_id cannot be cleared")
        for name in ("date", "type", "amount_cents", "is_recurring"):
            if name in fields and getattr(patch, name) is None:
                raise ValueError(f"{name} cannot be cleared")

        ids = list(dict.fromkeys(transaction_ids))
        txns: list[Transaction] = []

        def write() -> list[ChangeEvent]:
            stmt = (
                self._scoped()
                .where(Transaction.id.in_(ids))
                .order_by(Transaction.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            by_id = {txn.id: txn for txn in self.session.scalars(stmt).all()}
            if len(by_id) != len(ids):
                raise ValueError("Transaction not found")
            txns[:] = [by_id[txn_id] for txn_id in ids]

            events = []
            for txn in txns:
                before = entry_values(txn)
                for name in fields:
                    setattr(txn, name, getattr(patch, name))
                self._check_dimensions(txn.account_id, txn.category_id, txn.type)
                after = entry_values(txn)
                if after != before:
                    events.append(self._event(txn, ChangeOperation.update, before, after))
            self.session.flush()
            return events

        events = self.cube.write_through(
            self.tenant_id, write, label=f"bulk_update:{self.tenant_id}:{len(ids)}"
        )
        logger.info(
            f"transactions_bulk_updated: tenant={self.tenant_id} "
            f"count={len(txns)} changed={len(events)} fields={','.join(sorted(fields))}"
        )
        return txns
