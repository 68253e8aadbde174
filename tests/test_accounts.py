from datetime import datetime

import pytest

from database import Base, make_engine, make_session_factory
from errors import AlreadySet, NotFound, PartialFailure
from models import Transaction, TransactionStatus, TransactionType
from schemas import AccountIn, AccountUpdate, TransactionIn, TransactionPatch
from services import AccountService, TransactionService
from store import LedgerStore


def make_store(tmp_path) -> LedgerStore:
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return LedgerStore(make_session_factory(engine))


class FlakyStore(LedgerStore):
    """Store whose transaction deletes fail for selected ids."""

    def __init__(self, session_factory, fail_ids=()):
        super().__init__(session_factory)
        self.fail_ids = set(fail_ids)

    def delete(self, model, user_id, doc_id):
        if model is Transaction and doc_id in self.fail_ids:
            raise RuntimeError("store unavailable")
        return super().delete(model, user_id, doc_id)


def entry(txn_type: TransactionType, amount: int, account_id: int, **extra) -> TransactionIn:
    return TransactionIn(
        type=txn_type,
        amount_cents=amount,
        description=f"{txn_type.value} {amount}",
        occurred_at=extra.pop("occurred_at", datetime(2025, 1, 15, 12, 0)),
        account_id=account_id,
        **extra,
    )


def test_incremental_balance_matches_reconciliation(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    txns = TransactionService(store)
    checking = accounts.create(AccountIn(name="Checking", initial_balance_cents=10_000))
    savings = accounts.create(AccountIn(name="Savings"))

    salary = txns.create(entry(TransactionType.income, 5_000, checking.id))
    groceries = txns.create(entry(TransactionType.expense, 2_000, checking.id))
    txns.create(
        entry(
            TransactionType.expense,
            1_000,
            checking.id,
            status=TransactionStatus.pending,
        )
    )
    txns.create(
        entry(TransactionType.transfer, 3_000, checking.id, to_account_id=savings.id)
    )

    assert accounts.get(checking.id).balance_cents == 10_000
    assert accounts.get(savings.id).balance_cents == 3_000

    txns.update(
        groceries.id, TransactionPatch(amount_cents=2_500), txns.get(groceries.id)
    )
    txns.delete(txns.get(salary.id))

    cached = accounts.get(checking.id).balance_cents
    assert cached == 10_000 - 2_500 - 3_000
    assert accounts.reconcile(checking.id) == cached
    assert accounts.reconcile(savings.id) == accounts.get(savings.id).balance_cents


def test_reconcile_repairs_drift(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    account = accounts.create(AccountIn(name="Wallet", initial_balance_cents=1_000))
    TransactionService(store).create(entry(TransactionType.expense, 400, account.id))

    store.update(type(account), 1, account.id, balance_cents=99_999)

    assert accounts.reconcile(account.id) == 600
    assert accounts.get(account.id).balance_cents == 600


def test_initial_balance_can_only_be_set_once(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    account = accounts.create(AccountIn(name="Checking"))
    TransactionService(store).create(entry(TransactionType.income, 500, account.id))

    assert not account.initial_balance_set
    accounts.set_initial_balance(account.id, 2_000)

    refreshed = accounts.get(account.id)
    assert refreshed.initial_balance_set
    assert refreshed.initial_balance_cents == 2_000
    assert refreshed.balance_cents == 2_500
    assert accounts.reconcile(account.id) == 2_500

    with pytest.raises(AlreadySet):
        accounts.set_initial_balance(account.id, 3_000)


def test_explicit_initial_balance_counts_as_set(tmp_path) -> None:
    accounts = AccountService(make_store(tmp_path))
    account = accounts.create(AccountIn(name="Checking", initial_balance_cents=0))

    with pytest.raises(AlreadySet):
        accounts.set_initial_balance(account.id, 100)


def test_adjust_balance_creates_adjustment_transaction(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    account = accounts.create(AccountIn(name="Checking", initial_balance_cents=1_000))

    adjustment = accounts.adjust_balance(account.id, 750)

    assert adjustment.is_adjustment
    assert adjustment.type == TransactionType.expense
    assert adjustment.amount_cents == 250
    assert accounts.get(account.id).balance_cents == 750
    assert accounts.adjust_balance(account.id, 750) is None


def test_rename_syncs_transaction_names(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    txns = TransactionService(store)
    source = accounts.create(AccountIn(name="Old"))
    target = accounts.create(AccountIn(name="Target"))
    expense = txns.create(entry(TransactionType.expense, 100, source.id))
    transfer = txns.create(
        entry(TransactionType.transfer, 100, target.id, to_account_id=source.id)
    )

    accounts.update(source.id, AccountUpdate(name="New"))

    assert txns.get(expense.id).account_name == "New"
    assert txns.get(transfer.id).to_account_name == "New"
    assert txns.get(transfer.id).account_name == "Target"


def test_archived_accounts_leave_totals(tmp_path) -> None:
    accounts = AccountService(make_store(tmp_path))
    main = accounts.create(AccountIn(name="Main", initial_balance_cents=1_000))
    hidden = accounts.create(
        AccountIn(name="Hidden", initial_balance_cents=500, include_in_total=False)
    )
    spare = accounts.create(AccountIn(name="Spare", initial_balance_cents=300))

    accounts.archive(spare.id)

    assert [a.id for a in accounts.list_all()] == [hidden.id, main.id]
    assert accounts.total_balance() == 1_000
    accounts.unarchive(spare.id)
    assert accounts.total_balance() == 1_300


def test_delete_account_reverts_effects_on_other_accounts(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    txns = TransactionService(store)
    a = accounts.create(AccountIn(name="A", initial_balance_cents=10_000))
    b = accounts.create(AccountIn(name="B", initial_balance_cents=5_000))

    txns.create(entry(TransactionType.expense, 1_000, a.id))
    txns.create(entry(TransactionType.transfer, 2_000, a.id, to_account_id=b.id))
    incoming = txns.create(
        entry(TransactionType.transfer, 500, b.id, to_account_id=a.id)
    )
    txns.create(entry(TransactionType.income, 700, b.id))
    assert accounts.get(b.id).balance_cents == 7_200

    result = accounts.delete(a.id)

    assert (result.total, result.succeeded, result.failed) == (2, 2, 0)
    with pytest.raises(NotFound):
        accounts.get(a.id)
    assert accounts.get(b.id).balance_cents == 5_200
    assert accounts.reconcile(b.id) == 5_200
    assert txns.get(incoming.id).account_id == b.id


def test_delete_account_keeps_document_on_partial_failure(tmp_path) -> None:
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    factory = make_session_factory(engine)
    store = FlakyStore(factory)
    accounts = AccountService(store)
    txns = TransactionService(store)
    account = accounts.create(AccountIn(name="A", initial_balance_cents=10_000))
    created = [
        txns.create(entry(TransactionType.expense, 100 * (i + 1), account.id))
        for i in range(7)
    ]
    store.fail_ids = {created[2].id}
    progress: list[tuple[int, int]] = []

    result = accounts.delete(account.id, on_progress=lambda d, t: progress.append((d, t)))

    assert (result.total, result.succeeded, result.failed) == (7, 6, 1)
    assert progress == [(5, 7), (7, 7)]
    remaining = accounts.get(account.id)
    assert remaining.balance_cents == 10_000 - 300
    assert accounts.reconcile(account.id) == remaining.balance_cents
    with pytest.raises(PartialFailure):
        result.raise_for_failures()
