from datetime import date, datetime

import pytest

from database import Base, make_engine, make_session_factory
from errors import NotFound, ValidationError
from models import Account, Transaction, TransactionType
from schemas import AccountIn, CreditCardIn, TransactionIn
from services import AccountService, BillService, CreditCardService, TransactionService
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


def make_card(store: LedgerStore, name: str = "Visa", due_day: int = 20):
    return CreditCardService(store).create(
        CreditCardIn(name=name, limit_cents=100_000, closing_day=10, due_day=due_day)
    )


def card_entry(
    card_id: int, amount: int, when: datetime, txn_type=TransactionType.expense
) -> TransactionIn:
    return TransactionIn(
        type=txn_type,
        amount_cents=amount,
        description="Card entry",
        occurred_at=when,
        credit_card_id=card_id,
    )


def january_bill(tmp_path):
    store = make_store(tmp_path)
    account = AccountService(store).create(
        AccountIn(name="Checking", initial_balance_cents=10_000)
    )
    card = make_card(store)
    txns = TransactionService(store)
    txns.create(card_entry(card.id, 3_000, datetime(2025, 1, 2)))
    txns.create(card_entry(card.id, 2_000, datetime(2025, 1, 8)))
    txns.create(
        card_entry(card.id, 500, datetime(2025, 1, 9), TransactionType.income)
    )
    bill = BillService(store).get_or_create(card.id, 1, 2025)
    return store, account, card, bill


def test_pay_marks_bill_and_debits_account(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    bills = BillService(store)
    accounts = AccountService(store)

    payment = bills.pay(bill.id, account.id)

    assert payment.amount_cents == 4_500
    assert payment.type == TransactionType.expense
    assert payment.credit_card_bill_id == bill.id
    assert payment.account_id == account.id
    assert payment.credit_card_id is None
    assert payment.category_id is None

    paid = bills.get(bill.id)
    assert paid.is_paid
    assert paid.paid_at is not None
    assert paid.paid_from_account_id == account.id
    assert paid.payment_transaction_id == payment.id
    assert paid.total_amount_cents == 4_500

    assert accounts.get(account.id).balance_cents == 5_500
    assert accounts.reconcile(account.id) == 5_500
    assert CreditCardService(store).get(card.id).current_used_cents == 0


def test_pay_unpay_round_trip_with_single_open_period(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    bills = BillService(store)
    cards = CreditCardService(store)
    used_before = cards.get(card.id).current_used_cents

    payment = bills.pay(bill.id, account.id)
    restored = bills.unpay(bill.id)

    assert restored == used_before == 4_500
    assert cards.get(card.id).current_used_cents == used_before
    assert AccountService(store).get(account.id).balance_cents == 10_000
    assert store.get(Transaction, 1, payment.id) is None

    unpaid = bills.get(bill.id)
    assert not unpaid.is_paid
    assert unpaid.paid_at is None
    assert unpaid.paid_from_account_id is None
    assert unpaid.payment_transaction_id is None


def test_partial_payment_amount_is_recorded(tmp_path) -> None:
    store, account, _card, bill = january_bill(tmp_path)
    bills = BillService(store)

    payment = bills.pay(bill.id, account.id, amount_cents=1_000)

    assert payment.amount_cents == 1_000
    assert bills.get(bill.id).total_amount_cents == 1_000
    assert AccountService(store).get(account.id).balance_cents == 9_000


def test_pay_rejects_paid_or_empty_bills(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    bills = BillService(store)
    bills.pay(bill.id, account.id)

    with pytest.raises(ValidationError):
        bills.pay(bill.id, account.id)

    empty = bills.get_or_create(card.id, 6, 2025)
    with pytest.raises(ValidationError):
        bills.pay(empty.id, account.id)
    with pytest.raises(NotFound):
        bills.pay(empty.id, 999)


def test_unpay_requires_paid_bill(tmp_path) -> None:
    store, _account, _card, bill = january_bill(tmp_path)

    with pytest.raises(ValidationError):
        BillService(store).unpay(bill.id)


def test_purchase_after_payment_goes_to_next_bill(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    BillService(store).pay(bill.id, account.id)

    late = TransactionService(store).create(
        card_entry(card.id, 800, datetime(2025, 1, 4, 19, 0))
    )

    assert (late.month, late.year) == (2, 2025)
    assert BillService(store).period_total(card.id, 1, 2025) == 4_500
    assert BillService(store).period_total(card.id, 2, 2025) == 800


def test_details_recompute_total_and_clamp_due_date(tmp_path) -> None:
    store = make_store(tmp_path)
    card = make_card(store, due_day=31)
    txns = TransactionService(store)
    txns.create(card_entry(card.id, 1_200, datetime(2025, 2, 1)))
    txns.create(card_entry(card.id, 300, datetime(2025, 2, 3)))

    details = BillService(store).details(card.id, 2, 2025)

    assert details.bill.due_date == date(2025, 2, 28)
    assert details.bill.total_amount_cents == 0
    assert details.total_cents == 1_500
    assert [t.amount_cents for t in details.transactions] == [300, 1_200]
    assert details.card.id == card.id


def test_get_or_create_is_idempotent(tmp_path) -> None:
    store = make_store(tmp_path)
    card = make_card(store)
    bills = BillService(store)

    first = bills.get_or_create(card.id, 3, 2025)
    second = bills.get_or_create(card.id, 3, 2025)

    assert first.id == second.id
    assert first.credit_card_name == "Visa"
    assert not first.is_paid


def test_generate_for_month_only_for_cards_with_activity(tmp_path) -> None:
    store = make_store(tmp_path)
    busy = make_card(store, "Busy")
    make_card(store, "Idle")
    TransactionService(store).create(card_entry(busy.id, 900, datetime(2025, 5, 2)))
    bills = BillService(store)

    generated = bills.generate_for_month(5, 2025)

    assert [d.card.name for d in generated] == ["Busy"]
    assert generated[0].total_cents == 900
    listed = bills.bills_for_month(5, 2025)
    assert [d.bill.id for d in listed] == [generated[0].bill.id]


def test_unpay_restores_only_the_paid_period_total(tmp_path) -> None:
    store = make_store(tmp_path)
    account = AccountService(store).create(
        AccountIn(name="Checking", initial_balance_cents=10_000)
    )
    card = make_card(store)
    txns = TransactionService(store)
    txns.create(card_entry(card.id, 3_000, datetime(2025, 1, 2)))
    txns.create(card_entry(card.id, 2_000, datetime(2025, 2, 2)))
    cards = CreditCardService(store)
    bills = BillService(store)
    bill = bills.get_or_create(card.id, 1, 2025)
    assert cards.get(card.id).current_used_cents == 5_000

    bills.pay(bill.id, account.id)
    restored = bills.unpay(bill.id)

    assert restored == 3_000
    assert cards.get(card.id).current_used_cents == 3_000
    assert cards.reconcile(card.id) == 5_000


def test_failed_unpay_leaves_bill_paid(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    payment = BillService(store).pay(bill.id, account.id)
    flaky = FlakyStore(store.session_factory, fail_ids=[payment.id])

    with pytest.raises(RuntimeError):
        BillService(flaky).unpay(bill.id)

    still_paid = BillService(store).get(bill.id)
    assert still_paid.is_paid
    assert still_paid.payment_transaction_id == payment.id
    assert still_paid.paid_from_account_id == account.id
    assert store.get(Transaction, 1, payment.id) is not None
    assert AccountService(store).get(account.id).balance_cents == 5_500
    assert CreditCardService(store).get(card.id).current_used_cents == 0


def test_payment_row_cannot_be_deleted_directly(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    payment = BillService(store).pay(bill.id, account.id)
    txns = TransactionService(store)

    with pytest.raises(ValidationError):
        txns.delete(txns.get(payment.id))

    paid = BillService(store).get(bill.id)
    assert paid.is_paid
    assert paid.payment_transaction_id == payment.id
    assert store.get(Transaction, 1, payment.id) is not None
    assert AccountService(store).get(account.id).balance_cents == 5_500
    assert CreditCardService(store).get(card.id).current_used_cents == 0


def test_account_delete_detaches_paid_bills(tmp_path) -> None:
    store, account, card, bill = january_bill(tmp_path)
    payment = BillService(store).pay(bill.id, account.id)

    result = AccountService(store).delete(account.id)

    assert (result.total, result.succeeded, result.failed) == (1, 1, 0)
    assert store.get(Account, 1, account.id) is None
    assert store.get(Transaction, 1, payment.id) is None
    detached = BillService(store).get(bill.id)
    assert detached.is_paid
    assert detached.paid_from_account_id is None
    assert detached.payment_transaction_id is None

    assert BillService(store).unpay(bill.id) == 4_500
    assert not BillService(store).get(bill.id).is_paid
    assert CreditCardService(store).get(card.id).current_used_cents == 4_500
