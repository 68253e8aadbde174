from datetime import datetime

from billing import shift_period
from database import Base, make_engine, make_session_factory
from models import TransactionStatus, TransactionType
from schemas import AccountIn, CreditCardIn, TransactionIn
from services import AccountService, CreditCardService, MetricsService, TransactionService
from store import LedgerStore


def make_store(tmp_path) -> LedgerStore:
    engine = make_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    return LedgerStore(make_session_factory(engine))


def seed(store: LedgerStore):
    accounts = AccountService(store)
    checking = accounts.create(AccountIn(name="Checking", initial_balance_cents=100_000))
    savings = accounts.create(AccountIn(name="Savings"))
    card = CreditCardService(store).create(
        CreditCardIn(name="Visa", limit_cents=50_000, closing_day=10, due_day=20)
    )
    txns = TransactionService(store)

    def add(txn_type, amount, when, **extra):
        return txns.create(
            TransactionIn(
                type=txn_type,
                amount_cents=amount,
                description=f"{txn_type.value} {amount}",
                occurred_at=when,
                **extra,
            )
        )

    add(TransactionType.income, 50_000, datetime(2025, 1, 5), account_id=checking.id)
    add(TransactionType.expense, 20_000, datetime(2025, 1, 12), account_id=checking.id)
    add(
        TransactionType.transfer,
        5_000,
        datetime(2025, 1, 20),
        account_id=checking.id,
        to_account_id=savings.id,
    )
    add(TransactionType.expense, 7_000, datetime(2025, 1, 5), credit_card_id=card.id)
    add(
        TransactionType.expense,
        3_000,
        datetime(2025, 1, 25),
        account_id=checking.id,
        status=TransactionStatus.pending,
    )
    add(TransactionType.expense, 10_000, datetime(2025, 2, 3), account_id=checking.id)
    return checking, savings, card


def test_month_totals_skip_card_rows_and_transfers(tmp_path) -> None:
    store = make_store(tmp_path)
    seed(store)

    totals = MetricsService(store).month_totals(1, 2025)

    assert totals.income == 50_000
    assert totals.expense == 20_000
    assert totals.balance == 30_000


def test_carry_over_chains_across_months(tmp_path) -> None:
    store = make_store(tmp_path)
    seed(store)
    metrics = MetricsService(store)

    assert metrics.carry_over_balance(1, 2025) == 100_000
    assert metrics.carry_over_balance(2, 2025) == 130_000
    assert metrics.carry_over_balance(3, 2025) == 120_000

    month, year = 11, 2024
    for _ in range(6):
        next_month, next_year = shift_period(month, year, 1)
        assert (
            metrics.carry_over_balance(month, year)
            + metrics.month_totals(month, year).balance
            == metrics.carry_over_balance(next_month, next_year)
        )
        month, year = next_month, next_year


def test_carry_over_ignores_excluded_and_archived_accounts(tmp_path) -> None:
    store = make_store(tmp_path)
    accounts = AccountService(store)
    accounts.create(AccountIn(name="Main", initial_balance_cents=1_000))
    accounts.create(
        AccountIn(name="Hidden", initial_balance_cents=2_000, include_in_total=False)
    )
    old = accounts.create(AccountIn(name="Old", initial_balance_cents=4_000))
    accounts.archive(old.id)

    assert MetricsService(store).carry_over_balance(1, 2025) == 1_000


def test_account_carry_over_includes_transfers(tmp_path) -> None:
    store = make_store(tmp_path)
    checking, savings, _card = seed(store)
    metrics = MetricsService(store)

    assert metrics.account_carry_over_balance(checking.id, 2, 2025) == 125_000
    assert metrics.account_carry_over_balance(savings.id, 2, 2025) == 5_000
    assert metrics.account_carry_over_balance(savings.id, 1, 2025) == 0


def test_month_report_splits_debit_and_credit(tmp_path) -> None:
    store = make_store(tmp_path)
    seed(store)

    report = MetricsService(store).month_report(1, 2025)

    assert report["debit_expenses"] == 20_000
    assert report["credit_expenses"] == 7_000
    assert report["total_credit_card_usage"] == 7_000
    assert report["debt_percentage"] == 14.0
    assert report["previous_month"] == {"income": 0, "expense": 0, "balance": 0}
