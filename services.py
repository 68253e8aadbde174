from __future__ import annotations

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from billing import (
    BillValidation,
    BillingCycleResolver,
    add_months,
    due_date_for,
    local_now,
    month_label,
    move_to_period,
    period_before,
    shift_period,
)
from config import get_settings
from errors import AlreadySet, NotFound, PartialFailure, ValidationError
from models import (
    Account,
    AccountType,
    Bill,
    Category,
    CreditCard,
    Goal,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CreditCardIn,
    CreditCardUpdate,
    GoalIn,
    TransactionIn,
    TransactionPatch,
)
from store import LedgerStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

REFERENCE_FIELDS = (
    "category_id",
    "account_id",
    "to_account_id",
    "credit_card_id",
    "goal_id",
)


def get_current_user_id() -> int:
    return 1


def card_usage_delta(txn: Transaction) -> int:
    if txn.type == TransactionType.expense:
        return txn.amount_cents
    if txn.type == TransactionType.income:
        return -txn.amount_cents
    return 0


def calculate_bill_total(transactions: Sequence[Transaction]) -> int:
    return sum(
        card_usage_delta(txn)
        for txn in transactions
        if txn.status != TransactionStatus.cancelled
    )


def account_effect(txn: Transaction, account_id: int) -> int:
    """Signed effect of a non-card transaction on one account's balance."""
    if txn.type == TransactionType.transfer:
        effect = 0
        if txn.account_id == account_id:
            effect -= txn.amount_cents
        if txn.to_account_id == account_id:
            effect += txn.amount_cents
        return effect
    if txn.account_id != account_id:
        return 0
    if txn.type == TransactionType.income:
        return txn.amount_cents
    return -txn.amount_cents


def counts_toward_balance(txn: Transaction) -> bool:
    return txn.status == TransactionStatus.completed and txn.credit_card_id is None


@dataclass
class BulkResult:
    total: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def partial(self) -> bool:
        return self.failed > 0

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialFailure(self.succeeded, self.failed, self.total)


def run_in_batches(
    items: Sequence[Any],
    action: Callable[[Any], Any],
    *,
    batch_size: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    label: str = "bulk",
) -> BulkResult:
    """
    Run ``action`` over ``items`` in fixed-size batches; each batch runs
    concurrently and must finish before the next starts. Item failures are
    logged and counted, never raised.
    """
    batch_size = batch_size or get_settings().bulk_batch_size
    total = len(items)
    result = BulkResult(total=total)
    if not total:
        return result

    with ThreadPoolExecutor(max_workers=batch_size) as pool:
        for start in range(0, total, batch_size):
            chunk = items[start : start + batch_size]
            futures = [pool.submit(action, item) for item in chunk]
            for item, future in zip(chunk, futures):
                try:
                    future.result()
                except Exception as exc:
                    result.failed += 1
                    logger.warning(
                        f"{label}_item_failed: id={getattr(item, 'id', item)} error={exc}"
                    )
                else:
                    result.succeeded += 1
            if on_progress:
                on_progress(min(start + batch_size, total), total)

    if result.failed:
        logger.warning(
            f"{label}_partial: succeeded={result.succeeded} failed={result.failed} total={total}"
        )
    return result


class CategoryService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()

    def get(self, category_id: int) -> Category:
        category = self.store.get(Category, self.user_id, category_id)
        if not category:
            raise NotFound("Category not found")
        return category

    def list_all(self) -> list[Category]:
        categories = self.store.query(Category, self.user_id)
        return sorted(categories, key=lambda c: (c.type.value, c.name.lower()))

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        for existing in self.store.query(Category, self.user_id, type=data.type):
            if existing.name.lower() == clean_name.lower():
                raise ValidationError("Category with this name already exists")
        return self.store.create(
            Category,
            self.user_id,
            name=clean_name,
            type=data.type,
            icon=data.icon,
            color=data.color,
        )

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        self.store.update(Category, self.user_id, category.id, name=clean_name)
        TransactionService(self.store, self.user_id).sync_category_name(
            category.id, clean_name, category.icon
        )
        return self.get(category_id)


class GoalService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()

    def get(self, goal_id: int) -> Goal:
        goal = self.store.get(Goal, self.user_id, goal_id)
        if not goal:
            raise NotFound("Goal not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        return self.store.create(
            Goal,
            self.user_id,
            name=data.name.strip(),
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=data.current_amount_cents,
            is_active=True,
        )

    def rename(self, goal_id: int, name: str) -> Goal:
        goal = self.get(goal_id)
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Goal name cannot be empty")
        self.store.update(Goal, self.user_id, goal.id, name=clean_name)
        TransactionService(self.store, self.user_id).sync_goal_name(goal.id, clean_name)
        return self.get(goal_id)

    def add_progress(self, goal_id: int, amount_cents: int) -> None:
        goal = self.get(goal_id)
        self.store.increment(
            Goal, self.user_id, goal_id, "current_amount_cents", amount_cents
        )
        reached = goal.current_amount_cents + amount_cents >= goal.target_amount_cents
        if reached and goal.completed_at is None:
            self.store.update(Goal, self.user_id, goal_id, completed_at=local_now())

    def remove_progress(self, goal_id: int, amount_cents: int) -> None:
        if self.store.get(Goal, self.user_id, goal_id) is None:
            return
        self.store.increment(
            Goal, self.user_id, goal_id, "current_amount_cents", -amount_cents
        )
        goal = self.get(goal_id)
        if goal.current_amount_cents < 0:
            self.store.update(Goal, self.user_id, goal_id, current_amount_cents=0)

    def delete(
        self, goal_id: int, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        self.get(goal_id)
        result = TransactionService(self.store, self.user_id).delete_by_goal(
            goal_id, on_progress
        )
        self.store.delete(Goal, self.user_id, goal_id)
        return result


class AccountService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()

    def get(self, account_id: int) -> Account:
        account = self.store.get(Account, self.user_id, account_id)
        if not account:
            raise NotFound("Account not found")
        return account

    def list_all(self, include_archived: bool = False) -> list[Account]:
        filters: dict[str, Any] = {} if include_archived else {"is_archived": False}
        accounts = self.store.query(Account, self.user_id, **filters)
        return sorted(accounts, key=lambda a: a.name.lower())

    def create(self, data: AccountIn) -> Account:
        balance = (
            data.balance_cents
            if data.balance_cents is not None
            else data.initial_balance_cents
        )
        account = self.store.create(
            Account,
            self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=balance,
            initial_balance_cents=data.initial_balance_cents,
            initial_balance_set="initial_balance_cents" in data.model_fields_set,
            include_in_total=data.include_in_total,
            is_archived=False,
            is_default=False,
            icon=data.icon,
            color=data.color,
        )
        logger.info(f"account_created: id={account.id} balance_cents={balance}")
        return account

    def create_default(self) -> Account:
        return self.store.create(
            Account,
            self.user_id,
            name="Main account",
            type=AccountType.checking,
            balance_cents=0,
            initial_balance_cents=0,
            initial_balance_set=False,
            include_in_total=True,
            is_archived=False,
            is_default=True,
            icon="wallet",
        )

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in {"icon", "color"}
        }
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        self.store.update(Account, self.user_id, account_id, **changes)
        if "name" in changes and changes["name"] != account.name:
            TransactionService(self.store, self.user_id).sync_account_name(
                account_id, changes["name"]
            )
        return self.get(account_id)

    def archive(self, account_id: int) -> None:
        self.get(account_id)
        self.store.update(Account, self.user_id, account_id, is_archived=True)

    def unarchive(self, account_id: int) -> None:
        self.get(account_id)
        self.store.update(Account, self.user_id, account_id, is_archived=False)

    def delete(
        self, account_id: int, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        """
        Delete an account together with the transactions it originates.

        Transactions go through the regular delete path so every balance
        effect is reverted. The account document is only removed when all of
        them were deleted; otherwise it stays so the caller can retry.
        """
        self.get(account_id)
        result = TransactionService(self.store, self.user_id).delete_by_account(
            account_id, on_progress
        )
        if result.failed:
            logger.warning(
                f"account_delete_incomplete: id={account_id} failed={result.failed}"
            )
            return result

        for card in self.store.query(
            CreditCard, self.user_id, payment_account_id=account_id
        ):
            self.store.update(
                CreditCard, self.user_id, card.id, payment_account_id=None
            )
        # Bills stay paid; their payment rows went with the account.
        for bill in self.store.query(Bill, self.user_id, paid_from_account_id=account_id):
            self.store.update(
                Bill,
                self.user_id,
                bill.id,
                paid_from_account_id=None,
                payment_transaction_id=None,
            )
        self.store.delete(Account, self.user_id, account_id)
        logger.info(f"account_deleted: id={account_id} transactions={result.succeeded}")
        return result

    def apply(
        self,
        account_id: int,
        txn_type: TransactionType,
        amount_cents: int,
        to_account_id: Optional[int] = None,
        *,
        reverse: bool = False,
    ) -> None:
        sign = -1 if reverse else 1
        if txn_type == TransactionType.expense:
            self._increment(account_id, -amount_cents * sign)
        elif txn_type == TransactionType.income:
            self._increment(account_id, amount_cents * sign)
        elif txn_type == TransactionType.transfer:
            self._increment(account_id, -amount_cents * sign)
            if to_account_id is not None:
                self._increment(to_account_id, amount_cents * sign)

    def _increment(self, account_id: int, delta: int) -> None:
        self.store.increment(Account, self.user_id, account_id, "balance_cents", delta)

    def reconcile(self, account_id: int) -> int:
        account = self.get(account_id)
        outgoing = self.store.query(Transaction, self.user_id, account_id=account_id)
        incoming = self.store.query(
            Transaction, self.user_id, to_account_id=account_id
        )

        balance = account.initial_balance_cents
        seen: set[int] = set()
        for txn in [*outgoing, *incoming]:
            if txn.id in seen:
                continue
            seen.add(txn.id)
            if counts_toward_balance(txn):
                balance += account_effect(txn, account_id)

        if balance != account.balance_cents:
            logger.warning(
                f"account_drift: id={account_id} cached={account.balance_cents} actual={balance}"
            )
        self.store.update(Account, self.user_id, account_id, balance_cents=balance)
        return balance

    def set_initial_balance(self, account_id: int, initial_balance_cents: int) -> None:
        account = self.get(account_id)
        if account.initial_balance_set:
            raise AlreadySet("Initial balance was already set for this account")
        self.store.update(
            Account,
            self.user_id,
            account_id,
            initial_balance_cents=initial_balance_cents,
            initial_balance_set=True,
        )
        self._increment(
            account_id, initial_balance_cents - account.initial_balance_cents
        )

    def adjust_balance(
        self, account_id: int, balance_cents: int
    ) -> Optional[Transaction]:
        account = self.get(account_id)
        difference = balance_cents - account.balance_cents
        if difference == 0:
            return None
        credit = difference > 0
        return TransactionService(self.store, self.user_id).create(
            TransactionIn(
                type=TransactionType.income if credit else TransactionType.expense,
                amount_cents=abs(difference),
                description="Balance adjustment (credit)"
                if credit
                else "Balance adjustment (debit)",
                occurred_at=local_now(),
                account_id=account_id,
            ),
            is_adjustment=True,
        )

    def total_balance(self) -> int:
        return sum(
            account.balance_cents
            for account in self.list_all()
            if account.include_in_total
        )


class CreditCardService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()

    def get(self, card_id: int) -> CreditCard:
        card = self.store.get(CreditCard, self.user_id, card_id)
        if not card:
            raise NotFound("Credit card not found")
        return card

    def list_all(self, include_archived: bool = False) -> list[CreditCard]:
        filters: dict[str, Any] = {} if include_archived else {"is_archived": False}
        cards = self.store.query(CreditCard, self.user_id, **filters)
        return sorted(cards, key=lambda c: c.name.lower())

    def create(self, data: CreditCardIn) -> CreditCard:
        if data.payment_account_id is not None:
            AccountService(self.store, self.user_id).get(data.payment_account_id)
        return self.store.create(
            CreditCard,
            self.user_id,
            name=data.name.strip(),
            brand=data.brand,
            last_digits=data.last_digits,
            limit_cents=data.limit_cents,
            current_used_cents=0,
            closing_day=data.closing_day,
            due_day=data.due_day,
            payment_account_id=data.payment_account_id,
            is_archived=False,
            icon=data.icon,
            color=data.color,
        )

    def update(self, card_id: int, data: CreditCardUpdate) -> CreditCard:
        card = self.get(card_id)
        nullable = {"brand", "last_digits", "payment_account_id", "icon", "color"}
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in nullable
        }
        if changes.get("payment_account_id") is not None:
            AccountService(self.store, self.user_id).get(changes["payment_account_id"])
        if "name" in changes:
            changes["name"] = changes["name"].strip()
        self.store.update(CreditCard, self.user_id, card_id, **changes)
        if "name" in changes and changes["name"] != card.name:
            TransactionService(self.store, self.user_id).sync_card_name(
                card_id, changes["name"]
            )
            BillService(self.store, self.user_id).sync_card_name(
                card_id, changes["name"]
            )
        return self.get(card_id)

    def archive(self, card_id: int) -> None:
        self.get(card_id)
        self.store.update(CreditCard, self.user_id, card_id, is_archived=True)

    def unarchive(self, card_id: int) -> None:
        self.get(card_id)
        self.store.update(CreditCard, self.user_id, card_id, is_archived=False)

    def delete(
        self, card_id: int, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        self.get(card_id)
        result = TransactionService(self.store, self.user_id).delete_by_card(
            card_id, on_progress
        )
        if result.failed:
            logger.warning(
                f"credit_card_delete_incomplete: id={card_id} failed={result.failed}"
            )
            return result

        bills = self.store.query(Bill, self.user_id, credit_card_id=card_id)
        for bill in bills:
            self.store.delete(Bill, self.user_id, bill.id)
        self.store.delete(CreditCard, self.user_id, card_id)
        logger.info(
            f"credit_card_deleted: id={card_id} transactions={result.succeeded} bills={len(bills)}"
        )
        return result

    def adjust(self, card_id: int, delta: int) -> None:
        self.store.increment(
            CreditCard, self.user_id, card_id, "current_used_cents", delta
        )

    def set_usage(self, card_id: int, used_cents: int) -> None:
        self.store.update(
            CreditCard, self.user_id, card_id, current_used_cents=used_cents
        )

    def reconcile(self, card_id: int) -> int:
        card = self.get(card_id)
        transactions = self.store.query(
            Transaction, self.user_id, credit_card_id=card_id
        )
        used = calculate_bill_total(transactions)
        if used != card.current_used_cents:
            logger.warning(
                f"credit_card_drift: id={card_id} cached={card.current_used_cents} actual={used}"
            )
        self.set_usage(card_id, used)
        return used

    def create_adjustment(
        self, card_id: int, used_cents: int
    ) -> Optional[Transaction]:
        card = self.get(card_id)
        difference = used_cents - card.current_used_cents
        if difference == 0:
            return None
        debit = difference > 0
        return TransactionService(self.store, self.user_id).create(
            TransactionIn(
                type=TransactionType.expense if debit else TransactionType.income,
                amount_cents=abs(difference),
                description="Bill adjustment (debit)"
                if debit
                else "Bill adjustment (refund)",
                occurred_at=local_now(),
                credit_card_id=card_id,
            ),
            is_adjustment=True,
        )

    def total_usage(self) -> int:
        return sum(card.current_used_cents for card in self.list_all())


@dataclass(frozen=True)
class SeriesMove:
    moved: int
    failed: int
    month: int
    year: int


class TransactionService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()
        self.accounts = AccountService(store, self.user_id)
        self.cards = CreditCardService(store, self.user_id)
        self.goals = GoalService(store, self.user_id)
        self.resolver = BillingCycleResolver(store, self.user_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.store.get(Transaction, self.user_id, transaction_id)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def list_by_month(self, month: int, year: int) -> list[Transaction]:
        transactions = self.store.query(
            Transaction, self.user_id, month=month, year=year
        )
        return sorted(transactions, key=lambda t: (t.occurred_at, t.id))

    def list_by_account(
        self, account_id: int, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Transaction]:
        period: dict[str, Any] = {}
        if month and year:
            period = {"month": month, "year": year}
        outgoing = self.store.query(
            Transaction, self.user_id, account_id=account_id, **period
        )
        incoming = self.store.query(
            Transaction, self.user_id, to_account_id=account_id, **period
        )
        unique = {txn.id: txn for txn in [*outgoing, *incoming]}
        return sorted(unique.values(), key=lambda t: (t.occurred_at, t.id))

    def list_by_card(
        self, card_id: int, month: Optional[int] = None, year: Optional[int] = None
    ) -> list[Transaction]:
        period: dict[str, Any] = {}
        if month and year:
            period = {"month": month, "year": year}
        transactions = self.store.query(
            Transaction, self.user_id, credit_card_id=card_id, **period
        )
        return sorted(transactions, key=lambda t: (t.occurred_at, t.id))

    def list_by_series(self, series_id: str) -> list[Transaction]:
        transactions = self.store.query(Transaction, self.user_id, series_id=series_id)
        return sorted(transactions, key=lambda t: (t.occurred_at, t.id))

    def count_by_account(self, account_id: int) -> int:
        return self.store.count(Transaction, self.user_id, account_id=account_id)

    def count_by_card(self, card_id: int) -> int:
        return self.store.count(Transaction, self.user_id, credit_card_id=card_id)

    def _validate_shape(
        self,
        txn_type: TransactionType,
        account_id: Optional[int],
        to_account_id: Optional[int],
        credit_card_id: Optional[int],
    ) -> None:
        if txn_type == TransactionType.transfer:
            if credit_card_id is not None:
                raise ValidationError("Transfers cannot use a credit card")
            if account_id is None or to_account_id is None:
                raise ValidationError(
                    "Transfers need a source and a destination account"
                )
            if account_id == to_account_id:
                raise ValidationError("Transfer source and destination must differ")
            return
        if to_account_id is not None:
            raise ValidationError("Only transfers can have a destination account")
        if account_id is None and credit_card_id is None:
            raise ValidationError("Transaction needs an account or a credit card")

    def _names_for(self, field_name: str, value: Optional[int]) -> dict[str, Any]:
        if field_name == "account_id":
            return {"account_name": self.accounts.get(value).name if value else None}
        if field_name == "to_account_id":
            return {"to_account_name": self.accounts.get(value).name if value else None}
        if field_name == "credit_card_id":
            return {"credit_card_name": self.cards.get(value).name if value else None}
        if field_name == "goal_id":
            return {"goal_name": self.goals.get(value).name if value else None}
        if field_name == "category_id":
            if not value:
                return {"category_name": None, "category_icon": None}
            category = CategoryService(self.store, self.user_id).get(value)
            return {"category_name": category.name, "category_icon": category.icon}
        return {}

    def _period_for(self, occurred_at, card_id: Optional[int]) -> tuple[int, int]:
        if card_id is None:
            return occurred_at.month, occurred_at.year
        card = self.cards.get(card_id)
        validation: BillValidation = self.resolver.validate_for_transaction(
            card.id, occurred_at, card.closing_day
        )
        if validation.redirected:
            logger.info(
                f"bill_redirect: card_id={card.id} period={validation.bill_year}-{validation.bill_month:02d}"
            )
        return validation.bill_month, validation.bill_year

    def _apply_effect(self, txn: Transaction, *, reverse: bool = False) -> None:
        if txn.credit_card_id is not None:
            delta = card_usage_delta(txn)
            self.cards.adjust(txn.credit_card_id, -delta if reverse else delta)
        elif txn.account_id is not None:
            self.accounts.apply(
                txn.account_id,
                txn.type,
                txn.amount_cents,
                txn.to_account_id,
                reverse=reverse,
            )

    def _apply_goal(self, txn: Transaction, *, reverse: bool = False) -> None:
        if txn.goal_id is None:
            return
        if reverse:
            self.goals.remove_progress(txn.goal_id, txn.amount_cents)
        else:
            self.goals.add_progress(txn.goal_id, txn.amount_cents)

    def create(
        self,
        data: TransactionIn,
        *,
        credit_card_bill_id: Optional[int] = None,
        is_adjustment: bool = False,
    ) -> Transaction:
        self._validate_shape(
            data.type, data.account_id, data.to_account_id, data.credit_card_id
        )
        month, year = self._period_for(data.occurred_at, data.credit_card_id)
        fields: dict[str, Any] = {
            "type": data.type,
            "amount_cents": data.amount_cents,
            "description": data.description.strip(),
            "occurred_at": data.occurred_at,
            "status": data.status,
            "month": month,
            "year": year,
            "notes": data.notes,
            "series_id": data.series_id,
            "parent_transaction_id": data.parent_transaction_id,
            "credit_card_bill_id": credit_card_bill_id,
            "is_adjustment": is_adjustment,
        }
        for name in REFERENCE_FIELDS:
            value = getattr(data, name)
            if value is not None:
                fields[name] = value
                fields.update(self._names_for(name, value))

        txn = self.store.create(Transaction, self.user_id, **fields)
        if txn.status == TransactionStatus.completed:
            self._apply_effect(txn)
            self._apply_goal(txn)
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"amount_cents={txn.amount_cents} period={txn.year}-{txn.month:02d}"
        )
        return txn

    def create_series(self, data: TransactionIn, installments: int) -> list[Transaction]:
        """
        Split ``data.amount_cents`` into monthly installments that share one
        series id. The first installment carries the leftover cents and the
        others point at it through ``parent_transaction_id``.
        """
        if installments < 1:
            raise ValidationError("A series needs at least one installment")
        base_amount, remainder = divmod(data.amount_cents, installments)
        if base_amount == 0:
            raise ValidationError("Amount is too small for that many installments")

        series_id = data.series_id or uuid.uuid4().hex
        created: list[Transaction] = []
        parent_id: Optional[int] = None
        for index in range(installments):
            description = data.description
            if installments > 1:
                description = f"{data.description} ({index + 1}/{installments})"
            item = data.model_copy(
                update={
                    "amount_cents": base_amount + (remainder if index == 0 else 0),
                    "occurred_at": add_months(data.occurred_at, index),
                    "description": description,
                    "series_id": series_id,
                    "parent_transaction_id": parent_id,
                }
            )
            txn = self.create(item)
            if parent_id is None:
                parent_id = txn.id
            created.append(txn)
        return created

    def update(
        self, transaction_id: int, patch: TransactionPatch, previous: Transaction
    ) -> Transaction:
        """
        Update a transaction from a caller-supplied snapshot of its old state.

        The old effect is reverted in full and the new one applied in full,
        so type, amount, status and target changes all go through the same
        path. Card rows that land on another bill trigger a full usage
        reconciliation of every card involved.
        """
        changes = patch.model_dump(exclude_unset=True)
        for key in ("type", "amount_cents", "description", "occurred_at", "status"):
            if key in changes and changes[key] is None:
                raise ValidationError(f"{key} cannot be cleared")

        merged = {
            name: changes.get(name, getattr(previous, name))
            for name in ("type", "account_id", "to_account_id", "credit_card_id")
        }
        self._validate_shape(
            merged["type"],
            merged["account_id"],
            merged["to_account_id"],
            merged["credit_card_id"],
        )

        try:
            fields = dict(changes)
            if "description" in fields:
                fields["description"] = fields["description"].strip()
            for name in REFERENCE_FIELDS:
                if name in changes and changes[name] != getattr(previous, name):
                    fields.update(self._names_for(name, changes[name]))

            card_changed = merged["credit_card_id"] != previous.credit_card_id
            if "occurred_at" in changes or card_changed:
                fields["month"], fields["year"] = self._period_for(
                    changes.get("occurred_at", previous.occurred_at),
                    merged["credit_card_id"],
                )

            if previous.status == TransactionStatus.completed:
                self._apply_goal(previous, reverse=True)
                self._apply_effect(previous, reverse=True)

            self.store.update(Transaction, self.user_id, transaction_id, **fields)
            updated = self.get(transaction_id)

            if updated.status == TransactionStatus.completed:
                self._apply_goal(updated)
                self._apply_effect(updated)

            period_changed = (updated.month, updated.year) != (
                previous.month,
                previous.year,
            )
            if period_changed or card_changed:
                for card_id in {previous.credit_card_id, updated.credit_card_id}:
                    if card_id is not None:
                        self.cards.reconcile(card_id)
        except Exception:
            logger.exception(
                f"transaction_update_failed: id={transaction_id} fields={sorted(changes)}"
            )
            raise

        logger.info(f"transaction_updated: id={transaction_id} fields={sorted(changes)}")
        return updated

    def delete(
        self, transaction: Transaction, *, allow_bill_payment: bool = False
    ) -> None:
        if transaction.credit_card_bill_id is not None and not allow_bill_payment:
            bill = self.store.get(Bill, self.user_id, transaction.credit_card_bill_id)
            if (
                bill is not None
                and bill.is_paid
                and bill.payment_transaction_id == transaction.id
            ):
                raise ValidationError("Bill payments are removed by unpaying the bill")

        if not self.store.delete(Transaction, self.user_id, transaction.id):
            raise NotFound("Transaction not found")

        completed = transaction.status == TransactionStatus.completed
        if completed and transaction.credit_card_id is None and transaction.account_id:
            self.accounts.apply(
                transaction.account_id,
                transaction.type,
                transaction.amount_cents,
                transaction.to_account_id,
                reverse=True,
            )
        if completed:
            self._apply_goal(transaction, reverse=True)
        if transaction.credit_card_id is not None:
            self.cards.reconcile(transaction.credit_card_id)
        logger.info(f"transaction_deleted: id={transaction.id}")

    def _reconcile_touched(
        self, transactions: Sequence[Transaction], account_ids: Sequence[int] = ()
    ) -> None:
        accounts: set[int] = set(account_ids)
        cards: set[int] = set()
        for txn in transactions:
            if txn.credit_card_id is not None:
                cards.add(txn.credit_card_id)
                continue
            if txn.account_id is not None:
                accounts.add(txn.account_id)
            if txn.to_account_id is not None:
                accounts.add(txn.to_account_id)

        for account_id in sorted(accounts):
            if self.store.get(Account, self.user_id, account_id) is not None:
                self.accounts.reconcile(account_id)
        for card_id in sorted(cards):
            if self.store.get(CreditCard, self.user_id, card_id) is not None:
                self.cards.reconcile(card_id)

    def delete_series(
        self, series_id: str, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        transactions = self.list_by_series(series_id)
        result = run_in_batches(
            transactions, self.delete, on_progress=on_progress, label="series_delete"
        )
        self._reconcile_touched(transactions)
        return result

    def delete_by_account(
        self, account_id: int, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        # Only rows the account originates; incoming transfers belong to the
        # source account.
        transactions = self.store.query(
            Transaction, self.user_id, account_id=account_id
        )
        result = run_in_batches(
            transactions,
            lambda txn: self.delete(txn, allow_bill_payment=True),
            on_progress=on_progress,
            label="account_delete",
        )
        self._reconcile_touched(transactions, account_ids=[account_id])
        return result

    def delete_by_card(
        self, card_id: int, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        transactions = self.store.query(
            Transaction, self.user_id, credit_card_id=card_id
        )
        result = run_in_batches(
            transactions, self.delete, on_progress=on_progress, label="card_delete"
        )
        self.cards.reconcile(card_id)
        return result

    def delete_by_goal(
        self, goal_id: int, on_progress: Optional[ProgressCallback] = None
    ) -> BulkResult:
        transactions = self.store.query(Transaction, self.user_id, goal_id=goal_id)
        result = run_in_batches(
            transactions, self.delete, on_progress=on_progress, label="goal_delete"
        )
        self._reconcile_touched(transactions)
        return result

    def move_series_to_next_bill(self, series_id: str, card_id: int) -> SeriesMove:
        transactions = sorted(
            self.list_by_series(series_id),
            key=lambda t: (t.year, t.month, t.occurred_at, t.id),
        )
        if not transactions:
            raise NotFound("No transactions found for this series")
        if any(txn.credit_card_id != card_id for txn in transactions):
            raise ValidationError("Series transactions belong to different credit cards")
        self.cards.get(card_id)

        first = transactions[0]
        month, year = shift_period(first.month, first.year, 1)
        if self.resolver.is_paid(card_id, month, year):
            month, year = shift_period(month, year, 1)
        offset = (year * 12 + month) - (first.year * 12 + first.month)

        moved = failed = 0
        for index, txn in enumerate(transactions):
            target_month, target_year = shift_period(month, year, index)
            try:
                self.store.update(
                    Transaction,
                    self.user_id,
                    txn.id,
                    month=target_month,
                    year=target_year,
                    occurred_at=add_months(txn.occurred_at, offset),
                )
            except Exception as exc:
                failed += 1
                logger.warning(f"series_move_item_failed: id={txn.id} error={exc}")
            else:
                moved += 1

        self.cards.reconcile(card_id)
        logger.info(
            f"series_moved: series_id={series_id} moved={moved} failed={failed} "
            f"period={year}-{month:02d}"
        )
        return SeriesMove(moved=moved, failed=failed, month=month, year=year)

    def move_to_previous_bill(self, transaction_id: int) -> Transaction:
        return self._move_to_adjacent_bill(transaction_id, -1)

    def move_to_next_bill(self, transaction_id: int) -> Transaction:
        return self._move_to_adjacent_bill(transaction_id, 1)

    def _move_to_adjacent_bill(self, transaction_id: int, step: int) -> Transaction:
        txn = self.get(transaction_id)
        if txn.credit_card_id is None:
            raise ValidationError(
                "Only credit card transactions can move between bills"
            )
        month, year = shift_period(txn.month, txn.year, step)
        self.store.update(
            Transaction,
            self.user_id,
            transaction_id,
            month=month,
            year=year,
            occurred_at=move_to_period(txn.occurred_at, month, year),
        )
        self.cards.reconcile(txn.credit_card_id)
        return self.get(transaction_id)

    def sync_account_name(self, account_id: int, name: str) -> BulkResult:
        outgoing = self.store.query(Transaction, self.user_id, account_id=account_id)
        incoming = self.store.query(
            Transaction, self.user_id, to_account_id=account_id
        )

        def _sync(txn: Transaction) -> None:
            fields: dict[str, Any] = {}
            if txn.account_id == account_id:
                fields["account_name"] = name
            if txn.to_account_id == account_id:
                fields["to_account_name"] = name
            self.store.update(Transaction, self.user_id, txn.id, **fields)

        unique = list({txn.id: txn for txn in [*outgoing, *incoming]}.values())
        return run_in_batches(unique, _sync, label="account_name_sync")

    def sync_card_name(self, card_id: int, name: str) -> BulkResult:
        transactions = self.store.query(
            Transaction, self.user_id, credit_card_id=card_id
        )
        return run_in_batches(
            transactions,
            lambda txn: self.store.update(
                Transaction, self.user_id, txn.id, credit_card_name=name
            ),
            label="card_name_sync",
        )

    def sync_goal_name(self, goal_id: int, name: str) -> BulkResult:
        transactions = self.store.query(Transaction, self.user_id, goal_id=goal_id)
        return run_in_batches(
            transactions,
            lambda txn: self.store.update(
                Transaction, self.user_id, txn.id, goal_name=name
            ),
            label="goal_name_sync",
        )

    def sync_category_name(
        self, category_id: int, name: str, icon: Optional[str] = None
    ) -> BulkResult:
        transactions = self.store.query(
            Transaction, self.user_id, category_id=category_id
        )
        return run_in_batches(
            transactions,
            lambda txn: self.store.update(
                Transaction,
                self.user_id,
                txn.id,
                category_name=name,
                category_icon=icon,
            ),
            label="category_name_sync",
        )


@dataclass(frozen=True)
class MonthTotals:
    income: int
    expense: int
    balance: int


class MetricsService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()

    def month_totals(self, month: int, year: int) -> MonthTotals:
        """
        Realized movement of one period: completed, non-card income minus
        expense. Card purchases count only through their bill payment and
        transfers only move money between accounts.
        """
        transactions = self.store.query(
            Transaction,
            self.user_id,
            month=month,
            year=year,
            status=TransactionStatus.completed,
        )
        income = expense = 0
        for txn in transactions:
            if txn.credit_card_id is not None:
                continue
            if txn.type == TransactionType.income:
                income += txn.amount_cents
            elif txn.type == TransactionType.expense:
                expense += txn.amount_cents
        return MonthTotals(income=income, expense=expense, balance=income - expense)

    def carry_over_balance(self, before_month: int, before_year: int) -> int:
        accounts = self.store.query(
            Account, self.user_id, is_archived=False, include_in_total=True
        )
        carry_over = sum(account.initial_balance_cents for account in accounts)

        transactions = self.store.query(
            Transaction, self.user_id, status=TransactionStatus.completed
        )
        for txn in transactions:
            if txn.credit_card_id is not None:
                continue
            if not period_before(txn.month, txn.year, before_month, before_year):
                continue
            if txn.type == TransactionType.income:
                carry_over += txn.amount_cents
            elif txn.type == TransactionType.expense:
                carry_over -= txn.amount_cents
        return carry_over

    def account_carry_over_balance(
        self, account_id: int, before_month: int, before_year: int
    ) -> int:
        account = AccountService(self.store, self.user_id).get(account_id)
        carry_over = account.initial_balance_cents
        transactions = TransactionService(self.store, self.user_id).list_by_account(
            account_id
        )
        for txn in transactions:
            if not counts_toward_balance(txn):
                continue
            if period_before(txn.month, txn.year, before_month, before_year):
                carry_over += account_effect(txn, account_id)
        return carry_over

    def month_report(self, month: int, year: int) -> dict[str, object]:
        totals = self.month_totals(month, year)
        expenses = self.store.query(
            Transaction,
            self.user_id,
            type=TransactionType.expense,
            month=month,
            year=year,
            status=TransactionStatus.completed,
        )
        debit_expenses = sum(
            t.amount_cents for t in expenses if t.credit_card_id is None
        )
        credit_expenses = sum(
            t.amount_cents for t in expenses if t.credit_card_id is not None
        )
        card_usage = CreditCardService(self.store, self.user_id).total_usage()
        prev_month, prev_year = shift_period(month, year, -1)
        previous = self.month_totals(prev_month, prev_year)
        debt_percentage = (
            round(card_usage / totals.income * 100, 2) if totals.income > 0 else 0.0
        )
        return {
            "income": totals.income,
            "expense": totals.expense,
            "balance": totals.balance,
            "debit_expenses": debit_expenses,
            "credit_expenses": credit_expenses,
            "total_credit_card_usage": card_usage,
            "previous_month": {
                "income": previous.income,
                "expense": previous.expense,
                "balance": previous.balance,
            },
            "debt_percentage": debt_percentage,
        }


@dataclass
class BillDetails:
    bill: Bill
    card: CreditCard
    transactions: list[Transaction]
    total_cents: int


class BillService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()
        self.cards = CreditCardService(store, self.user_id)

    def get(self, bill_id: int) -> Bill:
        bill = self.store.get(Bill, self.user_id, bill_id)
        if not bill:
            raise NotFound("Bill not found")
        return bill

    def get_or_create(
        self, card_id: int, month: int, year: int, due_day: Optional[int] = None
    ) -> Bill:
        existing = self.store.query(
            Bill, self.user_id, credit_card_id=card_id, month=month, year=year
        )
        if existing:
            return existing[0]
        card = self.cards.get(card_id)
        bill = self.store.create(
            Bill,
            self.user_id,
            credit_card_id=card_id,
            credit_card_name=card.name,
            month=month,
            year=year,
            total_amount_cents=0,
            due_date=due_date_for(due_day or card.due_day, month, year),
            is_paid=False,
        )
        logger.info(f"bill_created: id={bill.id} card_id={card_id} period={year}-{month:02d}")
        return bill

    def is_paid(self, card_id: int, month: int, year: int) -> bool:
        return BillingCycleResolver(self.store, self.user_id).is_paid(
            card_id, month, year
        )

    def period_transactions(
        self, card_id: int, month: int, year: int
    ) -> list[Transaction]:
        transactions = self.store.query(
            Transaction, self.user_id, credit_card_id=card_id, month=month, year=year
        )
        return sorted(transactions, key=lambda t: (t.occurred_at, t.id), reverse=True)

    def period_total(self, card_id: int, month: int, year: int) -> int:
        return calculate_bill_total(self.period_transactions(card_id, month, year))

    def details(self, card_id: int, month: int, year: int) -> BillDetails:
        card = self.cards.get(card_id)
        transactions = self.period_transactions(card_id, month, year)
        bill = self.get_or_create(card_id, month, year, card.due_day)
        return BillDetails(
            bill=bill,
            card=card,
            transactions=transactions,
            total_cents=calculate_bill_total(transactions),
        )

    def bills_for_month(self, month: int, year: int) -> list[BillDetails]:
        bills = self.store.query(Bill, self.user_id, month=month, year=year)
        result: list[BillDetails] = []
        for bill in bills:
            card = self.store.get(CreditCard, self.user_id, bill.credit_card_id)
            if card is None:
                continue
            transactions = self.period_transactions(bill.credit_card_id, month, year)
            result.append(
                BillDetails(
                    bill=bill,
                    card=card,
                    transactions=transactions,
                    total_cents=calculate_bill_total(transactions),
                )
            )
        return result

    def generate_for_month(self, month: int, year: int) -> list[BillDetails]:
        result: list[BillDetails] = []
        for card in self.cards.list_all():
            transactions = self.period_transactions(card.id, month, year)
            if not transactions:
                continue
            bill = self.get_or_create(card.id, month, year, card.due_day)
            result.append(
                BillDetails(
                    bill=bill,
                    card=card,
                    transactions=transactions,
                    total_cents=calculate_bill_total(transactions),
                )
            )
        return result

    def pay(
        self, bill_id: int, account_id: int, amount_cents: Optional[int] = None
    ) -> Transaction:
        bill = self.get(bill_id)
        if bill.is_paid:
            raise ValidationError("Bill is already paid")
        card = self.cards.get(bill.credit_card_id)
        AccountService(self.store, self.user_id).get(account_id)

        amount = (
            amount_cents
            if amount_cents is not None
            else self.period_total(card.id, bill.month, bill.year)
        )
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")

        now = local_now()
        payment = TransactionService(self.store, self.user_id).create(
            TransactionIn(
                type=TransactionType.expense,
                amount_cents=amount,
                description=f"Bill payment {card.name} - {month_label(bill.month, bill.year)}",
                occurred_at=now,
                status=TransactionStatus.completed,
                account_id=account_id,
            ),
            credit_card_bill_id=bill.id,
        )
        self.store.update(
            Bill,
            self.user_id,
            bill.id,
            is_paid=True,
            paid_at=now,
            paid_from_account_id=account_id,
            payment_transaction_id=payment.id,
            total_amount_cents=amount,
        )
        self.cards.set_usage(card.id, 0)
        logger.info(
            f"bill_paid: id={bill.id} account_id={account_id} amount_cents={amount}"
        )
        return payment

    def unpay(self, bill_id: int) -> int:
        """
        Undo a payment and return the restored card usage.

        The payment transaction is deleted before the paid flag is cleared,
        so a failure leaves the bill paid with its payment intact.
        """
        bill = self.get(bill_id)
        if not bill.is_paid:
            raise ValidationError("Bill is not paid")

        if bill.payment_transaction_id is not None:
            payment = self.store.get(
                Transaction, self.user_id, bill.payment_transaction_id
            )
            if payment is not None:
                TransactionService(self.store, self.user_id).delete(
                    payment, allow_bill_payment=True
                )

        self.store.update(
            Bill,
            self.user_id,
            bill.id,
            is_paid=False,
            paid_at=None,
            paid_from_account_id=None,
            payment_transaction_id=None,
        )
        used = self.period_total(bill.credit_card_id, bill.month, bill.year)
        self.cards.set_usage(bill.credit_card_id, used)
        logger.info(f"bill_unpaid: id={bill.id} restored_used_cents={used}")
        return used

    def sync_card_name(self, card_id: int, name: str) -> BulkResult:
        bills = self.store.query(Bill, self.user_id, credit_card_id=card_id)
        return run_in_batches(
            bills,
            lambda bill: self.store.update(
                Bill, self.user_id, bill.id, credit_card_name=name
            ),
            label="bill_name_sync",
        )


@dataclass
class ReconciliationReport:
    accounts: dict[int, int] = field(default_factory=dict)
    cards: dict[int, int] = field(default_factory=dict)
    failed: int = 0


class ReconciliationService:
    def __init__(self, store: LedgerStore, user_id: Optional[int] = None) -> None:
        self.store = store
        self.user_id = user_id or get_current_user_id()

    def reconcile_all(self) -> ReconciliationReport:
        report = ReconciliationReport()
        accounts = AccountService(self.store, self.user_id)
        cards = CreditCardService(self.store, self.user_id)

        for account in accounts.list_all(include_archived=True):
            try:
                report.accounts[account.id] = accounts.reconcile(account.id)
            except Exception as exc:
                report.failed += 1
                logger.warning(f"reconcile_failed: account_id={account.id} error={exc}")
        for card in cards.list_all(include_archived=True):
            try:
                report.cards[card.id] = cards.reconcile(card.id)
            except Exception as exc:
                report.failed += 1
                logger.warning(f"reconcile_failed: card_id={card.id} error={exc}")

        logger.info(
            f"reconcile_all: user_id={self.user_id} accounts={len(report.accounts)} "
            f"cards={len(report.cards)} failed={report.failed}"
        )
        return report
