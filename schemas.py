from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, CategoryType, TransactionStatus, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.checking
    initial_balance_cents: int = 0
    balance_cents: Optional[int] = None
    include_in_total: bool = True
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    include_in_total: Optional[bool] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class CreditCardIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    brand: Optional[str] = Field(default=None, max_length=40)
    last_digits: Optional[str] = Field(default=None, min_length=4, max_length=4)
    limit_cents: int = Field(..., ge=0)
    closing_day: int = Field(..., ge=1, le=31)
    due_day: int = Field(..., ge=1, le=31)
    payment_account_id: Optional[int] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class CreditCardUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    brand: Optional[str] = Field(default=None, max_length=40)
    last_digits: Optional[str] = Field(default=None, min_length=4, max_length=4)
    limit_cents: Optional[int] = Field(default=None, ge=0)
    closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    due_day: Optional[int] = Field(default=None, ge=1, le=31)
    payment_account_id: Optional[int] = None
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    icon: Optional[str] = Field(default=None, max_length=40)
    color: Optional[str] = Field(default=None, max_length=9)


class GoalIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    target_amount_cents: int = Field(..., gt=0)
    current_amount_cents: int = Field(default=0, ge=0)


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    occurred_at: datetime
    status: TransactionStatus = TransactionStatus.completed
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    goal_id: Optional[int] = None
    series_id: Optional[str] = Field(default=None, max_length=64)
    parent_transaction_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class TransactionPatch(BaseModel):
    """Partial update; only explicitly set fields are written."""

    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    occurred_at: Optional[datetime] = None
    status: Optional[TransactionStatus] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    credit_card_id: Optional[int] = None
    goal_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class InstallmentSeriesIn(BaseModel):
    transaction: TransactionIn
    installments: int = Field(..., ge=1, le=120)


class BillPaymentIn(BaseModel):
    account_id: int
    amount_cents: Optional[int] = Field(default=None, gt=0)


class InitialBalanceIn(BaseModel):
    initial_balance_cents: int


class BalanceAdjustmentIn(BaseModel):
    balance_cents: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    initial_balance_cents: int
    initial_balance_set: bool
    include_in_total: bool
    is_archived: bool
    is_default: bool


class CreditCardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    brand: Optional[str]
    last_digits: Optional[str]
    limit_cents: int
    current_used_cents: int
    closing_day: int
    due_day: int
    payment_account_id: Optional[int]
    is_archived: bool


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount_cents: int
    description: str
    occurred_at: datetime
    status: TransactionStatus
    month: int
    year: int
    category_id: Optional[int]
    category_name: Optional[str]
    account_id: Optional[int]
    account_name: Optional[str]
    to_account_id: Optional[int]
    to_account_name: Optional[str]
    credit_card_id: Optional[int]
    credit_card_name: Optional[str]
    credit_card_bill_id: Optional[int]
    goal_id: Optional[int]
    series_id: Optional[str]
    parent_transaction_id: Optional[int]
    is_adjustment: bool


class BillOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    credit_card_id: int
    credit_card_name: str
    month: int
    year: int
    total_amount_cents: int
    due_date: date
    is_paid: bool
    paid_at: Optional[datetime]
    paid_from_account_id: Optional[int]
    payment_transaction_id: Optional[int]


class BillDetailsOut(BaseModel):
    bill: BillOut
    total_cents: int
    transactions: list[TransactionOut]


class BulkResultOut(BaseModel):
    total: int
    succeeded: int
    failed: int
