from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"


class CategoryType(str, Enum):
    expense = "expense"
    income = "income"


class AccountType(str, Enum):
    checking = "checking"
    wallet = "wallet"
    investment = "investment"
    other = "other"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    initial_balance_set: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    include_in_total: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    color: Mapped[Optional[str]] = mapped_column(String(9))

    __table_args__ = (Index("ix_accounts_user_archived", "user_id", "is_archived"),)


class CreditCard(Base, TimestampMixin):
    __tablename__ = "credit_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(40))
    last_digits: Mapped[Optional[str]] = mapped_column(String(4))
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_used_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    closing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_account_id: Mapped[Optional[int]] = mapped_column(Integer)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    color: Mapped[Optional[str]] = mapped_column(String(9))

    __table_args__ = (
        CheckConstraint(
            "closing_day BETWEEN 1 AND 31", name="ck_credit_card_closing_day"
        ),
        CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_credit_card_due_day"),
        Index("ix_credit_cards_user_archived", "user_id", "is_archived"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    color: Mapped[Optional[str]] = mapped_column(String(9))


class Goal(Base, TimestampMixin):
    __tablename__ = "goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    category_id: Mapped[Optional[int]] = mapped_column(Integer)
    category_name: Mapped[Optional[str]] = mapped_column(String(100))
    category_icon: Mapped[Optional[str]] = mapped_column(String(40))
    account_id: Mapped[Optional[int]] = mapped_column(Integer)
    account_name: Mapped[Optional[str]] = mapped_column(String(100))
    to_account_id: Mapped[Optional[int]] = mapped_column(Integer)
    to_account_name: Mapped[Optional[str]] = mapped_column(String(100))
    credit_card_id: Mapped[Optional[int]] = mapped_column(Integer)
    credit_card_name: Mapped[Optional[str]] = mapped_column(String(100))
    credit_card_bill_id: Mapped[Optional[int]] = mapped_column(Integer)
    goal_id: Mapped[Optional[int]] = mapped_column(Integer)
    goal_name: Mapped[Optional[str]] = mapped_column(String(100))
    series_id: Mapped[Optional[str]] = mapped_column(String(64))
    parent_transaction_id: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_adjustment: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    __table_args__ = (
        Index("ix_transactions_user_period", "user_id", "year", "month"),
        Index("ix_transactions_user_account", "user_id", "account_id"),
        Index("ix_transactions_user_to_account", "user_id", "to_account_id"),
        Index(
            "ix_transactions_user_card_period",
            "user_id",
            "credit_card_id",
            "year",
            "month",
        ),
        Index("ix_transactions_user_series", "user_id", "series_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class Bill(Base, TimestampMixin):
    __tablename__ = "credit_card_bills"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_card_id: Mapped[int] = mapped_column(Integer, nullable=False)
    credit_card_name: Mapped[str] = mapped_column(String(100), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    paid_from_account_id: Mapped[Optional[int]] = mapped_column(Integer)
    payment_transaction_id: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index(
            "ix_bills_user_card_period", "user_id", "credit_card_id", "year", "month"
        ),
    )
