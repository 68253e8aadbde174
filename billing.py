import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError
from models import Bill
from store import LedgerStore


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None, microsecond=0)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def shift_period(month: int, year: int, months: int) -> tuple[int, int]:
    total_months = year * 12 + (month - 1) + months
    return total_months % 12 + 1, total_months // 12


def period_before(month: int, year: int, ref_month: int, ref_year: int) -> bool:
    return (year, month) < (ref_year, ref_month)


def move_to_period(moment: datetime, month: int, year: int) -> datetime:
    """Place ``moment`` in the given month, snapping the day to the month end."""
    day = min(moment.day, days_in_month(year, month))
    return moment.replace(year=year, month=month, day=day)


def add_months(moment: datetime, months: int) -> datetime:
    month, year = shift_period(moment.month, moment.year, months)
    return move_to_period(moment, month, year)


def due_date_for(due_day: int, month: int, year: int) -> date:
    return date(year, month, min(due_day, days_in_month(year, month)))


def month_label(month: int, year: int) -> str:
    return f"{calendar.month_name[month]}/{year}"


def _validate_day(closing_day: int) -> None:
    if not 1 <= closing_day <= 31:
        raise ValidationError("Closing day must be between 1 and 31")


def resolve_billing_period(
    purchase: Union[date, datetime], closing_day: int
) -> tuple[int, int]:
    _validate_day(closing_day)
    if purchase.day > closing_day:
        return shift_period(purchase.month, purchase.year, 1)
    return purchase.month, purchase.year


def is_bill_closed(
    month: int, year: int, closing_day: int, *, today: Optional[date] = None
) -> bool:
    today = today or local_today()
    if period_before(month, year, today.month, today.year):
        return True
    return (year, month) == (today.year, today.month) and today.day > closing_day


@dataclass(frozen=True)
class BillValidation:
    can_add: bool
    bill_month: int
    bill_year: int
    is_paid: bool
    is_closed: bool
    redirected: bool = False
    suggested_month: Optional[int] = None
    suggested_year: Optional[int] = None
    message: Optional[str] = None


class BillingCycleResolver:
    def __init__(
        self,
        store: LedgerStore,
        user_id: int,
        max_redirects: Optional[int] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.max_redirects = max_redirects or get_settings().max_bill_redirects

    def is_paid(self, card_id: int, month: int, year: int) -> bool:
        bills = self.store.query(
            Bill,
            self.user_id,
            credit_card_id=card_id,
            month=month,
            year=year,
            is_paid=True,
        )
        return len(bills) > 0

    def validate_for_transaction(
        self,
        card_id: int,
        purchase: Union[date, datetime],
        closing_day: int,
        *,
        today: Optional[date] = None,
    ) -> BillValidation:
        bill_month, bill_year = resolve_billing_period(purchase, closing_day)
        paid = self.is_paid(card_id, bill_month, bill_year)
        closed = is_bill_closed(bill_month, bill_year, closing_day, today=today)

        if not paid and not closed:
            return BillValidation(
                can_add=True,
                bill_month=bill_month,
                bill_year=bill_year,
                is_paid=False,
                is_closed=False,
            )

        suggested_month, suggested_year = shift_period(bill_month, bill_year, 1)
        if paid:
            hops = 1
            while hops < self.max_redirects and self.is_paid(
                card_id, suggested_month, suggested_year
            ):
                suggested_month, suggested_year = shift_period(
                    suggested_month, suggested_year, 1
                )
                hops += 1
            message = (
                f"The {month_label(bill_month, bill_year)} bill is already paid. "
                f"The entry goes to the "
                f"{month_label(suggested_month, suggested_year)} bill."
            )
            return BillValidation(
                can_add=False,
                bill_month=suggested_month,
                bill_year=suggested_year,
                is_paid=True,
                is_closed=closed,
                redirected=True,
                suggested_month=suggested_month,
                suggested_year=suggested_year,
                message=message,
            )

        message = (
            f"The {month_label(bill_month, bill_year)} bill is already closed. "
            f"The entry still lands on it; the next open bill is "
            f"{month_label(suggested_month, suggested_year)}."
        )
        return BillValidation(
            can_add=True,
            bill_month=bill_month,
            bill_year=bill_year,
            is_paid=False,
            is_closed=True,
            suggested_month=suggested_month,
            suggested_year=suggested_year,
            message=message,
        )
