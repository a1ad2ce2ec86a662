"""
pricing.py – Pricing and accounting rules.

Every function in this module is pure: it depends only on its arguments and
never touches the data store, the configuration or the clock (callers pass
"now" explicitly when a rule needs it).

Rounding policy
---------------
All amounts are rounded to 2 decimal places at *every* intermediate step,
not only on the final result.  round2() rounds half away from zero on the
exact binary value of ``value * 100``, so that totals match the amounts the
user sees on screen to the cent.

Transaction policy
------------------
A transaction is computed gross first, discounted on the tax-included total,
then the tax-exclusive amount after discount is backed out by dividing by
``1 + rate``:

    gross HT  -> tax -> gross TTC -> discount -> net TTC -> net HT -> net tax

That order is part of the accounting contract and must not be rearranged.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Union

Rate = Union[float, "TaxRate"]


class TaxRate(str, Enum):
    """VAT rates offered for articles and transactions."""
    ZERO = "0%"
    REDUCED = "5.5%"
    INTERMEDIATE = "10%"
    STANDARD = "20%"

    @property
    def rate(self) -> float:
        return _TAX_RATE_VALUES[self]


_TAX_RATE_VALUES = {
    TaxRate.ZERO: 0.0,
    TaxRate.REDUCED: 0.055,
    TaxRate.INTERMEDIATE: 0.10,
    TaxRate.STANDARD: 0.20,
}


class DiscountKind(str, Enum):
    NONE = "none"
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class TariffKind(str, Enum):
    """Billing unit of a rental."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    FLAT = "flat"


class PaymentDue(str, Enum):
    OVERDUE = "overdue"
    DUE_TODAY = "due_today"
    FUTURE = "future"


# ---------------------------------------------------------------------------
# Rounding
# ---------------------------------------------------------------------------

def round2(value: float) -> float:
    """Round *value* to the cent, half away from zero."""
    scaled = Decimal(value * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(scaled) / 100


def _rate(rate: Rate) -> float:
    if isinstance(rate, TaxRate):
        return rate.rate
    return float(rate)


# ---------------------------------------------------------------------------
# Transaction amounts
# ---------------------------------------------------------------------------

def gross_excl_tax(unit_price: float, quantity_or_weight: float) -> float:
    return round2(unit_price * quantity_or_weight)


def tax_amount(gross_ht: float, rate: Rate) -> float:
    return round2(gross_ht * _rate(rate))


def gross_incl_tax(gross_ht: float, tax: float) -> float:
    return round2(gross_ht + tax)


def discount_amount(gross_ttc: float, kind: DiscountKind, value: float) -> float:
    """
    Return the discount taken off the tax-included total.

    A percentage discount is rounded to the cent; a fixed discount is
    clamped so it never exceeds *gross_ttc*.
    """
    kind = DiscountKind(kind)
    if kind is DiscountKind.NONE:
        return 0.0
    if kind is DiscountKind.PERCENTAGE:
        return round2(gross_ttc * (value / 100))
    return min(value, gross_ttc)


def net_incl_tax(gross_ttc: float, discount: float) -> float:
    return round2(gross_ttc - discount)


def net_excl_tax_after_discount(net_ttc: float, rate: Rate) -> float:
    return round2(net_ttc / (1 + _rate(rate)))


def tax_after_discount(net_ttc: float, net_ht: float) -> float:
    return round2(net_ttc - net_ht)


@dataclass(frozen=True)
class TransactionAmounts:
    """Every intermediate amount of a single purchase or sale."""
    gross_excl_tax: float
    tax: float
    gross_incl_tax: float
    discount: float
    net_incl_tax: float
    net_excl_tax: float
    net_tax: float


def compute_transaction(
    unit_price: float,
    quantity_or_weight: float,
    rate: Rate,
    discount_kind: DiscountKind = DiscountKind.NONE,
    discount_value: float = 0.0,
) -> TransactionAmounts:
    """Run the whole transaction pipeline, each step rounded to the cent."""
    gross_ht = gross_excl_tax(unit_price, quantity_or_weight)
    tax = tax_amount(gross_ht, rate)
    gross_ttc = gross_incl_tax(gross_ht, tax)
    discount = discount_amount(gross_ttc, discount_kind, discount_value)
    net_ttc = net_incl_tax(gross_ttc, discount)
    net_ht = net_excl_tax_after_discount(net_ttc, rate)
    return TransactionAmounts(
        gross_excl_tax=gross_ht,
        tax=tax,
        gross_incl_tax=gross_ttc,
        discount=discount,
        net_incl_tax=net_ttc,
        net_excl_tax=net_ht,
        net_tax=tax_after_discount(net_ttc, net_ht),
    )


# ---------------------------------------------------------------------------
# Article prices and margins
# ---------------------------------------------------------------------------

def price_incl_tax(price_ht: float, rate: Rate) -> float:
    """Unit price including VAT, as shown on an article card."""
    return round2(price_ht * (1 + _rate(rate)))


def margin(sale_excl_tax: float, purchase_excl_tax: float) -> float:
    return sale_excl_tax - purchase_excl_tax


def margin_percent(sale_excl_tax: float, purchase_excl_tax: float) -> Optional[float]:
    """Margin as a percentage of the purchase price; None when it is undefined."""
    if purchase_excl_tax == 0:
        return None
    return margin(sale_excl_tax, purchase_excl_tax) / purchase_excl_tax * 100


def article_margin(sale_ht: float, purchase_ht: float) -> float:
    return round2(sale_ht - purchase_ht)


def article_margin_percent(sale_ht: float, purchase_ht: float) -> float:
    # Article cards show 0 rather than a blank when there is no purchase price.
    if purchase_ht <= 0:
        return 0.0
    return article_margin(sale_ht, purchase_ht) / purchase_ht * 100


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

def deposit_returned(deposit: float, retained: float) -> float:
    """
    Return the part of *deposit* given back when *retained* is kept.

    Raises ValueError when *retained* is negative or larger than the
    deposit; input validation is expected to catch that earlier.
    """
    if retained < 0 or retained > deposit:
        raise ValueError(
            f"Retained amount {retained:.2f} must be between 0 and the deposit {deposit:.2f}"
        )
    return round2(deposit - retained)


def deposit_outstanding(deposit: float, recovered: float, lost: float) -> float:
    """Deposit still to be settled by the owner (recovered or lost)."""
    return max(0.0, deposit - recovered - lost)


# ---------------------------------------------------------------------------
# Dates: durations, lateness, due payments
# ---------------------------------------------------------------------------

def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def whole_days(start: Union[date, datetime], end: Union[date, datetime]) -> int:
    """Number of complete 24-hour periods from *start* to *end* (truncated toward zero)."""
    delta = _as_datetime(end) - _as_datetime(start)
    return int(delta.total_seconds() / 86400)


def duration_days(start: Union[date, datetime], end: Union[date, datetime]) -> int:
    """Billable duration in days, both ends included, never less than one day."""
    return max(1, whole_days(start, end) + 1)


def billing_units(kind: TariffKind, days: int) -> int:
    kind = TariffKind(kind)
    if kind is TariffKind.DAY:
        return days
    if kind is TariffKind.WEEK:
        return max(1, math.ceil(days / 7.0))
    if kind is TariffKind.MONTH:
        return max(1, math.ceil(days / 30.0))
    return 1


def rental_price(kind: TariffKind, unit_price: float, days: int, flat_total: float) -> float:
    """Price of a rental of *days* days; flat-rate rentals keep their agreed total."""
    if TariffKind(kind) is TariffKind.FLAT:
        return flat_total
    return unit_price * billing_units(kind, days)


def days_late(due: Union[date, datetime], now: datetime) -> int:
    if now <= _as_datetime(due):
        return 0
    return whole_days(due, now)


def is_due_soon(due: Union[date, datetime], now: datetime, window_days: int = 3) -> bool:
    due = _as_datetime(due)
    return now <= due <= now + timedelta(days=window_days)


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def classify_payment(
    paid: bool, due: Optional[Union[date, datetime]], now: datetime
) -> Optional[PaymentDue]:
    """
    Classify an unpaid transaction by its due date.

    Returns None for paid transactions and for transactions without a due
    date.  Otherwise:
      - OVERDUE   when the due date is at or before the start of today,
      - DUE_TODAY when it falls later on the same calendar day,
      - FUTURE    otherwise.
    """
    if paid or due is None:
        return None
    due = _as_datetime(due)
    if due <= start_of_day(now):
        return PaymentDue.OVERDUE
    if due.date() == now.date():
        return PaymentDue.DUE_TODAY
    return PaymentDue.FUTURE
