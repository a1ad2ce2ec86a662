"""
models.py – Entity data structures.

Plain dataclasses for every record the application keeps, plus the
enumerations they use.  Derived values (tax-included prices, totals,
lateness, durations) are computed on the fly through pricing.py so the
stored records only ever hold what the user typed.

Time-dependent properties are methods taking an optional *now* so they can
be evaluated against a fixed clock.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

import pricing
from pricing import DiscountKind, PaymentDue, TariffKind, TaxRate, TransactionAmounts

__all__ = [
    "AccountingOperation", "Article", "Borrowing", "CommerceTransaction", "DiscountKind",
    "Loan", "Material", "MyRental", "OperationKind", "PaymentDue",
    "PaymentMethod", "Person", "PersonKind", "Rental", "Repair",
    "StorageLocation", "TariffKind", "TaxRate", "TransactionKind", "VaultItem",
]


def _new_id() -> str:
    return str(uuid4())


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now()


class TransactionKind(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    CHEQUE = "cheque"
    TRANSFER = "transfer"
    OTHER = "other"


class PersonKind(str, Enum):
    CLIENT = "client"
    MECHANIC = "mechanic"
    EMPLOYEE = "employee"
    RENTAL_AGENCY = "rental_agency"


class OperationKind(str, Enum):
    """Kinds of entries in the permanent accounting ledger."""
    RENTAL_INCOME = "rental_income"
    DEPOSIT_RETAINED = "deposit_retained"
    REPAIR_EXPENSE = "repair_expense"
    MY_RENTAL_EXPENSE = "my_rental_expense"
    DEPOSIT_LOST = "deposit_lost"

    @property
    def is_income(self) -> bool:
        return self in (OperationKind.RENTAL_INCOME, OperationKind.DEPOSIT_RETAINED)


# ---------------------------------------------------------------------------
# Commerce
# ---------------------------------------------------------------------------

@dataclass
class Article:
    """A product bought and sold, priced per unit or per kg (sold by weight)."""

    name: str
    category: str = "Autre"
    description: str = ""
    reference: str = ""
    purchase_price_ht: float = 0.0
    purchase_tax_rate: TaxRate = TaxRate.STANDARD
    sale_price_ht: float = 0.0
    sale_tax_rate: TaxRate = TaxRate.STANDARD
    stock_quantity: int = 0
    stock_alert: int = 0
    supplier: str = ""
    sold_by_weight: bool = False
    stock_kg: float = 0.0
    stock_alert_kg: float = 0.0
    notes: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=_new_id)

    @property
    def purchase_price_ttc(self) -> float:
        return pricing.price_incl_tax(self.purchase_price_ht, self.purchase_tax_rate)

    @property
    def sale_price_ttc(self) -> float:
        return pricing.price_incl_tax(self.sale_price_ht, self.sale_tax_rate)

    @property
    def margin_ht(self) -> float:
        return pricing.article_margin(self.sale_price_ht, self.purchase_price_ht)

    @property
    def margin_percent(self) -> float:
        return pricing.article_margin_percent(self.sale_price_ht, self.purchase_price_ht)

    @property
    def low_stock(self) -> bool:
        """True when the stock (units, or kg when sold by weight) is at or below its alert level."""
        if self.sold_by_weight:
            return self.stock_kg <= self.stock_alert_kg
        return self.stock_quantity <= self.stock_alert


@dataclass
class CommerceTransaction:
    """A purchase or a sale of an article; either a unit quantity or a weight in kg."""

    kind: TransactionKind
    article_name: str
    unit_price_ht: float
    tax_rate: TaxRate = TaxRate.STANDARD
    quantity: int = 0
    weight: float = 0.0
    sold_by_weight: bool = False
    discount_kind: DiscountKind = DiscountKind.NONE
    discount_value: float = 0.0
    payment_method: PaymentMethod = PaymentMethod.CASH
    counterparty: str = ""
    date: datetime = field(default_factory=datetime.now)
    notes: str = ""
    paid: bool = True
    due_date: Optional[datetime] = None
    article_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def quantity_or_weight(self) -> float:
        return self.weight if self.sold_by_weight else float(self.quantity)

    @property
    def amounts(self) -> TransactionAmounts:
        return pricing.compute_transaction(
            self.unit_price_ht,
            self.quantity_or_weight,
            self.tax_rate,
            self.discount_kind,
            self.discount_value,
        )

    @property
    def total_incl_tax(self) -> float:
        """Tax-included amount actually paid, after discount."""
        return self.amounts.net_incl_tax

    @property
    def total_excl_tax(self) -> float:
        return self.amounts.net_excl_tax

    @property
    def total_tax(self) -> float:
        return self.amounts.net_tax

    @property
    def month(self) -> int:
        return self.date.month

    @property
    def year(self) -> int:
        return self.date.year

    def payment_status(self, now: Optional[datetime] = None) -> Optional[PaymentDue]:
        return pricing.classify_payment(self.paid, self.due_date, _now(now))

    def payment_late(self, now: Optional[datetime] = None) -> bool:
        if self.paid or self.due_date is None:
            return False
        return _now(now) > self.due_date

    def payment_due_soon(self, now: Optional[datetime] = None, window_days: int = 3) -> bool:
        if self.paid or self.due_date is None:
            return False
        return pricing.is_due_soon(self.due_date, _now(now), window_days)


# ---------------------------------------------------------------------------
# Equipment, people and places
# ---------------------------------------------------------------------------

@dataclass
class StorageLocation:
    name: str
    address: str = ""
    building: str = ""
    floor: str = ""
    room: str = ""
    notes: str = ""
    id: str = field(default_factory=_new_id)

    @property
    def full_address(self) -> str:
        parts = []
        if self.building:
            parts.append(self.building)
        if self.floor:
            parts.append(f"Étage {self.floor}")
        if self.room:
            parts.append(f"Salle {self.room}")
        return ", ".join(parts)


@dataclass
class Material:
    name: str
    category: str = "Autre"
    description: str = ""
    location_id: Optional[str] = None
    acquired_on: datetime = field(default_factory=datetime.now)
    value: float = 0.0
    invoice_number: Optional[str] = None
    seller: Optional[str] = None
    notes: Optional[str] = None
    id: str = field(default_factory=_new_id)


@dataclass
class Person:
    last_name: str
    first_name: str = ""
    email: str = ""
    phone: str = ""
    organisation: str = ""
    kind: Optional[PersonKind] = None
    id: str = field(default_factory=_new_id)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ---------------------------------------------------------------------------
# Loans, rentals and repairs
# ---------------------------------------------------------------------------

@dataclass
class Loan:
    """A material lent free of charge to a person."""

    material_id: str
    person_id: str
    start: datetime
    end: datetime
    returned_on: Optional[datetime] = None
    notes: str = ""
    id: str = field(default_factory=_new_id)

    @property
    def is_returned(self) -> bool:
        return self.returned_on is not None

    @property
    def is_active(self) -> bool:
        return self.returned_on is None

    def is_late(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and _now(now) > self.end

    def days_late(self, now: Optional[datetime] = None) -> int:
        if not self.is_late(now):
            return 0
        return pricing.days_late(self.end, _now(now))


@dataclass
class Borrowing:
    """
    Something a person lends me.

    The object is not mine, so it only gets a Material record while it
    is passed on: lent to someone else, rented out, or sent to repair.
    That record (material_id) is removed again when I give it back.
    """

    object_name: str
    lender_id: str
    start: datetime
    end: datetime
    returned_on: Optional[datetime] = None
    notes: str = ""
    material_id: Optional[str] = None
    loan_id: Optional[str] = None
    rental_id: Optional[str] = None
    repair_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def is_returned(self) -> bool:
        return self.returned_on is not None

    @property
    def is_active(self) -> bool:
        return self.returned_on is None

    def is_late(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and _now(now) > self.end

    def days_late(self, now: Optional[datetime] = None) -> int:
        if not self.is_late(now):
            return 0
        return pricing.days_late(self.end, _now(now))


@dataclass
class Rental:
    """
    A material rented out to someone, with an optional deposit (caution).

    The deposit ends up either returned in full (deposit_returned) or
    retained, fully or partially (deposit_retained + retained_amount).
    """

    material_id: str
    renter_id: str
    start: datetime
    end: datetime
    total_price: float
    deposit: float = 0.0
    tariff: TariffKind = TariffKind.FLAT
    unit_price: float = 0.0
    returned_on: Optional[datetime] = None
    deposit_returned: bool = False
    deposit_retained: bool = False
    retained_amount: float = 0.0
    payment_received: bool = False
    notes: str = ""
    # Active sub-rental of the same material, if any.
    sublet_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def is_active(self) -> bool:
        return self.returned_on is None

    @property
    def is_finished(self) -> bool:
        return self.returned_on is not None

    def is_late(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and _now(now) > self.end

    @property
    def planned_days(self) -> int:
        return pricing.whole_days(self.start, self.end) + 1

    @property
    def effective_days(self) -> int:
        """Days between start and actual return (or planned end while still out)."""
        return pricing.duration_days(self.start, self.returned_on or self.end)

    @property
    def effective_price(self) -> float:
        return pricing.rental_price(self.tariff, self.unit_price, self.effective_days, self.total_price)

    def actual_days(self, now: Optional[datetime] = None) -> int:
        """Days up to the actual return, or up to today for a rental still out."""
        if self.returned_on is not None:
            finish = self.returned_on
        else:
            finish = max(self.start, _now(now))
        return pricing.duration_days(self.start, finish)

    def actual_price(self, now: Optional[datetime] = None) -> float:
        """Amount due for the time actually elapsed; this is what gets invoiced."""
        return pricing.rental_price(self.tariff, self.unit_price, self.actual_days(now), self.total_price)

    @property
    def deposit_refund(self) -> float:
        if not self.deposit_retained:
            return self.deposit if self.deposit_returned else 0.0
        return pricing.deposit_returned(self.deposit, self.retained_amount)


@dataclass
class MyRental:
    """Something I rent from an owner; the deposit I paid is settled piecewise."""

    object_name: str
    owner_id: str
    start: datetime
    end: datetime
    total_price: float
    deposit: float = 0.0
    tariff: TariffKind = TariffKind.FLAT
    unit_price: float = 0.0
    returned_on: Optional[datetime] = None
    deposit_recovered: float = 0.0
    deposit_lost: float = 0.0
    payment_made: bool = False
    notes: str = ""
    id: str = field(default_factory=_new_id)

    @property
    def is_active(self) -> bool:
        return self.returned_on is None

    @property
    def is_finished(self) -> bool:
        return self.returned_on is not None

    def is_late(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and _now(now) > self.end

    @property
    def effective_days(self) -> int:
        return pricing.duration_days(self.start, self.returned_on or self.end)

    @property
    def effective_price(self) -> float:
        return pricing.rental_price(self.tariff, self.unit_price, self.effective_days, self.total_price)

    def actual_days(self, now: Optional[datetime] = None) -> int:
        finish = self.returned_on if self.returned_on is not None else max(self.start, _now(now))
        return pricing.duration_days(self.start, finish)

    def actual_price(self, now: Optional[datetime] = None) -> float:
        return pricing.rental_price(self.tariff, self.unit_price, self.actual_days(now), self.total_price)

    @property
    def deposit_outstanding(self) -> float:
        return pricing.deposit_outstanding(self.deposit, self.deposit_recovered, self.deposit_lost)

    @property
    def deposit_settled(self) -> bool:
        return self.deposit_recovered + self.deposit_lost >= self.deposit

    @property
    def deposit_fully_recovered(self) -> bool:
        return self.deposit_recovered >= self.deposit and self.deposit_lost == 0

    @property
    def deposit_partially_recovered(self) -> bool:
        if self.deposit <= 0:
            return False
        return 0 < self.deposit_recovered < self.deposit


@dataclass
class Repair:
    material_id: str
    repairer_id: str
    description: str
    start: datetime = field(default_factory=datetime.now)
    planned_end: Optional[datetime] = None
    returned_on: Optional[datetime] = None
    free_of_charge: bool = False
    estimated_cost: Optional[float] = None
    final_cost: Optional[float] = None
    paid: bool = False
    notes: str = ""
    # Set when the repair follows the return of a loan or a rental.
    origin_loan_id: Optional[str] = None
    origin_rental_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def in_progress(self) -> bool:
        return self.returned_on is None

    @property
    def cost(self) -> float:
        """Final cost when known, otherwise the estimate, otherwise 0."""
        if self.final_cost is not None:
            return self.final_cost
        if self.estimated_cost is not None:
            return self.estimated_cost
        return 0.0

    def days_in_repair(self, now: Optional[datetime] = None) -> int:
        return pricing.duration_days(self.start, self.returned_on or _now(now))

    def is_late(self, now: Optional[datetime] = None) -> bool:
        if self.planned_end is None or self.returned_on is not None:
            return False
        return _now(now) > self.planned_end


# ---------------------------------------------------------------------------
# Vault and ledger
# ---------------------------------------------------------------------------

@dataclass
class VaultItem:
    """
    A valuable kept in the vault as proof of ownership.

    Photo and invoice bytes are never held here: they live encrypted in the
    vault directory and these flags only record that they exist.
    """

    name: str
    category: str = "Autre"
    description: str = ""
    estimated_value: float = 0.0
    acquired_on: datetime = field(default_factory=datetime.now)
    created_at: datetime = field(default_factory=datetime.now)
    serial_number: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    notes: Optional[str] = None
    has_photo: bool = False
    has_invoice: bool = False
    invoice_is_pdf: bool = False
    id: str = field(default_factory=_new_id)


@dataclass
class AccountingOperation:
    """A permanent ledger entry; kept even when the originating record is deleted."""

    kind: OperationKind
    amount: float
    description: str
    date: datetime = field(default_factory=datetime.now)
    material_name: Optional[str] = None
    person_name: Optional[str] = None
    reference_id: Optional[str] = None
    id: str = field(default_factory=_new_id)

    @property
    def month(self) -> int:
        return self.date.month

    @property
    def year(self) -> int:
        return self.date.year
