"""
storage.py – Entity storage and retrieval.

This module contains DataStore, the single class responsible for all
record keeping in the application:

  - Loading and saving one JSON file per entity collection
    (articles, transactions, materials, storage locations, persons,
    loans, borrowings, rentals, my-rentals, repairs, vault items,
    accounting operations, and the custom category/supplier lists).
  - Add / update / delete / lookup for every entity type, with input
    validation.
  - The side effects the user expects from an action: stock updates when a
    transaction is recorded, ledger entries when a rental is paid or a
    deposit retained, price recalculation when a rental comes back early.
  - Hand-offs between records: passing a borrowed object on (loan,
    rental, repair), subletting a rental, sending a returned loan or
    rental to repair, merging duplicate persons.
  - Aggregate queries used by the front-end: totals per period, VAT
    collected/deductible, low stock, payment alerts, material status.
  - Vault items, whose photos and invoices are stored encrypted through
    DocumentCipher.

DataStore depends on AppConfig (for file paths) and, for vault items only,
on DocumentCipher.  An explicit DataStore handle is passed to whoever needs
it; there is no module-level instance.

Validation logic is encapsulated in the EntryValidationError exception
so that the front-end can report problems without duplicating validation
rules.
"""

import json
import logging
import os
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

import pricing
import serialization
from config import ARTICLE_CATEGORIES, VAULT_CATEGORIES
from crypto import INVOICE, PHOTO
from models import (
    AccountingOperation,
    Article,
    Borrowing,
    CommerceTransaction,
    DiscountKind,
    Loan,
    Material,
    MyRental,
    OperationKind,
    PaymentDue,
    Person,
    Rental,
    Repair,
    StorageLocation,
    TariffKind,
    TransactionKind,
    VaultItem,
)

logger = logging.getLogger("Materiel")

# Collection name -> model class.  The name is also the JSON file stem.
COLLECTIONS = {
    "articles": Article,
    "transactions": CommerceTransaction,
    "materials": Material,
    "locations": StorageLocation,
    "persons": Person,
    "loans": Loan,
    "rentals": Rental,
    "my_rentals": MyRental,
    "repairs": Repair,
    "vault_items": VaultItem,
    "operations": AccountingOperation,
    "borrowings": Borrowing,
}

# Plain string lists persisted alongside the collections.
STRING_LISTS = ("article_categories", "suppliers", "excluded_suppliers")

# Category of the materials standing for borrowed objects.
BORROWED_CATEGORY = "Emprunt"


class EntryValidationError(ValueError):
    """
    Raised by DataStore when a field fails validation.

    Attributes
    ----------
    field : str or None
        The name of the field that caused the error, so the front-end can
        point the user at it.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field: Optional[str] = field


class MaterialStatus(str, Enum):
    AVAILABLE = "available"
    ON_LOAN = "on_loan"
    RENTED = "rented"
    IN_REPAIR = "in_repair"


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now()


def _require(condition: bool, message: str, field: str) -> None:
    if not condition:
        raise EntryValidationError(message, field=field)


def _require_name(value: str, field: str = "name") -> None:
    _require(bool(value and value.strip()), f"The {field.replace('_', ' ')} cannot be empty.", field)


def _require_non_negative(value: Optional[float], field: str) -> None:
    if value is None:
        return
    _require(value >= 0, f"The {field.replace('_', ' ')} cannot be negative.", field)


def validate_discount(kind: DiscountKind, value: float) -> None:
    _require_non_negative(value, "discount_value")
    if DiscountKind(kind) is DiscountKind.PERCENTAGE:
        _require(value <= 100, "A percentage discount cannot exceed 100%.", "discount_value")


def validate_price_inputs(unit_price: float, quantity_or_weight: float,
                          discount_kind: DiscountKind = DiscountKind.NONE,
                          discount_value: float = 0.0) -> None:
    """Check the inputs of a one-off price calculation not tied to a stored transaction."""
    _require_non_negative(unit_price, "unit_price")
    _require(quantity_or_weight > 0, "The quantity or weight must be greater than zero.", "quantity")
    validate_discount(discount_kind, discount_value)


class DataStore:
    """
    Holds every entity collection and persists it to disk.

    Parameters
    ----------
    config : AppConfig
        Provides the collection file paths.
    cipher : DocumentCipher or None
        Needed only for vault item attachments.
    """

    def __init__(self, config, cipher=None) -> None:
        self.config = config
        self.cipher = cipher

        self.articles: List[Article] = []
        self.transactions: List[CommerceTransaction] = []
        self.materials: List[Material] = []
        self.locations: List[StorageLocation] = []
        self.persons: List[Person] = []
        self.loans: List[Loan] = []
        self.rentals: List[Rental] = []
        self.my_rentals: List[MyRental] = []
        self.repairs: List[Repair] = []
        self.vault_items: List[VaultItem] = []
        self.operations: List[AccountingOperation] = []
        self.borrowings: List[Borrowing] = []

        self.article_categories: List[str] = []
        self.suppliers: List[str] = []
        self.excluded_suppliers: List[str] = []

        self.load()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read_json(self, name: str) -> list:
        """
        Return the decoded JSON list stored for *name*.

        A missing file means an empty collection.  A corrupt file is logged
        and treated as empty so the application still starts.
        """
        path = self.config.collection_path(name)
        if not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            logger.exception("Failed to read collection %s; starting empty", name)
            return []
        return data if isinstance(data, list) else []

    def load(self) -> None:
        """(Re)load every collection from disk."""
        for name, model in COLLECTIONS.items():
            try:
                items = serialization.from_list(model, self._read_json(name))
            except (TypeError, ValueError):
                logger.exception("Collection %s contains invalid records; starting empty", name)
                items = []
            setattr(self, name, items)
        for name in STRING_LISTS:
            setattr(self, name, [s for s in self._read_json(name) if isinstance(s, str)])

    def save(self, *names: str) -> None:
        """
        Write the given collections (all of them when called without names).

        Each file is written to a '.tmp' companion first and then moved over
        the original with os.replace(), so a crash never leaves a half-written
        collection behind.  I/O errors are logged and re-raised.
        """
        for name in names or (*COLLECTIONS, *STRING_LISTS):
            path = self.config.collection_path(name)
            tmp = path + ".tmp"
            try:
                with open(tmp, "w", encoding="utf-8") as fh:
                    fh.write(serialization.dumps(getattr(self, name)))
                os.replace(tmp, path)
            except OSError:
                logger.exception("Failed to save collection %s", name)
                raise

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find(items: list, item_id: str):
        return next((item for item in items if item.id == item_id), None)

    def _get_or_raise(self, name: str, item_id: str):
        item = self._find(getattr(self, name), item_id)
        if item is None:
            raise KeyError(f"No {name[:-1].replace('_', ' ')} with id {item_id}")
        return item

    def _replace(self, name: str, item) -> None:
        items = getattr(self, name)
        for index, existing in enumerate(items):
            if existing.id == item.id:
                items[index] = item
                self.save(name)
                return
        raise KeyError(f"No {name[:-1].replace('_', ' ')} with id {item.id}")

    def _remove(self, name: str, item_id: str) -> None:
        items = getattr(self, name)
        setattr(self, name, [item for item in items if item.id != item_id])
        self.save(name)

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------

    @staticmethod
    def validate_article(article: Article) -> None:
        _require_name(article.name)
        _require_non_negative(article.purchase_price_ht, "purchase_price_ht")
        _require_non_negative(article.sale_price_ht, "sale_price_ht")
        _require_non_negative(article.stock_quantity, "stock_quantity")
        _require_non_negative(article.stock_kg, "stock_kg")

    def add_article(self, article: Article) -> Article:
        self.validate_article(article)
        self.articles.append(article)
        self.save("articles")
        return article

    def update_article(self, article: Article) -> None:
        self.validate_article(article)
        self._replace("articles", article)

    def delete_article(self, article_id: str) -> None:
        self._remove("articles", article_id)

    def get_article(self, article_id: str) -> Optional[Article]:
        return self._find(self.articles, article_id)

    def low_stock_articles(self) -> List[Article]:
        return [a for a in self.articles if a.low_stock]

    def adjust_stock(self, article_id: str, amount: float, is_sale: bool) -> None:
        """
        Move stock after a transaction: a sale removes *amount* (never going
        below zero), a purchase adds it.  Units or kg depending on the article.
        """
        article = self._get_or_raise("articles", article_id)
        if article.sold_by_weight:
            if is_sale:
                article.stock_kg = max(0.0, article.stock_kg - amount)
            else:
                article.stock_kg += amount
        else:
            if is_sale:
                article.stock_quantity = max(0, article.stock_quantity - int(amount))
            else:
                article.stock_quantity += int(amount)
        self.save("articles")

    # ------------------------------------------------------------------
    # Custom categories and suppliers
    # ------------------------------------------------------------------

    def add_article_category(self, category: str) -> None:
        name = category.strip()
        if name and name not in self.article_categories and name not in ARTICLE_CATEGORIES:
            self.article_categories.append(name)
            self.save("article_categories")

    def all_article_categories(self) -> List[str]:
        return ARTICLE_CATEGORIES + sorted(self.article_categories)

    def add_supplier(self, supplier: str) -> None:
        name = supplier.strip()
        if name and name not in self.suppliers:
            self.suppliers.append(name)
            self.save("suppliers")

    def remove_supplier(self, supplier: str) -> None:
        self.suppliers = [s for s in self.suppliers if s != supplier]
        self.save("suppliers")

    def exclude_supplier(self, supplier: str) -> None:
        """Hide a supplier still referenced by articles from the selection list."""
        name = supplier.strip()
        if name and name not in self.excluded_suppliers:
            self.excluded_suppliers.append(name)
            self.save("excluded_suppliers")

    def all_suppliers(self) -> List[str]:
        names = {a.supplier for a in self.articles if a.supplier} | set(self.suppliers)
        return sorted((n for n in names if n not in self.excluded_suppliers), key=str.casefold)

    # ------------------------------------------------------------------
    # Commerce transactions
    # ------------------------------------------------------------------

    @staticmethod
    def validate_transaction(transaction: CommerceTransaction) -> None:
        _require_name(transaction.article_name, "article_name")
        _require_non_negative(transaction.unit_price_ht, "unit_price_ht")
        if transaction.sold_by_weight:
            _require(transaction.weight > 0, "The weight must be greater than zero.", "weight")
            _require(transaction.quantity == 0,
                     "A transaction sold by weight cannot also have a unit quantity.", "quantity")
        else:
            _require(transaction.quantity > 0, "The quantity must be at least 1.", "quantity")
            _require(transaction.weight == 0,
                     "A transaction sold by unit cannot also have a weight.", "weight")
        validate_discount(transaction.discount_kind, transaction.discount_value)

    def record_transaction(self, transaction: CommerceTransaction) -> CommerceTransaction:
        """Validate and store *transaction*, then move the linked article's stock."""
        self.validate_transaction(transaction)
        self.transactions.append(transaction)
        self.save("transactions")
        if transaction.article_id and self.get_article(transaction.article_id):
            self.adjust_stock(
                transaction.article_id,
                transaction.quantity_or_weight,
                is_sale=transaction.kind is TransactionKind.SALE,
            )
        logger.info("Recorded %s of %s (%.2f TTC)", transaction.kind.value,
                    transaction.article_name, transaction.total_incl_tax)
        return transaction

    def update_transaction(self, transaction: CommerceTransaction) -> None:
        self.validate_transaction(transaction)
        self._replace("transactions", transaction)

    def delete_transaction(self, transaction_id: str) -> None:
        self._remove("transactions", transaction_id)

    def mark_transaction_paid(self, transaction_id: str, paid: bool = True) -> None:
        transaction = self._get_or_raise("transactions", transaction_id)
        transaction.paid = paid
        self.save("transactions")

    def transactions_for(self, year: Optional[int] = None, month: Optional[int] = None,
                         kind: Optional[TransactionKind] = None) -> List[CommerceTransaction]:
        """Transactions of a period (newest first); month is ignored without a year."""
        result = [t for t in self.transactions if kind is None or t.kind is kind]
        if year is not None:
            result = [t for t in result if t.year == year]
            if month is not None:
                result = [t for t in result if t.month == month]
        return sorted(result, key=lambda t: t.date, reverse=True)

    def total_sales(self, year: Optional[int] = None, month: Optional[int] = None) -> float:
        return sum(t.total_incl_tax for t in self.transactions_for(year, month, TransactionKind.SALE))

    def total_purchases(self, year: Optional[int] = None, month: Optional[int] = None) -> float:
        return sum(t.total_incl_tax for t in self.transactions_for(year, month, TransactionKind.PURCHASE))

    def vat_collected(self, year: Optional[int] = None, month: Optional[int] = None) -> float:
        return sum(t.total_tax for t in self.transactions_for(year, month, TransactionKind.SALE))

    def vat_deductible(self, year: Optional[int] = None, month: Optional[int] = None) -> float:
        return sum(t.total_tax for t in self.transactions_for(year, month, TransactionKind.PURCHASE))

    def commercial_margin(self, year: Optional[int] = None, month: Optional[int] = None) -> float:
        return self.total_sales(year, month) - self.total_purchases(year, month)

    def payment_alerts(self, now: Optional[datetime] = None) -> Dict[PaymentDue, List[CommerceTransaction]]:
        """
        Unpaid transactions whose due date is today or already past,
        grouped as OVERDUE and DUE_TODAY and sorted by due date.
        """
        now = _now(now)
        alerts: Dict[PaymentDue, List[CommerceTransaction]] = {
            PaymentDue.OVERDUE: [],
            PaymentDue.DUE_TODAY: [],
        }
        for transaction in sorted(
            (t for t in self.transactions if not t.paid and t.due_date is not None),
            key=lambda t: t.due_date,
        ):
            status = transaction.payment_status(now)
            if status in alerts:
                alerts[status].append(transaction)
        return alerts

    def payments_due_soon(self, now: Optional[datetime] = None) -> List[CommerceTransaction]:
        """Unpaid transactions falling due within the configured number of days."""
        window = self.config.due_soon_days
        return sorted(
            (t for t in self.transactions if t.payment_due_soon(now, window)),
            key=lambda t: t.due_date,
        )

    # ------------------------------------------------------------------
    # Materials, storage locations, persons
    # ------------------------------------------------------------------

    def add_material(self, material: Material) -> Material:
        _require_name(material.name)
        _require_non_negative(material.value, "value")
        self.materials.append(material)
        self.save("materials")
        return material

    def update_material(self, material: Material) -> None:
        _require_name(material.name)
        _require_non_negative(material.value, "value")
        self._replace("materials", material)

    def delete_material(self, material_id: str) -> None:
        _require(self.material_status(material_id) is MaterialStatus.AVAILABLE,
                 "This material is currently out (loan, rental or repair).", "material")
        self._remove("materials", material_id)

    def get_material(self, material_id: str) -> Optional[Material]:
        return self._find(self.materials, material_id)

    def material_status(self, material_id: str) -> MaterialStatus:
        if any(r.material_id == material_id and r.in_progress for r in self.repairs):
            return MaterialStatus.IN_REPAIR
        if any(r.material_id == material_id and r.is_active for r in self.rentals):
            return MaterialStatus.RENTED
        if any(l.material_id == material_id and l.is_active for l in self.loans):
            return MaterialStatus.ON_LOAN
        return MaterialStatus.AVAILABLE

    def is_available(self, material_id: str) -> bool:
        return self.material_status(material_id) is MaterialStatus.AVAILABLE

    def rename_material_category(self, old: str, new: str) -> None:
        new = new.strip()
        _require_name(new, "category")
        for material in self.materials:
            if material.category == old:
                material.category = new
        self.save("materials")

    def add_location(self, location: StorageLocation) -> StorageLocation:
        _require_name(location.name)
        self.locations.append(location)
        self.save("locations")
        return location

    def delete_location(self, location_id: str) -> None:
        """Delete a storage location; materials stored there become unassigned."""
        for material in self.materials:
            if material.location_id == location_id:
                material.location_id = None
        self._remove("locations", location_id)
        self.save("materials")

    def materials_in_location(self, location_id: str) -> List[Material]:
        return [m for m in self.materials if m.location_id == location_id]

    def add_person(self, person: Person) -> Person:
        _require_name(person.last_name, "last_name")
        self.persons.append(person)
        self.save("persons")
        return person

    def update_person(self, person: Person) -> None:
        _require_name(person.last_name, "last_name")
        self._replace("persons", person)

    def delete_person(self, person_id: str) -> None:
        busy = (
            any(l.person_id == person_id and l.is_active for l in self.loans)
            or any(r.renter_id == person_id and r.is_active for r in self.rentals)
            or any(r.owner_id == person_id and r.is_active for r in self.my_rentals)
            or any(r.repairer_id == person_id and r.in_progress for r in self.repairs)
            or any(b.lender_id == person_id and b.is_active for b in self.borrowings)
        )
        _require(not busy, "This person still has an ongoing loan, rental or repair.", "person")
        self._remove("persons", person_id)

    def get_person(self, person_id: str) -> Optional[Person]:
        return self._find(self.persons, person_id)

    def _person_name(self, person_id: str) -> str:
        person = self.get_person(person_id)
        return person.full_name if person else "Inconnu"

    def _material_name(self, material_id: str) -> str:
        material = self.get_material(material_id)
        return material.name if material else "matériel inconnu"

    # Orphans and duplicates -------------------------------------------

    def _require_person(self, person_id: str) -> None:
        _require(self.get_person(person_id) is not None, "Unknown person.", "person")

    def orphan_loans(self) -> List[Loan]:
        """Loans whose person no longer exists."""
        ids = {p.id for p in self.persons}
        return [l for l in self.loans if l.person_id not in ids]

    def orphan_borrowings(self) -> List[Borrowing]:
        ids = {p.id for p in self.persons}
        return [b for b in self.borrowings if b.lender_id not in ids]

    def reassign_loan(self, loan_id: str, person_id: str) -> None:
        self._require_person(person_id)
        self._get_or_raise("loans", loan_id).person_id = person_id
        self.save("loans")

    def reassign_borrowing(self, borrowing_id: str, person_id: str) -> None:
        self._require_person(person_id)
        self._get_or_raise("borrowings", borrowing_id).lender_id = person_id
        self.save("borrowings")

    def duplicate_persons(self) -> List[List[Person]]:
        """Groups of persons sharing the same last and first name (case and spaces ignored)."""
        groups: Dict[tuple, List[Person]] = {}
        for person in self.persons:
            key = (person.last_name.strip().lower(), person.first_name.strip().lower())
            groups.setdefault(key, []).append(person)
        return sorted((g for g in groups.values() if len(g) > 1), key=lambda g: g[0].last_name)

    def merge_persons(self, person_ids: List[str]) -> Person:
        """
        Merge several records of the same person into one.

        The record with the most contact details is kept (email and phone
        count twice as much as the organisation) and its empty fields are
        filled from the others.  Everything that pointed at a removed
        record is moved to the kept one.  Returns the kept person.
        """
        _require(len(set(person_ids)) > 1, "Select at least two persons to merge.", "person")
        people = [self._get_or_raise("persons", pid) for pid in dict.fromkeys(person_ids)]

        def score(p: Person) -> int:
            return 2 * bool(p.email) + 2 * bool(p.phone) + bool(p.organisation)

        people.sort(key=score, reverse=True)
        kept, others = people[0], people[1:]
        for other in others:
            kept.email = kept.email or other.email
            kept.phone = kept.phone or other.phone
            kept.organisation = kept.organisation or other.organisation

        removed = {p.id for p in others}
        for records, attr in (
            (self.loans, "person_id"),
            (self.borrowings, "lender_id"),
            (self.rentals, "renter_id"),
            (self.my_rentals, "owner_id"),
            (self.repairs, "repairer_id"),
        ):
            for record in records:
                if getattr(record, attr) in removed:
                    setattr(record, attr, kept.id)
        self.persons = [p for p in self.persons if p.id not in removed]
        self.save("persons", "loans", "borrowings", "rentals", "my_rentals", "repairs")
        logger.info("Merged %d duplicate(s) into %s", len(others), kept.full_name)
        return kept

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    def add_loan(self, loan: Loan) -> Loan:
        _require(self.get_material(loan.material_id) is not None, "Unknown material.", "material")
        _require(self.is_available(loan.material_id), "This material is not available.", "material")
        _require(loan.end >= loan.start, "The end date is before the start date.", "end")
        self.loans.append(loan)
        self.save("loans")
        return loan

    def return_loan(self, loan_id: str, now: Optional[datetime] = None) -> None:
        loan = self._get_or_raise("loans", loan_id)
        loan.returned_on = _now(now)
        self.save("loans")

    def delete_loan(self, loan_id: str) -> None:
        self._remove("loans", loan_id)

    def delete_returned_loans(self) -> None:
        self.loans = [l for l in self.loans if l.is_active]
        self.save("loans")

    def active_loans(self) -> List[Loan]:
        return [l for l in self.loans if l.is_active]

    def late_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        return [l for l in self.loans if l.is_late(now)]

    # ------------------------------------------------------------------
    # Rentals (I rent my material out)
    # ------------------------------------------------------------------

    @staticmethod
    def validate_rental(rental) -> None:
        _require(rental.end >= rental.start, "The end date is before the start date.", "end")
        _require_non_negative(rental.total_price, "total_price")
        _require_non_negative(rental.unit_price, "unit_price")
        _require_non_negative(rental.deposit, "deposit")

    def add_rental(self, rental: Rental) -> Rental:
        _require(self.get_material(rental.material_id) is not None, "Unknown material.", "material")
        _require(self.is_available(rental.material_id), "This material is not available.", "material")
        self.validate_rental(rental)
        self.rentals.append(rental)
        self.save("rentals")
        return rental

    def update_rental(self, rental: Rental) -> None:
        self.validate_rental(rental)
        self._replace("rentals", rental)

    def delete_rental(self, rental_id: str) -> None:
        self._remove("rentals", rental_id)

    def return_rental(self, rental_id: str, now: Optional[datetime] = None) -> Rental:
        """Close the rental; time-based tariffs are repriced on the effective duration."""
        rental = self._get_or_raise("rentals", rental_id)
        rental.returned_on = _now(now)
        if rental.tariff is not TariffKind.FLAT and rental.unit_price > 0:
            rental.total_price = rental.effective_price
        self.save("rentals")
        return rental

    def sublet_of(self, rental_id: str) -> Optional[Rental]:
        """The active sub-rental of *rental_id*, or None."""
        rental = self._get_or_raise("rentals", rental_id)
        if rental.sublet_id is None:
            return None
        sublet = self._find(self.rentals, rental.sublet_id)
        return sublet if sublet is not None and sublet.is_active else None

    def sublet_rental(self, rental_id: str, renter_id: str, start: datetime, end: datetime,
                      unit_price: float, tariff: TariffKind = TariffKind.DAY,
                      deposit: float = 0.0, notes: str = "") -> Rental:
        """
        Rent the material of an ongoing rental on to someone else.

        The total is the unit price times the billing units of the planned
        period (one unit for a flat rate).
        """
        rental = self._get_or_raise("rentals", rental_id)
        _require(rental.is_active, "This rental is already finished.", "rental")
        _require(self.sublet_of(rental_id) is None, "This rental is already sublet.", "rental")
        self._require_person(renter_id)
        units = pricing.billing_units(tariff, pricing.duration_days(start, end))
        sublet = Rental(
            material_id=rental.material_id,
            renter_id=renter_id,
            start=start,
            end=end,
            total_price=pricing.round2(unit_price * units),
            deposit=deposit,
            tariff=tariff,
            unit_price=unit_price,
            notes=notes or "Sous-location",
        )
        self.validate_rental(sublet)
        self.rentals.append(sublet)
        rental.sublet_id = sublet.id
        self.save("rentals")
        logger.info("Rental %s sublet as %s", rental.id, sublet.id)
        return sublet

    def return_sublet(self, rental_id: str, now: Optional[datetime] = None) -> Rental:
        """Close the active sub-rental of *rental_id* (repriced like any rental)."""
        sublet = self.sublet_of(rental_id)
        if sublet is None:
            raise KeyError(f"Rental {rental_id} has no active sub-rental")
        self._get_or_raise("rentals", rental_id).sublet_id = None
        return self.return_rental(sublet.id, now)

    def mark_rental_paid(self, rental_id: str, received: bool = True,
                         now: Optional[datetime] = None) -> None:
        """
        Flag the rental payment; the first time it is marked received, the
        amount for the time actually elapsed is booked as income.
        """
        rental = self._get_or_raise("rentals", rental_id)
        first_time = received and not rental.payment_received
        rental.payment_received = received
        self.save("rentals")
        if first_time:
            material = self._material_name(rental.material_id)
            self.add_operation(AccountingOperation(
                kind=OperationKind.RENTAL_INCOME,
                amount=rental.actual_price(now),
                description=f"Location de {material}",
                date=_now(now),
                material_name=material,
                person_name=self._person_name(rental.renter_id),
                reference_id=rental.id,
            ))

    def return_deposit(self, rental_id: str) -> None:
        """The whole deposit goes back to the renter; any retention is cancelled."""
        rental = self._get_or_raise("rentals", rental_id)
        rental.deposit_returned = True
        rental.deposit_retained = False
        rental.retained_amount = 0.0
        self.save("rentals")

    def retain_deposit(self, rental_id: str, amount: Optional[float] = None,
                       now: Optional[datetime] = None) -> float:
        """
        Keep all of the deposit (amount=None) or part of it.

        The retained amount must lie within [0, deposit].  The first
        retention is booked as income.  Returns the amount given back.
        """
        rental = self._get_or_raise("rentals", rental_id)
        kept = rental.deposit if amount is None else amount
        _require(0 <= kept <= rental.deposit,
                 f"The retained amount must be between 0 and {rental.deposit:.2f}.",
                 "retained_amount")

        first_time = not rental.deposit_retained
        rental.deposit_retained = True
        rental.deposit_returned = False
        rental.retained_amount = kept
        self.save("rentals")

        if first_time and kept > 0:
            material = self._material_name(rental.material_id)
            if kept < rental.deposit:
                description = (f"Caution partielle gardée ({kept:.2f} sur "
                               f"{rental.deposit:.2f}) - {material}")
            else:
                description = f"Caution gardée - {material}"
            self.add_operation(AccountingOperation(
                kind=OperationKind.DEPOSIT_RETAINED,
                amount=kept,
                description=description,
                date=_now(now),
                material_name=material,
                person_name=self._person_name(rental.renter_id),
                reference_id=rental.id,
            ))
        return pricing.deposit_returned(rental.deposit, kept)

    def active_rentals(self) -> List[Rental]:
        return [r for r in self.rentals if r.is_active]

    def rental_income_total(self, now: Optional[datetime] = None) -> float:
        """Income from rentals that are finished and paid."""
        return sum(r.actual_price(now) for r in self.rentals if r.is_finished and r.payment_received)

    def rental_income_pending(self, now: Optional[datetime] = None) -> float:
        return sum(r.actual_price(now) for r in self.rentals if not r.payment_received)

    # ------------------------------------------------------------------
    # My rentals (I rent something from an owner)
    # ------------------------------------------------------------------

    def add_my_rental(self, rental: MyRental) -> MyRental:
        _require_name(rental.object_name, "object_name")
        self.validate_rental(rental)
        self.my_rentals.append(rental)
        self.save("my_rentals")
        return rental

    def delete_my_rental(self, rental_id: str) -> None:
        self._remove("my_rentals", rental_id)

    def return_my_rental(self, rental_id: str, now: Optional[datetime] = None) -> MyRental:
        rental = self._get_or_raise("my_rentals", rental_id)
        rental.returned_on = _now(now)
        if rental.tariff is not TariffKind.FLAT and rental.unit_price > 0:
            rental.total_price = rental.effective_price
        self.save("my_rentals")
        return rental

    def mark_my_rental_paid(self, rental_id: str, made: bool = True,
                            now: Optional[datetime] = None) -> None:
        rental = self._get_or_raise("my_rentals", rental_id)
        first_time = made and not rental.payment_made
        rental.payment_made = made
        self.save("my_rentals")
        amount = rental.actual_price(now)
        if first_time and amount > 0:
            owner = self._person_name(rental.owner_id)
            self.add_operation(AccountingOperation(
                kind=OperationKind.MY_RENTAL_EXPENSE,
                amount=amount,
                description=f"Location de {rental.object_name} auprès de {owner}",
                date=_now(now),
                material_name=rental.object_name,
                person_name=owner,
                reference_id=rental.id,
            ))

    def _check_deposit_settlement(self, rental: MyRental, amount: float) -> None:
        _require(0 <= amount <= rental.deposit_outstanding,
                 f"The amount must be between 0 and {rental.deposit_outstanding:.2f}.",
                 "amount")

    def recover_deposit(self, rental_id: str, amount: float) -> None:
        """Record part (or all) of my deposit coming back from the owner."""
        rental = self._get_or_raise("my_rentals", rental_id)
        self._check_deposit_settlement(rental, amount)
        rental.deposit_recovered += amount
        self.save("my_rentals")

    def lose_deposit(self, rental_id: str, amount: float, now: Optional[datetime] = None) -> None:
        """Record part (or all) of my deposit kept by the owner; booked as an expense."""
        rental = self._get_or_raise("my_rentals", rental_id)
        self._check_deposit_settlement(rental, amount)
        rental.deposit_lost += amount
        self.save("my_rentals")
        if amount > 0:
            if amount < rental.deposit:
                description = (f"Caution partielle perdue ({amount:.2f} sur "
                               f"{rental.deposit:.2f}) - {rental.object_name}")
            else:
                description = f"Caution perdue - {rental.object_name}"
            self.add_operation(AccountingOperation(
                kind=OperationKind.DEPOSIT_LOST,
                amount=amount,
                description=description,
                date=_now(now),
                material_name=rental.object_name,
                person_name=self._person_name(rental.owner_id),
                reference_id=rental.id,
            ))

    def my_rental_spending(self, now: Optional[datetime] = None) -> float:
        return sum(r.actual_price(now) for r in self.my_rentals if r.is_finished and r.payment_made)

    def my_rental_pending(self, now: Optional[datetime] = None) -> float:
        return sum(r.actual_price(now) for r in self.my_rentals if not r.payment_made)

    def deposits_outstanding(self) -> float:
        return sum(r.deposit_outstanding for r in self.my_rentals)

    # ------------------------------------------------------------------
    # Repairs
    # ------------------------------------------------------------------

    def add_repair(self, repair: Repair) -> Repair:
        _require(self.get_material(repair.material_id) is not None, "Unknown material.", "material")
        _require_name(repair.description, "description")
        _require_non_negative(repair.estimated_cost, "estimated_cost")
        if repair.free_of_charge:
            repair.estimated_cost = 0.0
        self.repairs.append(repair)
        self.save("repairs")
        return repair

    def delete_repair(self, repair_id: str) -> None:
        self._remove("repairs", repair_id)

    def _open_repair(self, material_id: str, repairer_id: str, description: str,
                     planned_end: Optional[datetime], estimated_cost: Optional[float],
                     notes: str, free_of_charge: bool, now: Optional[datetime], **origin) -> Repair:
        repair = Repair(
            material_id=material_id,
            repairer_id=repairer_id,
            description=description,
            start=_now(now),
            planned_end=planned_end,
            free_of_charge=free_of_charge,
            estimated_cost=estimated_cost,
            notes=notes,
            **origin,
        )
        return self.add_repair(repair)

    def send_loan_to_repair(self, loan_id: str, repairer_id: str, description: str,
                            planned_end: Optional[datetime] = None,
                            estimated_cost: Optional[float] = None, notes: str = "",
                            free_of_charge: bool = False, now: Optional[datetime] = None) -> Repair:
        """Close the loan if still open and send its material to *repairer_id*."""
        loan = self._get_or_raise("loans", loan_id)
        self._require_person(repairer_id)
        _require_name(description, "description")
        if loan.is_active:
            self.return_loan(loan_id, now)
        return self._open_repair(loan.material_id, repairer_id, description, planned_end,
                                 estimated_cost, notes, free_of_charge, now, origin_loan_id=loan.id)

    def send_rental_to_repair(self, rental_id: str, repairer_id: str, description: str,
                              planned_end: Optional[datetime] = None,
                              estimated_cost: Optional[float] = None, notes: str = "",
                              free_of_charge: bool = False, now: Optional[datetime] = None) -> Repair:
        """Close the rental if still open (repricing it) and send its material to repair."""
        rental = self._get_or_raise("rentals", rental_id)
        self._require_person(repairer_id)
        _require_name(description, "description")
        if rental.is_active:
            self.return_rental(rental_id, now)
        return self._open_repair(rental.material_id, repairer_id, description, planned_end,
                                 estimated_cost, notes, free_of_charge, now,
                                 origin_rental_id=rental.id)

    def return_repair(self, repair_id: str, final_cost: Optional[float] = None,
                      notes: str = "", now: Optional[datetime] = None) -> Repair:
        repair = self._get_or_raise("repairs", repair_id)
        _require_non_negative(final_cost, "final_cost")
        repair.returned_on = _now(now)
        if final_cost is not None:
            repair.final_cost = final_cost
        if notes:
            repair.notes = f"{repair.notes}\n{notes}".strip()
        self.save("repairs")
        return repair

    def mark_repair_paid(self, repair_id: str, paid: bool = True,
                         now: Optional[datetime] = None) -> None:
        """Flag the repair as paid; the first time, its final cost is booked as an expense."""
        repair = self._get_or_raise("repairs", repair_id)
        first_time = paid and not repair.paid
        repair.paid = paid
        self.save("repairs")
        if first_time and repair.final_cost:
            material = self._material_name(repair.material_id)
            self.add_operation(AccountingOperation(
                kind=OperationKind.REPAIR_EXPENSE,
                amount=repair.final_cost,
                description=f"Réparation de {material}",
                date=_now(now),
                material_name=material,
                person_name=self._person_name(repair.repairer_id),
                reference_id=repair.id,
            ))

    def repairs_in_progress(self) -> List[Repair]:
        return [r for r in self.repairs if r.in_progress]

    def repair_spending_total(self) -> float:
        return sum(r.cost for r in self.repairs if not r.in_progress and r.paid)

    def repair_spending_pending(self) -> float:
        return sum(r.cost for r in self.repairs if not r.paid)

    # ------------------------------------------------------------------
    # Borrowings (someone lends me an object)
    # ------------------------------------------------------------------

    def add_borrowing(self, borrowing: Borrowing) -> Borrowing:
        _require_name(borrowing.object_name, "object_name")
        _require(borrowing.end >= borrowing.start, "The end date is before the start date.", "end")
        self.borrowings.append(borrowing)
        self.save("borrowings")
        return borrowing

    def update_borrowing(self, borrowing: Borrowing) -> None:
        _require_name(borrowing.object_name, "object_name")
        _require(borrowing.end >= borrowing.start, "The end date is before the start date.", "end")
        self._replace("borrowings", borrowing)

    def get_borrowing(self, borrowing_id: str) -> Optional[Borrowing]:
        return self._find(self.borrowings, borrowing_id)

    def _linked_material(self, borrowing: Borrowing) -> Optional[Material]:
        if borrowing.material_id is None:
            return None
        return self.get_material(borrowing.material_id)

    def _drop_linked_material(self, borrowing: Borrowing) -> None:
        material = self._linked_material(borrowing)
        if material is not None:
            _require(self.is_available(material.id),
                     "The borrowed object is still lent, rented out or in repair.", "borrowing")
            self.materials = [m for m in self.materials if m.id != material.id]
            self.save("materials")
        borrowing.material_id = None

    def delete_borrowing(self, borrowing_id: str) -> None:
        """Delete the borrowing and the material record created for it."""
        borrowing = self._get_or_raise("borrowings", borrowing_id)
        self._drop_linked_material(borrowing)
        self._remove("borrowings", borrowing_id)

    def material_from_borrowing(self, borrowing_id: str, category: str = BORROWED_CATEGORY,
                                location_id: Optional[str] = None,
                                description: str = "Créé depuis un emprunt") -> Material:
        """
        Return the Material standing for a borrowed object, creating it when
        needed.  The material is worth nothing to me (value 0).
        """
        borrowing = self._get_or_raise("borrowings", borrowing_id)
        material = self._linked_material(borrowing)
        if material is not None:
            return material
        material = self.add_material(Material(
            name=borrowing.object_name,
            category=category,
            description=description,
            location_id=location_id,
            acquired_on=borrowing.start,
            value=0.0,
        ))
        borrowing.material_id = material.id
        self.save("borrowings")
        return material

    def _active_borrowing(self, borrowing_id: str) -> Borrowing:
        borrowing = self._get_or_raise("borrowings", borrowing_id)
        _require(borrowing.is_active, "This object has already been given back.", "borrowing")
        return borrowing

    def borrowing_loan(self, borrowing_id: str) -> Optional[Loan]:
        """The active loan of a borrowed object, whether made from the borrowing or from its material."""
        borrowing = self._get_or_raise("borrowings", borrowing_id)
        loan = self._find(self.loans, borrowing.loan_id) if borrowing.loan_id else None
        if loan is not None and loan.is_active:
            return loan
        if borrowing.material_id is not None:
            return next((l for l in self.loans
                         if l.material_id == borrowing.material_id and l.is_active), None)
        return None

    def lend_borrowing(self, borrowing_id: str, person_id: str, end: datetime,
                       notes: str = "", now: Optional[datetime] = None) -> Loan:
        """Lend a borrowed object on to *person_id*."""
        borrowing = self._active_borrowing(borrowing_id)
        self._require_person(person_id)
        material = self.material_from_borrowing(
            borrowing_id, description="Objet emprunté - prêté temporairement")
        loan = self.add_loan(Loan(
            material_id=material.id,
            person_id=person_id,
            start=_now(now),
            end=end,
            notes=notes or f"Re-prêt de l'emprunt : {borrowing.object_name}",
        ))
        borrowing.loan_id = loan.id
        self.save("borrowings")
        return loan

    def return_borrowing_loan(self, borrowing_id: str, now: Optional[datetime] = None) -> None:
        loan = self.borrowing_loan(borrowing_id)
        if loan is None:
            raise KeyError(f"Borrowing {borrowing_id} is not lent out")
        self.return_loan(loan.id, now)
        self._get_or_raise("borrowings", borrowing_id).loan_id = None
        self.save("borrowings")

    def borrowing_rental(self, borrowing_id: str) -> Optional[Rental]:
        borrowing = self._get_or_raise("borrowings", borrowing_id)
        rental = self._find(self.rentals, borrowing.rental_id) if borrowing.rental_id else None
        return rental if rental is not None and rental.is_active else None

    def rent_out_borrowing(self, borrowing_id: str, renter_id: str, start: datetime, end: datetime,
                           total_price: float, unit_price: float = 0.0,
                           tariff: TariffKind = TariffKind.FLAT, deposit: float = 0.0,
                           notes: str = "") -> Rental:
        """Rent a borrowed object out to *renter_id*."""
        borrowing = self._active_borrowing(borrowing_id)
        self._require_person(renter_id)
        material = self.material_from_borrowing(
            borrowing_id, description="Objet emprunté - loué temporairement")
        rental = self.add_rental(Rental(
            material_id=material.id,
            renter_id=renter_id,
            start=start,
            end=end,
            total_price=total_price,
            deposit=deposit,
            tariff=tariff,
            unit_price=unit_price,
            notes=notes or f"Location de l'emprunt : {borrowing.object_name}",
        ))
        borrowing.rental_id = rental.id
        self.save("borrowings")
        return rental

    def return_borrowing_rental(self, borrowing_id: str, now: Optional[datetime] = None) -> Rental:
        rental = self.borrowing_rental(borrowing_id)
        if rental is None:
            raise KeyError(f"Borrowing {borrowing_id} is not rented out")
        self._get_or_raise("borrowings", borrowing_id).rental_id = None
        return self.return_rental(rental.id, now)

    def borrowing_repair(self, borrowing_id: str) -> Optional[Repair]:
        """The repair in progress of a borrowed object, direct or through its material."""
        borrowing = self._get_or_raise("borrowings", borrowing_id)
        repair = self._find(self.repairs, borrowing.repair_id) if borrowing.repair_id else None
        if repair is not None and repair.in_progress:
            return repair
        if borrowing.material_id is not None:
            return next((r for r in self.repairs
                         if r.material_id == borrowing.material_id and r.in_progress), None)
        return None

    def send_borrowing_to_repair(self, borrowing_id: str, repairer_id: str, description: str,
                                 planned_end: Optional[datetime] = None,
                                 estimated_cost: Optional[float] = None, notes: str = "",
                                 free_of_charge: bool = False,
                                 now: Optional[datetime] = None) -> Repair:
        borrowing = self._active_borrowing(borrowing_id)
        self._require_person(repairer_id)
        _require_name(description, "description")
        material = self.material_from_borrowing(
            borrowing_id, description="Objet emprunté - en réparation")
        repair = self._open_repair(
            material.id, repairer_id, description, planned_end, estimated_cost,
            notes or f"Réparation de l'emprunt : {borrowing.object_name}", free_of_charge, now)
        borrowing.repair_id = repair.id
        self.save("borrowings")
        return repair

    def return_borrowing_repair(self, borrowing_id: str, final_cost: Optional[float] = None,
                                now: Optional[datetime] = None) -> Repair:
        """Close the repair of a borrowed object; payment is flagged separately."""
        repair = self.borrowing_repair(borrowing_id)
        if repair is None:
            raise KeyError(f"Borrowing {borrowing_id} is not in repair")
        repair = self.return_repair(repair.id, final_cost, now=now)
        self._get_or_raise("borrowings", borrowing_id).repair_id = None
        self.save("borrowings")
        return repair

    def return_borrowing(self, borrowing_id: str, now: Optional[datetime] = None) -> None:
        """
        Give a borrowed object back to its lender.

        The material record created for it is deleted, so the object must
        not be lent, rented out or in repair any more.
        """
        borrowing = self._active_borrowing(borrowing_id)
        self._drop_linked_material(borrowing)
        borrowing.returned_on = _now(now)
        borrowing.loan_id = borrowing.rental_id = borrowing.repair_id = None
        self.save("borrowings")

    def active_borrowings(self) -> List[Borrowing]:
        return [b for b in self.borrowings if b.is_active]

    def late_borrowings(self, now: Optional[datetime] = None) -> List[Borrowing]:
        return [b for b in self.borrowings if b.is_late(now)]

    # ------------------------------------------------------------------
    # Accounting ledger
    # ------------------------------------------------------------------

    def add_operation(self, operation: AccountingOperation) -> None:
        self.operations.append(operation)
        self.save("operations")
        logger.info("Ledger: %s %.2f (%s)", operation.kind.value, operation.amount,
                    operation.description)

    def delete_operations(self, operation_ids: List[str]) -> None:
        ids = set(operation_ids)
        self.operations = [op for op in self.operations if op.id not in ids]
        self.save("operations")

    def operations_for(self, year: Optional[int] = None,
                       month: Optional[int] = None) -> List[AccountingOperation]:
        result = self.operations
        if year is not None:
            result = [op for op in result if op.year == year]
            if month is not None:
                result = [op for op in result if op.month == month]
        return sorted(result, key=lambda op: op.date, reverse=True)

    def total_income(self, operations: Optional[List[AccountingOperation]] = None) -> float:
        ops = self.operations if operations is None else operations
        return sum(op.amount for op in ops if op.kind.is_income)

    def total_expenses(self, operations: Optional[List[AccountingOperation]] = None) -> float:
        ops = self.operations if operations is None else operations
        return sum(op.amount for op in ops if not op.kind.is_income)

    def net_result(self, operations: Optional[List[AccountingOperation]] = None) -> float:
        return self.total_income(operations) - self.total_expenses(operations)

    def available_years(self) -> List[int]:
        return sorted({op.year for op in self.operations}, reverse=True)

    def available_months(self, year: int) -> List[int]:
        return sorted({op.month for op in self.operations if op.year == year}, reverse=True)

    # ------------------------------------------------------------------
    # Vault items
    # ------------------------------------------------------------------

    def _require_cipher(self):
        if self.cipher is None:
            raise RuntimeError("Vault attachments need a DocumentCipher")
        return self.cipher

    def _store_attachments(self, item: VaultItem, photo: Optional[bytes],
                           invoice: Optional[bytes], invoice_is_pdf: bool) -> None:
        if photo is not None:
            self._require_cipher().store_attachment(item.id, PHOTO, photo)
            item.has_photo = True
        if invoice is not None:
            self._require_cipher().store_attachment(item.id, INVOICE, invoice)
            item.has_invoice = True
            item.invoice_is_pdf = invoice_is_pdf

    def add_vault_item(self, item: VaultItem, photo: Optional[bytes] = None,
                       invoice: Optional[bytes] = None, invoice_is_pdf: bool = False) -> VaultItem:
        _require_name(item.name)
        _require_non_negative(item.estimated_value, "estimated_value")
        self._store_attachments(item, photo, invoice, invoice_is_pdf)
        self.vault_items.append(item)
        self.save("vault_items")
        return item

    def update_vault_item(self, item: VaultItem, photo: Optional[bytes] = None,
                          invoice: Optional[bytes] = None, invoice_is_pdf: bool = False) -> None:
        """Update the metadata; attachments passed in replace the stored ones."""
        _require_name(item.name)
        _require_non_negative(item.estimated_value, "estimated_value")
        self._store_attachments(item, photo, invoice, invoice_is_pdf)
        self._replace("vault_items", item)

    def delete_vault_item(self, item_id: str) -> None:
        if self.cipher is not None:
            self.cipher.remove_attachment(item_id, PHOTO)
            self.cipher.remove_attachment(item_id, INVOICE)
        self._remove("vault_items", item_id)

    def get_vault_item(self, item_id: str) -> Optional[VaultItem]:
        return self._find(self.vault_items, item_id)

    def vault_photo(self, item_id: str) -> Optional[bytes]:
        return self._require_cipher().load_attachment(item_id, PHOTO)

    def vault_invoice(self, item_id: str) -> Optional[bytes]:
        return self._require_cipher().load_attachment(item_id, INVOICE)

    def total_vault_value(self) -> float:
        return sum(item.estimated_value for item in self.vault_items)

    def vault_value_by_category(self) -> Dict[str, float]:
        """Estimated value per category, in the order of VAULT_CATEGORIES; empty ones are omitted."""
        totals: Dict[str, float] = {}
        for item in self.vault_items:
            category = item.category if item.category in VAULT_CATEGORIES else "Autre"
            totals[category] = totals.get(category, 0.0) + item.estimated_value
        return {c: totals[c] for c in VAULT_CATEGORIES if c in totals}

    def delete_all_vault_items(self) -> int:
        """
        Delete every vault item, its encrypted attachments and the document key.

        Irreversible.  Returns the number of items removed.
        """
        count = len(self.vault_items)
        if self.cipher is not None:
            for item in self.vault_items:
                self.cipher.remove_attachment(item.id, PHOTO)
                self.cipher.remove_attachment(item.id, INVOICE)
            self.cipher.forget_key()
        self.vault_items = []
        self.save("vault_items")
        logger.warning("Vault wiped: %d item(s) deleted", count)
        return count
