from datetime import datetime, timedelta

import pytest

from models import (
    Article,
    Borrowing,
    CommerceTransaction,
    DiscountKind,
    MyRental,
    OperationKind,
    PaymentDue,
    Person,
    Rental,
    Repair,
    TariffKind,
    TaxRate,
    TransactionKind,
)

NOW = datetime(2024, 5, 15, 12, 0)


def test_article_prices_and_margin():
    article = Article(name="Lampe", purchase_price_ht=40.0, sale_price_ht=50.0)
    assert article.sale_price_ttc == 60.0
    assert article.purchase_price_ttc == 48.0
    assert article.margin_ht == 10.0
    assert article.margin_percent == pytest.approx(25.0)


def test_transaction_amounts():
    t = CommerceTransaction(kind=TransactionKind.SALE, article_name="Mug", unit_price_ht=10.0,
                            quantity=3, discount_kind=DiscountKind.PERCENTAGE, discount_value=10)
    assert t.total_incl_tax == pytest.approx(32.40)
    assert t.total_excl_tax == pytest.approx(27.00)
    assert t.total_tax == pytest.approx(5.40)


def test_transaction_by_weight_uses_weight():
    t = CommerceTransaction(kind=TransactionKind.SALE, article_name="Café", unit_price_ht=20.0,
                            weight=0.5, sold_by_weight=True, tax_rate=TaxRate.ZERO)
    assert t.quantity_or_weight == 0.5
    assert t.total_incl_tax == 10.0


def test_transaction_payment_status():
    t = CommerceTransaction(kind=TransactionKind.SALE, article_name="Mug", unit_price_ht=1.0,
                            quantity=1, paid=False, due_date=NOW + timedelta(days=2))
    assert t.payment_status(NOW) is PaymentDue.FUTURE
    assert t.payment_due_soon(NOW)
    assert not t.payment_late(NOW)
    assert t.payment_late(NOW + timedelta(days=3))


def test_rental_actual_price_while_out():
    start = datetime(2024, 5, 10, 8, 0)
    rental = Rental(material_id="m", renter_id="p", start=start, end=start + timedelta(days=14),
                    total_price=0.0, tariff=TariffKind.WEEK, unit_price=50.0)
    assert rental.planned_days == 15
    assert rental.effective_price == 150.0
    assert rental.actual_days(NOW) == 6
    assert rental.actual_price(NOW) == 50.0
    assert not rental.is_late(NOW)


def test_my_rental_deposit_states():
    rental = MyRental(object_name="Remorque", owner_id="p", start=NOW, end=NOW,
                      total_price=10.0, deposit=100.0, deposit_recovered=40.0)
    assert rental.deposit_partially_recovered
    assert rental.deposit_outstanding == 60.0
    assert not rental.deposit_settled


def test_repair_cost_and_lateness():
    repair = Repair(material_id="m", repairer_id="p", description="Lame", start=NOW - timedelta(days=4),
                    planned_end=NOW - timedelta(days=1), estimated_cost=20.0)
    assert repair.cost == 20.0
    assert repair.is_late(NOW)
    assert repair.days_in_repair(NOW) == 5
    repair.final_cost = 25.0
    assert repair.cost == 25.0


def test_person_full_name():
    assert Person(last_name="Durand").full_name == "Durand"
    assert Person(last_name="Durand", first_name="Léa").full_name == "Léa Durand"


def test_operation_kinds():
    assert OperationKind.RENTAL_INCOME.is_income
    assert OperationKind.DEPOSIT_RETAINED.is_income
    assert not OperationKind.REPAIR_EXPENSE.is_income
    assert not OperationKind.MY_RENTAL_EXPENSE.is_income
    assert not OperationKind.DEPOSIT_LOST.is_income


def test_borrowing_lateness():
    borrowing = Borrowing(object_name="Scie", lender_id="p1", start=NOW - timedelta(days=5),
                          end=NOW - timedelta(days=2))
    assert borrowing.is_active and borrowing.is_late(NOW)
    assert borrowing.days_late(NOW) == 2
    borrowing.returned_on = NOW
    assert borrowing.is_returned and not borrowing.is_late(NOW)
    assert borrowing.days_late(NOW) == 0
