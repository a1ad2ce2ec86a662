from datetime import date, datetime

import pytest

import pricing
from pricing import DiscountKind, PaymentDue, TariffKind, TaxRate


def test_round2_half_away_from_zero():
    assert pricing.round2(0.125) == 0.13
    assert pricing.round2(-0.125) == -0.13
    assert pricing.round2(1.0) == 1.0


def test_round2_uses_binary_value():
    # 2.675 * 100 is exactly 267.5 in binary, so it rounds up;
    # 1.005 * 100 is 100.49999999999999, just below the half.
    assert pricing.round2(2.675) == 2.68
    assert pricing.round2(1.005) == 1.0


def test_tax_rates():
    assert TaxRate.ZERO.rate == 0.0
    assert TaxRate.REDUCED.rate == pytest.approx(0.055)
    assert TaxRate.INTERMEDIATE.rate == pytest.approx(0.10)
    assert TaxRate.STANDARD.rate == pytest.approx(0.20)
    assert TaxRate("20%") is TaxRate.STANDARD


def test_transaction_without_discount():
    amounts = pricing.compute_transaction(10.0, 3, TaxRate.STANDARD)
    assert amounts.gross_excl_tax == 30.0
    assert amounts.tax == 6.0
    assert amounts.gross_incl_tax == 36.0
    assert amounts.discount == 0.0
    assert amounts.net_incl_tax == 36.0
    assert amounts.net_excl_tax == 30.0
    assert amounts.net_tax == 6.0


def test_transaction_with_percentage_discount():
    amounts = pricing.compute_transaction(10.0, 3, TaxRate.STANDARD, DiscountKind.PERCENTAGE, 10)
    assert amounts.discount == pytest.approx(3.60)
    assert amounts.net_incl_tax == pytest.approx(32.40)
    assert amounts.net_excl_tax == pytest.approx(27.00)
    assert amounts.net_tax == pytest.approx(5.40)


def test_fixed_discount_is_clamped_to_total():
    amounts = pricing.compute_transaction(10.0, 3, TaxRate.STANDARD, DiscountKind.FIXED, 50)
    assert amounts.discount == 36.0
    assert amounts.net_incl_tax == 0.0
    assert amounts.net_excl_tax == 0.0


def test_fixed_discount_below_total():
    assert pricing.discount_amount(36.0, DiscountKind.FIXED, 6.0) == 6.0
    assert pricing.net_incl_tax(36.0, 6.0) == 30.0


def test_sale_by_weight():
    amounts = pricing.compute_transaction(12.5, 0.4, TaxRate.STANDARD)
    assert amounts.gross_excl_tax == 5.0
    assert amounts.tax == 1.0
    assert amounts.gross_incl_tax == 6.0


def test_margin_percent_undefined_without_purchase_price():
    assert pricing.margin_percent(50.0, 0.0) is None
    assert pricing.margin_percent(120.0, 100.0) == pytest.approx(20.0)
    assert pricing.article_margin_percent(50.0, 0.0) == 0.0


def test_price_incl_tax():
    assert pricing.price_incl_tax(10.0, TaxRate.STANDARD) == 12.0
    assert pricing.price_incl_tax(10.0, TaxRate.REDUCED) == pytest.approx(10.55)


def test_deposit_partially_retained():
    assert pricing.deposit_returned(200.0, 50.0) == 150.0
    assert pricing.deposit_returned(200.0, 0.0) == 200.0
    assert pricing.deposit_returned(200.0, 200.0) == 0.0


@pytest.mark.parametrize("retained", [250.0, -1.0])
def test_deposit_retention_outside_range_is_rejected(retained):
    with pytest.raises(ValueError):
        pricing.deposit_returned(200.0, retained)


def test_deposit_outstanding_never_negative():
    assert pricing.deposit_outstanding(100.0, 30.0, 20.0) == 50.0
    assert pricing.deposit_outstanding(100.0, 80.0, 40.0) == 0.0


def test_duration_days():
    start = datetime(2024, 5, 1, 10, 0)
    assert pricing.duration_days(start, datetime(2024, 5, 1, 18, 0)) == 1
    assert pricing.duration_days(start, datetime(2024, 5, 3, 10, 0)) == 3
    # Returned before it started still bills one day.
    assert pricing.duration_days(start, datetime(2024, 4, 30)) == 1


@pytest.mark.parametrize("kind, days, units", [
    (TariffKind.DAY, 5, 5),
    (TariffKind.WEEK, 7, 1),
    (TariffKind.WEEK, 8, 2),
    (TariffKind.MONTH, 1, 1),
    (TariffKind.MONTH, 31, 2),
    (TariffKind.FLAT, 40, 1),
])
def test_billing_units(kind, days, units):
    assert pricing.billing_units(kind, days) == units


def test_rental_price():
    assert pricing.rental_price(TariffKind.DAY, 15.0, 4, 0.0) == 60.0
    assert pricing.rental_price(TariffKind.WEEK, 80.0, 10, 0.0) == 160.0
    assert pricing.rental_price(TariffKind.FLAT, 15.0, 10, 99.0) == 99.0


def test_days_late():
    due = datetime(2024, 5, 10, 12, 0)
    assert pricing.days_late(due, datetime(2024, 5, 9)) == 0
    assert pricing.days_late(due, datetime(2024, 5, 13, 12, 0)) == 3


def test_is_due_soon():
    now = datetime(2024, 5, 15, 9, 0)
    assert pricing.is_due_soon(datetime(2024, 5, 17), now)
    assert not pricing.is_due_soon(datetime(2024, 5, 20), now)
    assert not pricing.is_due_soon(datetime(2024, 5, 14), now)


class TestClassifyPayment:
    now = datetime(2024, 5, 15, 14, 30)

    def test_paid_or_without_due_date(self):
        assert pricing.classify_payment(True, datetime(2024, 5, 1), self.now) is None
        assert pricing.classify_payment(False, None, self.now) is None

    def test_overdue(self):
        assert pricing.classify_payment(False, datetime(2024, 5, 14, 23, 0), self.now) is PaymentDue.OVERDUE

    def test_midnight_today_counts_as_overdue(self):
        assert pricing.classify_payment(False, datetime(2024, 5, 15), self.now) is PaymentDue.OVERDUE
        assert pricing.classify_payment(False, date(2024, 5, 15), self.now) is PaymentDue.OVERDUE

    def test_due_later_today(self):
        assert pricing.classify_payment(False, datetime(2024, 5, 15, 18, 0), self.now) is PaymentDue.DUE_TODAY

    def test_future(self):
        assert pricing.classify_payment(False, datetime(2024, 5, 16, 8, 0), self.now) is PaymentDue.FUTURE


# Unit prices include values sitting on or next to a half cent.
SWEEP_PRICES = [0.0, 0.005, 0.015, 0.125, 1.005, 2.675, 9.995, 19.99, 123.45]
# Unit quantities and weights in kg.
SWEEP_AMOUNTS = [1, 3, 7, 0.125, 1.5, 2.333]


def _is_cents(value):
    return round(value, 2) == value


@pytest.mark.parametrize("rate", list(TaxRate))
@pytest.mark.parametrize("amount", SWEEP_AMOUNTS)
@pytest.mark.parametrize("price", SWEEP_PRICES)
class TestTransactionSweep:

    def test_gross_amounts_follow_the_formula(self, price, amount, rate):
        amounts = pricing.compute_transaction(price, amount, rate)
        gross_ht = pricing.round2(price * amount)
        tax = pricing.round2(gross_ht * rate.rate)
        assert amounts.gross_excl_tax == gross_ht
        assert amounts.tax == tax
        assert amounts.gross_incl_tax == pricing.round2(gross_ht + tax)
        assert all(_is_cents(v) for v in vars(amounts).values())

    def test_no_discount_keeps_gross(self, price, amount, rate):
        amounts = pricing.compute_transaction(price, amount, rate)
        assert amounts.discount == 0.0
        assert amounts.net_incl_tax == amounts.gross_incl_tax
        assert amounts.net_excl_tax == pricing.round2(amounts.gross_incl_tax / (1 + rate.rate))
        assert amounts.net_tax == pricing.round2(amounts.net_incl_tax - amounts.net_excl_tax)

    @pytest.mark.parametrize("fixed", [0.01, 5.0, 1000.0])
    def test_fixed_discount_never_exceeds_gross(self, price, amount, rate, fixed):
        amounts = pricing.compute_transaction(price, amount, rate, DiscountKind.FIXED, fixed)
        assert amounts.discount == min(fixed, amounts.gross_incl_tax)
        assert amounts.discount <= amounts.gross_incl_tax
        assert amounts.net_incl_tax >= 0.0
        assert amounts.net_incl_tax == pricing.round2(amounts.gross_incl_tax - amounts.discount)

    @pytest.mark.parametrize("percent", [0, 12.5, 33, 100])
    def test_percentage_discount(self, price, amount, rate, percent):
        amounts = pricing.compute_transaction(price, amount, rate, DiscountKind.PERCENTAGE, percent)
        assert amounts.discount == pricing.round2(amounts.gross_incl_tax * (percent / 100))
        assert 0.0 <= amounts.net_incl_tax <= amounts.gross_incl_tax
