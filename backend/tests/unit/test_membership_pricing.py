from datetime import date

import pytest

from app.domain.membership import pricing
from app.domain.workshops.exceptions import ValidationError


def test_apply_discount_rounds_half_up():
    assert pricing.apply_discount(1000, 15) == 850
    assert pricing.apply_discount(999, 50) == 499
    assert pricing.apply_discount(1500, 0) == 1500
    assert pricing.apply_discount(1500, 100) == 0


@pytest.mark.parametrize("percentage", [-1, 101])
def test_apply_discount_rejects_out_of_range(percentage):
    with pytest.raises(ValidationError):
        pricing.apply_discount(1000, percentage)


def test_discount_percentage():
    assert pricing.discount_percentage(1000, 850) == 15
    assert pricing.discount_percentage(3000, 2000) == 33
    assert pricing.discount_percentage(0, 0) == 0
    assert pricing.discount_percentage(1000, 1000) == 0


def test_next_monthly_billing_date_rolls_over_year():
    assert pricing.next_monthly_billing_date(date(2026, 3, 31)) == date(2026, 4, 1)
    assert pricing.next_monthly_billing_date(date(2026, 12, 15)) == date(2027, 1, 1)


def test_next_annual_billing_date_is_seventh_of_january():
    assert pricing.next_annual_billing_date(date(2026, 3, 1)) == date(2027, 1, 7)
    assert pricing.next_annual_billing_date(date(2026, 12, 31)) == date(2027, 1, 7)


def test_prorate_remaining_share():
    start, end = date(2026, 4, 1), date(2026, 5, 1)
    assert pricing.prorate(3000, start, end, date(2026, 4, 16)) == 1500
    assert pricing.prorate(3000, start, end, date(2026, 4, 1)) == 3000
    assert pricing.prorate(3000, start, end, date(2026, 3, 20)) == 3000
    assert pricing.prorate(3000, start, end, date(2026, 5, 2)) == 0
    assert pricing.prorate(3000, end, start, date(2026, 4, 16)) == 0


def test_quote_without_discount():
    quote = pricing.quote(1500, 4500, date(2026, 4, 16))

    assert quote.monthly_fee == 1500
    assert quote.discounted_monthly_fee == 1500
    assert quote.prorated_monthly == 750
    assert quote.prorated_annual == 3279
    assert quote.prorated_total == 750 + 3279
    assert quote.discount_percentage == 0
    assert quote.next_monthly_billing_date == date(2026, 5, 1)
    assert quote.next_annual_billing_date == date(2027, 1, 7)


def test_quote_prorates_discounted_fees():
    today = date(2026, 4, 16)
    quote = pricing.quote(2000, 5000, today, 20)

    assert quote.discounted_monthly_fee == 1600
    assert quote.discounted_annual_fee == 4000
    assert quote.discount_percentage == 20
    assert quote.prorated_monthly == pricing.prorate(1600, date(2026, 4, 1), date(2026, 5, 1), today)
    assert quote.prorated_annual == pricing.prorate(4000, date(2026, 1, 7), date(2027, 1, 7), today)
