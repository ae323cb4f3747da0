from decimal import Decimal

import pytest

from settlement.commission import CommissionCalculator
from settlement.errors import ValidationError


@pytest.fixture
def calculator():
    return CommissionCalculator(Decimal("10"))


def test_rate_resolution_prefers_seller_then_category_then_default(calculator):
    assert calculator.resolve_rate(Decimal("7.5"), Decimal("15")) == Decimal("7.5")
    assert calculator.resolve_rate(None, Decimal("15")) == Decimal("15")
    assert calculator.resolve_rate(None, None) == Decimal("10")


def test_zero_seller_rate_is_a_configured_rate(calculator):
    assert calculator.resolve_rate(Decimal("0"), Decimal("15")) == Decimal("0")


def test_default_rate_is_injected():
    assert CommissionCalculator(Decimal("12")).resolve_rate() == Decimal("12")


def test_split_rounds_commission_half_up(calculator):
    split = calculator.split(12345, Decimal("10"))
    assert split.commission == 1235          # 1234.5 -> 1235
    assert split.seller_earnings == 11110


@pytest.mark.parametrize("line_total,rate", [
    (10000, "10"), (9999, "12.5"), (1, "33.33"), (0, "10"), (777777, "0"), (5000, "100"),
])
def test_commission_and_earnings_add_up_to_line_total(calculator, line_total, rate):
    split = calculator.split(line_total, Decimal(rate))
    assert split.commission + split.seller_earnings == line_total


@pytest.mark.parametrize("bad_rate", ["-1", "100.01"])
def test_out_of_range_rates_are_rejected(calculator, bad_rate):
    with pytest.raises(ValidationError):
        calculator.split(1000, Decimal(bad_rate))


def test_out_of_range_default_is_rejected():
    with pytest.raises(ValidationError):
        CommissionCalculator(Decimal("150"))
