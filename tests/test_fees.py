from decimal import Decimal

import pytest

from gatepass.fees import (
    FeeRates, compute_fees, discount_amount, resolve_rates, round_minor,
    ticket_subtotal,
)
from gatepass.model.ledger import fee_rates_from_setting

PLATFORM = Decimal("0.04")
PROCESSOR = Decimal("0.0195")


def test_customer_bears_fees_solves_for_charge():
    f = compute_fees(10000, PLATFORM, PROCESSOR, "customer")
    assert f.platform_fee == 400
    assert f.total_charge == 10607
    assert f.processor_fee == 207
    assert f.subtotal + f.platform_fee + f.processor_fee == f.total_charge
    assert f.organizer_net == 10000
    # processor fee is the rate applied to what the customer pays
    assert abs(f.total_charge * PROCESSOR - f.processor_fee) < 1


def test_organizer_bears_fees():
    f = compute_fees(10000, PLATFORM, PROCESSOR, "organizer")
    assert f.total_charge == 10000
    assert f.platform_fee == 400
    assert f.processor_fee == 195
    assert f.organizer_net == 10000 - 400 - 195


def test_rates_are_carried_on_breakdown():
    f = compute_fees(5000, PLATFORM, PROCESSOR)
    assert f.rates == FeeRates(PLATFORM, PROCESSOR)
    assert f.fee_bearer == "customer"


def test_addons_pay_processor_fee_but_not_platform_fee():
    f = compute_fees(10000, PLATFORM, PROCESSOR, "customer",
                     addon_subtotal=2000)
    assert f.subtotal == 12000
    assert f.platform_fee == 400
    assert f.total_charge == 12647
    assert f.processor_fee == 247


def test_unknown_fee_bearer_rejected():
    with pytest.raises(ValueError):
        compute_fees(10000, PLATFORM, PROCESSOR, "nobody")


def test_round_half_up():
    assert round_minor(Decimal("10.5")) == 11
    assert round_minor(Decimal("10.49")) == 10


@pytest.mark.parametrize("value,expected", [
    ("1000", Decimal(4000)),
    ("20000", Decimal(0)),
])
def test_fixed_discount_clamped(value, expected):
    assert ticket_subtotal(5000, 1, "fixed", value) == expected


def test_percentage_discount():
    assert ticket_subtotal(5000, 2, "percentage", "10") == Decimal(9000)


def test_discount_never_negative():
    assert discount_amount(5000, "fixed", "-300") == Decimal(0)
    assert discount_amount(5000, None, "300") == Decimal(0)


def test_rate_precedence_event_then_organizer_then_global():
    global_rates = FeeRates(Decimal("0.05"), Decimal("0.02"))
    assert resolve_rates(global_rates) == global_rates
    assert resolve_rates(global_rates, None, "0.03").platform == Decimal("0.03")
    assert resolve_rates(global_rates, "0.01", "0.03").platform == Decimal("0.01")
    # processor rate is never overridden per event
    assert resolve_rates(global_rates, "0.01").processor == Decimal("0.02")


def test_invalid_override_falls_through():
    global_rates = FeeRates(Decimal("0.05"), Decimal("0.02"))
    assert resolve_rates(global_rates, "1.5", "abc").platform == Decimal("0.05")


def test_settings_row_parsing():
    rates = fee_rates_from_setting(
        '{"platform_fee_percent": "0.05", "processor_fee_percent": 0.02}'
    )
    assert rates.platform == Decimal("0.05")
    assert rates.processor == Decimal("0.02")
    defaults = fee_rates_from_setting(None)
    assert defaults.platform == Decimal("0.04")
