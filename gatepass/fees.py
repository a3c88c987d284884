"""
Fee calculator.

All amounts are integer minor units (pesewas, kobo, cents). Rates are
Decimal fractions (0.04 == 4%). Intermediate values stay exact Decimals;
rounding (half-up) happens once, when the figures that are submitted to
the gateway and written to the ledger are produced.

Customer-bears: the processor charges its rate on the gross amount, so
the charge is solved for directly:

    total = subtotal + platform_fee + total * processor_rate
    total = (subtotal + platform_fee) / (1 - processor_rate)

Organizer-bears: the customer pays the ticket price; both fees come out
of the organizer's share.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "0.04"))
PROCESSOR_FEE_PERCENT = Decimal(os.getenv("PROCESSOR_FEE_PERCENT", "0.0195"))

FEE_BEARERS = ("customer", "organizer")
DISCOUNT_TYPES = ("percentage", "fixed")

_ONE = Decimal("1")


@dataclass(frozen=True)
class FeeRates:
    platform: Decimal
    processor: Decimal

    def as_dict(self) -> dict:
        return {
            "platform_fee_percent": str(self.platform),
            "processor_fee_percent": str(self.processor),
        }


DEFAULT_RATES = FeeRates(PLATFORM_FEE_PERCENT, PROCESSOR_FEE_PERCENT)


@dataclass(frozen=True)
class FeeBreakdown:
    subtotal: int
    platform_fee: int
    processor_fee: int
    total_charge: int
    organizer_net: int
    fee_bearer: str
    rates: FeeRates


def as_rate(value: Any) -> Optional[Decimal]:
    """Parse a stored rate; None for missing, NaN or out-of-range values."""
    if value is None or isinstance(value, bool):
        return None
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not rate.is_finite() or rate < 0 or rate >= 1:
        return None
    return rate


def resolve_rates(
    global_rates: Optional[FeeRates] = None,
    event_override: Any = None,
    organizer_override: Any = None,
) -> FeeRates:
    """
    Platform rate precedence: event override > organizer override >
    global setting > default. Processor rate: global setting > default.
    """
    base = global_rates or DEFAULT_RATES
    platform = as_rate(event_override)
    if platform is None:
        platform = as_rate(organizer_override)
    if platform is None:
        platform = base.platform
    return FeeRates(platform=platform, processor=base.processor)


def round_minor(value: Decimal) -> int:
    return int(value.quantize(_ONE, rounding=ROUND_HALF_UP))


def discount_amount(
    subtotal_before_discount: int | Decimal,
    discount_type: Optional[str],
    value: Any,
) -> Decimal:
    """Discount in minor units, clamped to [0, subtotal]."""
    before = Decimal(subtotal_before_discount)
    if not discount_type or value is None:
        return Decimal(0)
    v = Decimal(str(value))
    if discount_type == "percentage":
        amount = before * v / Decimal(100)
    elif discount_type == "fixed":
        amount = v
    else:
        raise ValueError(f"unknown discount type: {discount_type}")
    if amount < 0:
        return Decimal(0)
    return min(amount, before)


def ticket_subtotal(
    unit_price: int,
    quantity: int,
    discount_type: Optional[str] = None,
    discount_value: Any = None,
) -> Decimal:
    before = Decimal(unit_price) * quantity
    return before - discount_amount(before, discount_type, discount_value)


def compute_fees(
    subtotal: int | Decimal,
    platform_rate: Decimal,
    processor_rate: Decimal,
    fee_bearer: str = "customer",
    addon_subtotal: int | Decimal = 0,
) -> FeeBreakdown:
    """
    Platform fee applies to ticket revenue (`subtotal`) only; the
    processor fee applies to everything the customer is charged.
    """
    if fee_bearer not in FEE_BEARERS:
        raise ValueError(f"unknown fee bearer: {fee_bearer}")
    platform_rate = Decimal(str(platform_rate))
    processor_rate = Decimal(str(processor_rate))
    if processor_rate >= 1:
        raise ValueError("processor rate must be below 1")

    tickets = Decimal(subtotal)
    base = tickets + Decimal(addon_subtotal)
    platform_exact = tickets * platform_rate

    base_minor = round_minor(base)
    platform_fee = round_minor(platform_exact)

    if fee_bearer == "customer":
        total_charge = round_minor(
            (base + platform_exact) / (_ONE - processor_rate)
        )
        processor_fee = total_charge - base_minor - platform_fee
        organizer_net = base_minor
    else:
        total_charge = base_minor
        processor_fee = round_minor(Decimal(total_charge) * processor_rate)
        organizer_net = total_charge - platform_fee - processor_fee

    return FeeBreakdown(
        subtotal=base_minor,
        platform_fee=platform_fee,
        processor_fee=processor_fee,
        total_charge=total_charge,
        organizer_net=organizer_net,
        fee_bearer=fee_bearer,
        rates=FeeRates(platform_rate, processor_rate),
    )
