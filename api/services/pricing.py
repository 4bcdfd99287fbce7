"""
Pricing Engine — per-occurrence price and commission split.

Revenue model:
  1. Slot price: price_per_unit × billing units × dogs
     (billing unit = 30 min for 30-minute fields, 1 hour otherwise)
  2. Platform commission: fixed fraction of the slot price
  3. Field owner payout: remainder after commission
"""

from dataclasses import dataclass

from config import settings


# ── Constants ──────────────────────────────────────────────

BILLING_UNIT_MINUTES = {
    "30min": 30,
    "60min": 60,
}

DEFAULT_COMMISSION_RATE = 0.20  # 20% platform fee


# ── Data classes ───────────────────────────────────────────

@dataclass
class PriceBreakdown:
    duration_min: int
    billing_units: float
    price_per_unit: float
    number_of_dogs: int
    total_price: float
    commission_rate: float
    platform_commission: float
    field_owner_amount: float


# ── Core Functions ─────────────────────────────────────────

def commission_split(total: float, rate: float | None = None) -> tuple[float, float]:
    """
    Split a price into (platform_commission, field_owner_amount).

    The owner amount is derived as the remainder so the two parts always
    add back up to the total.
    """
    if rate is None:
        rate = settings.platform_commission_rate
    platform = round(total * rate, 2)
    return platform, round(total - platform, 2)


def calculate_slot_price(
    price_per_unit: float,
    booking_duration: str,
    start_minute: int,
    end_minute: int,
    number_of_dogs: int,
    commission_rate: float | None = None,
) -> PriceBreakdown:
    """
    Calculate the price of one booked slot.

    Args:
        price_per_unit: Field rate per billing unit per dog
        booking_duration: "30min" or "60min" field session length
        start_minute: Slot start, minutes since midnight
        end_minute: Slot end (full session, no display buffer)
        number_of_dogs: Dogs on the booking

    Returns:
        PriceBreakdown; total_price is 0 for an empty or inverted window
    """
    if commission_rate is None:
        commission_rate = settings.platform_commission_rate

    duration_min = max(end_minute - start_minute, 0)
    unit_minutes = BILLING_UNIT_MINUTES.get(booking_duration, 60)
    billing_units = duration_min / unit_minutes

    total = round(float(price_per_unit) * billing_units * number_of_dogs, 2)
    platform, owner = commission_split(total, commission_rate)

    return PriceBreakdown(
        duration_min=duration_min,
        billing_units=billing_units,
        price_per_unit=float(price_per_unit),
        number_of_dogs=number_of_dogs,
        total_price=total,
        commission_rate=commission_rate,
        platform_commission=platform,
        field_owner_amount=owner,
    )
