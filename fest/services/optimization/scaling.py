# fest/services/optimization/scaling.py
"""
Fixed-point conversion layer.

Scale-in happens in the problem builder, scale-out in the result mapper.
Nothing else converts between domain floats and solver integers.

Units:
- nutrient content: thousandths of a percent (15.5 % -> 15500)
- price: minor currency unit, öre (4.25 SEK/kg -> 425)
- dose: whole kg/ha (already integer)
- supply: x_i * content_i is in kg * SUPPLY_SCALE (100 for percent, 1000 for the fraction digits)
- cost: x_i * price_i is in öre
"""
from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional

NUTRIENT_SCALE = 1000
PRICE_SCALE = 100
SUPPLY_SCALE = 100 * NUTRIENT_SCALE


def _dec(value: float) -> Decimal:
    # str() keeps the shortest repr so 0.1 stays 0.1 instead of 0.1000000000000000055...
    return Decimal(str(value))


def _scaled_int(value: float, scale: int) -> int:
    """
    Convert float to scaled integer (deterministic half-up rounding).

    Args:
        value: Float value to scale
        scale: Scale factor (e.g., 1000 for 3 decimal places)

    Returns:
        Scaled integer value
    """
    return int((_dec(value) * scale).to_integral_value(rounding=ROUND_HALF_UP))


def scale_percent(pct: float) -> int:
    """Nutrient percent -> thousandths of a percent."""
    return _scaled_int(pct, NUTRIENT_SCALE)


def scale_price(price_per_kg: float) -> int:
    """SEK/kg -> öre/kg."""
    return _scaled_int(price_per_kg, PRICE_SCALE)


def supply_lower_bound(target_kg: float, under_pct: float) -> int:
    """
    Smallest scaled supply inside target * (1 - under/100).
    Rounded up so an integer solution never undershoots the unscaled band.
    """
    exact = _dec(target_kg) * (Decimal(100) - _dec(under_pct)) / Decimal(100) * SUPPLY_SCALE
    return max(0, int(exact.to_integral_value(rounding=ROUND_CEILING)))


def supply_upper_bound(target_kg: float, over_pct: float) -> int:
    """
    Largest scaled supply inside target * (1 + over/100).
    Rounded down so an integer solution never overshoots the unscaled band.
    """
    exact = _dec(target_kg) * (Decimal(100) + _dec(over_pct)) / Decimal(100) * SUPPLY_SCALE
    return int(exact.to_integral_value(rounding=ROUND_FLOOR))


def supply_cap(target_kg: float, max_pct: float) -> int:
    """Scaled supply at max_pct percent of target, rounded down."""
    exact = _dec(target_kg) * _dec(max_pct) / Decimal(100) * SUPPLY_SCALE
    return int(exact.to_integral_value(rounding=ROUND_FLOOR))


def unscale_supply(scaled: int, ndigits: int = 2) -> float:
    """Scaled supply -> kg/ha."""
    return round(float(Decimal(scaled) / SUPPLY_SCALE), ndigits)


def unscale_cost(minor_units: int, ndigits: int = 2) -> float:
    """öre -> SEK."""
    return round(float(Decimal(minor_units) / PRICE_SCALE), ndigits)


def percent_of_target(achieved_kg: float, target_kg: float) -> Optional[float]:
    """Achieved share of target in percent with one decimal, None when target is 0."""
    if target_kg <= 0:
        return None
    return round(achieved_kg / target_kg * 100, 1)
