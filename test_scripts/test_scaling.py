# test_scripts/test_scaling.py

from __future__ import annotations

from fest.services.optimization.scaling import (
    SUPPLY_SCALE,
    percent_of_target,
    scale_percent,
    scale_price,
    supply_cap,
    supply_lower_bound,
    supply_upper_bound,
    unscale_cost,
    unscale_supply,
)


def test_percent_and_price_are_exact_fixed_point():
    assert scale_percent(15.5) == 15500
    assert scale_percent(0.1) == 100
    assert scale_percent(34.4) == 34400
    assert scale_price(4.25) == 425
    assert scale_price(5.1) == 510
    # 0.285 is 0.28499999... as a binary float; decimal conversion keeps it half-up
    assert scale_price(0.285) == 29


def test_band_bounds_round_inward():
    assert supply_lower_bound(150, 0) == 150 * SUPPLY_SCALE
    assert supply_upper_bound(150, 2) == 153 * SUPPLY_SCALE
    assert supply_lower_bound(100, 10) == 90 * SUPPLY_SCALE
    assert supply_upper_bound(100, 50) == 150 * SUPPLY_SCALE

    # 0.000013 kg -> 1.3 scaled units: lower rounds up, upper rounds down
    assert supply_lower_bound(0.000013, 0) == 2
    assert supply_upper_bound(0.000013, 0) == 1


def test_soft_cap_rounds_down():
    assert supply_cap(20, 200) == 40 * SUPPLY_SCALE
    assert supply_cap(0.000013, 100) == 1


def test_unscale_back_to_domain_units():
    # 556 kg of a 27 % product
    assert unscale_supply(556 * 27000) == 150.12
    assert unscale_cost(556 * 425) == 2363.0
    assert unscale_cost(1) == 0.01


def test_percent_of_target():
    assert percent_of_target(150.12, 150) == 100.1
    assert percent_of_target(0, 40) == 0.0
    assert percent_of_target(12.0, 0) is None
