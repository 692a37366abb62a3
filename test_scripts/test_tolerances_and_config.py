# test_scripts/test_tolerances_and_config.py

from __future__ import annotations

import json
import logging

import pytest

from fest.config import CustomJsonFormatter, Settings, ToleranceSetting, resolve_log_level, setup_json_logging
from fest.schemas.fertilizer import ToleranceBand
from fest.services.optimization.tolerance_resolver import FALLBACK_BAND, resolve_tolerances


def test_defaults_from_settings():
    bands = resolve_tolerances({}, Settings().DEFAULT_TOLERANCES)
    assert (bands["N"].under_pct, bands["N"].over_pct) == (0, 2)
    for k in ("P", "K", "S"):
        assert (bands[k].under_pct, bands[k].over_pct) == (10, 50)
        assert bands[k].soft_max_pct is None


def test_request_overrides_win_and_keys_are_case_insensitive():
    defaults = {"N": ToleranceSetting(under_pct=0, over_pct=2), "default": ToleranceSetting(under_pct=10, over_pct=50)}
    overrides = {
        "n": ToleranceBand(under_pct=1, over_pct=3),
        "Default": ToleranceBand(under_pct=5, over_pct=20, soft_max_pct=300),
        "Mg": ToleranceBand(under_pct=0, over_pct=0),
    }
    bands = resolve_tolerances(overrides, defaults)

    assert (bands["N"].under_pct, bands["N"].over_pct) == (1, 3)
    # request "default" beats settings for every nutrient not named explicitly
    assert (bands["P"].under_pct, bands["P"].over_pct, bands["P"].soft_max_pct) == (5, 20, 300)
    assert set(bands) == {"N", "P", "K", "S"}


def test_fallback_when_settings_are_empty():
    bands = resolve_tolerances(None, None)
    assert all(b == FALLBACK_BAND for b in bands.values())


def test_tolerance_band_accepts_camel_case():
    band = ToleranceBand.model_validate({"underPct": 10, "overPct": 40, "softMaxPct": 180})
    assert band.under_pct == 10 and band.over_pct == 40 and band.soft_max_pct == 180


def test_tolerance_config_file_merges_over_defaults(tmp_path):
    cfg_file = tmp_path / "tolerances.json"
    cfg_file.write_text(json.dumps({"N": {"under_pct": 0, "over_pct": 5}, "S": {"under_pct": 20, "over_pct": 80}}))

    s = Settings(TOLERANCE_CONFIG_FILE=str(cfg_file))

    assert s.DEFAULT_TOLERANCES["N"].over_pct == 5
    assert s.DEFAULT_TOLERANCES["S"].under_pct == 20
    # untouched entries keep their defaults
    assert s.DEFAULT_TOLERANCES["P"].over_pct == 50


def test_tolerance_config_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        Settings(TOLERANCE_CONFIG_FILE=str(tmp_path / "nope.json"))


def test_start_method_is_validated():
    assert Settings(SOLVER_START_METHOD=" Fork ").SOLVER_START_METHOD == "fork"
    with pytest.raises(ValueError):
        Settings(SOLVER_START_METHOD="threads")


def test_resolve_log_level():
    assert resolve_log_level("debug") == logging.DEBUG
    assert resolve_log_level("nonsense") == logging.INFO


def test_json_formatter_drops_missing_fields():
    fmt = CustomJsonFormatter("%(levelname)s %(name)s %(message)s %(request_id)s %(slot)s")
    record = logging.LogRecord("fest.test", logging.INFO, __file__, 1, "solver_pool.started", None, None)
    record.slot = 1

    out = json.loads(fmt.format(record))

    assert out["message"] == "solver_pool.started"
    assert out["slot"] == 1
    assert "request_id" not in out


def test_json_logging_carries_domain_fields():
    setup_json_logging(logging.INFO)
    fmt = logging.getLogger("fest").handlers[0].formatter
    record = logging.LogRecord("fest.test", logging.DEBUG, __file__, 1, "podium.candidate", None, None)
    record.count = 2
    record.cost_minor = 222870
    record.dropped = {"inactive": 1}

    out = json.loads(fmt.format(record))

    assert out["count"] == 2
    assert out["cost_minor"] == 222870
    assert out["dropped"] == {"inactive": 1}
    assert "total" not in out
    assert "objective" not in out
