# test_scripts/test_feasibility_checker.py

from __future__ import annotations

import pytest

from fest.schemas.solve import SolveRequest
from fest.services.optimization.feasibility_checker import FeasibilityChecker, InputError


def _codes(report):
    return set(report.error_codes())


def test_valid_request_has_no_errors(make_request, n_catalog):
    report = FeasibilityChecker().check(make_request(n_catalog))
    assert report.is_valid
    assert report.errors == []


def test_empty_target(make_request, n_catalog):
    report = FeasibilityChecker().check(make_request(n_catalog, target={}))
    assert _codes(report) == {"EMPTY_TARGET"}


def test_no_must_nutrient(make_request, n_catalog):
    report = FeasibilityChecker().check(make_request(n_catalog, must_flags={}))
    assert _codes(report) == {"NO_MUST_NUTRIENT"}


def test_must_target_below_one_kg(make_request, n_catalog):
    req = make_request(n_catalog, target={"N": 150, "S": 0.5}, must_flags={"must_n": True, "must_s": True})
    report = FeasibilityChecker().check(req)
    assert _codes(report) == {"MUST_TARGET_TOO_LOW"}
    assert report.errors[0].nutrient == "S"


def test_must_flag_without_target_is_rejected(make_request, n_catalog):
    req = make_request(n_catalog, must_flags={"must_n": True, "must_p": True})
    report = FeasibilityChecker().check(req)
    assert not report.is_valid
    assert _codes(report) == {"MUST_TARGET_TOO_LOW"}
    assert report.errors[0].nutrient == "P"
    assert report.errors[0].details["target"] == 0

    req = make_request(n_catalog, target={"N": 150, "K": 0}, must_flags={"must_n": True, "must_k": True})
    assert [e.nutrient for e in FeasibilityChecker().check(req).errors] == ["K"]


def test_required_count_exceeds_max_products(make_request, n_catalog):
    req = make_request(n_catalog, max_products=2, required_product_ids=["AN_34", "CAN_27", "AS_21"])
    report = FeasibilityChecker().check(req)
    assert "TOO_MANY_REQUIRED" in _codes(report)


def test_required_excluded_overlap(make_request, n_catalog):
    req = make_request(n_catalog, required_product_ids=["CAN_27"], excluded_product_ids=["CAN_27", "AS_21"])
    report = FeasibilityChecker().check(req)
    assert _codes(report) == {"REQUIRED_EXCLUDED_OVERLAP"}
    assert report.errors[0].product_ids == ["CAN_27"]


def test_inverted_dose_bounds(make_request, n_catalog):
    report = FeasibilityChecker().check(make_request(n_catalog, min_dose_kg_ha=700, max_dose_kg_ha=600))
    assert _codes(report) == {"INVERTED_DOSE_BOUNDS"}


def test_required_must_be_eligible(make_request, n_catalog, make_product):
    catalog = n_catalog + [make_product("OLD_NPK", 3.0, active=False, N=20, P=5, K=5)]
    req = make_request(catalog, required_product_ids=["OLD_NPK", "GHOST"])
    report = FeasibilityChecker().check(req)
    assert _codes(report) == {"REQUIRED_NOT_IN_CATALOG"}
    assert report.errors[0].product_ids == ["GHOST", "OLD_NPK"]


def test_unknown_excluded_id_is_a_warning(make_request, n_catalog):
    report = FeasibilityChecker().check(make_request(n_catalog, excluded_product_ids=["GHOST"]))
    assert report.is_valid
    assert [w.code for w in report.warnings] == ["EXCLUDED_NOT_IN_CATALOG"]


def test_duplicate_catalog_ids(make_request, n_catalog, make_product):
    catalog = n_catalog + [make_product("CAN_27", 4.0, N=27)]
    report = FeasibilityChecker().check(make_request(catalog))
    assert _codes(report) == {"DUPLICATE_PRODUCT_ID"}


def test_all_issues_are_collected_and_raised_together(make_request, n_catalog):
    req = make_request(
        n_catalog,
        target={},
        min_dose_kg_ha=700,
        max_dose_kg_ha=600,
        required_product_ids=["CAN_27"],
        excluded_product_ids=["CAN_27"],
    )
    with pytest.raises(InputError) as exc:
        FeasibilityChecker().ensure_valid(req)
    assert set(exc.value.report.error_codes()) == {"EMPTY_TARGET", "INVERTED_DOSE_BOUNDS", "REQUIRED_EXCLUDED_OVERLAP"}


def test_request_id_lists_are_cleaned():
    req = SolveRequest.model_validate(
        {"requiredProductIds": [" A ", "A", "", "B"], "excludedProductIds": ["C", "C"]}
    )
    assert req.required_product_ids == ["A", "B"]
    assert req.excluded_product_ids == ["C"]
