# test_scripts/test_optimization_engine.py
"""
End-to-end engine runs against an in-process CP-SAT pool.
"""
from __future__ import annotations

import asyncio

from fest.config import Settings
from fest.schemas.fertilizer import ToleranceBand
from fest.schemas.optimization_solution import RawResult
from fest.services.optimization.engine import INFEASIBLE_MESSAGE, NO_PRODUCTS_MESSAGE, run_optimization
from fest.workers.errors import Backpressure, SolveTimeout, WorkerCrashed
from test_scripts.solver_fakes import DirectPool, FailingPool

EPS = 1e-9


def _run(req, pool, settings=None):
    return asyncio.run(run_optimization(req, pool, settings or Settings()))


def _assert_closure(req, resp):
    """Re-substitute the reported doses into every hard constraint."""
    catalog = {p.id: p for p in req.catalog}
    bands = Settings().DEFAULT_TOLERANCES
    for s in resp.strategies:
        ids = [d.product_id for d in s.products]
        assert 1 <= len(ids) <= req.max_products
        assert set(req.required_product_ids) <= set(ids)
        assert not set(req.excluded_product_ids) & set(ids)
        for d in s.products:
            assert isinstance(d.dose_kg_ha, int)
            assert req.min_dose_kg_ha <= d.dose_kg_ha <= req.max_dose_kg_ha
        for k in req.nutrient_target().hard():
            target = req.target.get(k)
            supplied = sum(d.dose_kg_ha * catalog[d.product_id].nutrients.get(k) / 100 for d in s.products)
            band = bands[k]
            assert target * (1 - band.under_pct / 100) - EPS <= supplied <= target * (1 + band.over_pct / 100) + EPS


def test_scenario_single_nitrogen_product(make_request, make_product, direct_pool):
    req = make_request([make_product("CAN_27", 4.25, N=27)], target={"N": 150}, max_products=2)
    resp = _run(req, direct_pool)

    assert resp.status == "ok"
    assert len(resp.strategies) == 1
    s = resp.strategies[0]
    assert s.rank == 1
    assert [(d.product_id, d.dose_kg_ha) for d in s.products] == [("CAN_27", 556)]
    assert s.total_cost == 2363.0
    assert s.products[0].cost_contribution == 2363.0
    assert 150 <= s.achieved.N <= 153
    assert s.achieved.N == 150.12
    assert s.percent_of_target.N == 100.1
    assert s.percent_of_target.P is None
    assert resp.truncated is False
    assert resp.used_max_products == 2
    _assert_closure(req, resp)


def test_scenario_unreachable_target_is_infeasible(make_request, make_product, direct_pool):
    req = make_request(
        [make_product("CAN_27", 4.25, N=27)],
        target={"N": 5000},
        max_dose_kg_ha=200,
        max_products=1,
    )
    resp = _run(req, direct_pool)

    assert resp.status == "infeasible"
    assert resp.strategies == []
    assert resp.error is None
    assert resp.message == INFEASIBLE_MESSAGE


def test_scenario_too_many_required_rejected_before_solve(make_request, n_catalog, direct_pool):
    req = make_request(n_catalog, max_products=2, required_product_ids=["AN_34", "CAN_27", "AS_21"])
    resp = _run(req, direct_pool)

    assert resp.status == "error"
    assert resp.error.kind == "input_error"
    assert resp.error.retryable is False
    assert "TOO_MANY_REQUIRED" in [e["code"] for e in resp.error.details["errors"]]
    assert direct_pool.models == []


def test_required_excluded_overlap_rejected_before_solve(make_request, n_catalog, direct_pool):
    req = make_request(n_catalog, required_product_ids=["CAN_27"], excluded_product_ids=["CAN_27"])
    resp = _run(req, direct_pool)

    assert resp.error.kind == "input_error"
    assert [e["code"] for e in resp.error.details["errors"]] == ["REQUIRED_EXCLUDED_OVERLAP"]
    assert direct_pool.models == []


def test_must_flag_on_untargeted_nutrient_never_solves(make_request, make_product, direct_pool):
    catalog = [make_product("NP_27_5", 3.00, N=27, P=5), make_product("CAN_27", 4.25, N=27)]
    req = make_request(catalog, must_flags={"must_n": True, "must_p": True})
    resp = _run(req, direct_pool)

    assert resp.status == "error"
    assert resp.error.kind == "input_error"
    assert [(e["code"], e["nutrient"]) for e in resp.error.details["errors"]] == [("MUST_TARGET_TOO_LOW", "P")]
    assert resp.strategies == []
    assert direct_pool.models == []


def test_podium_is_monotonic_and_distinct(make_request, n_catalog, direct_pool):
    req = make_request(n_catalog, top_n=3, max_products=2)
    resp = _run(req, direct_pool)

    assert resp.status == "ok"
    assert len(resp.strategies) == 3
    assert [s.rank for s in resp.strategies] == [1, 2, 3]

    costs = [s.total_cost for s in resp.strategies]
    assert costs == sorted(costs)

    sets = [frozenset(d.product_id for d in s.products) for s in resp.strategies]
    assert len(set(sets)) == len(sets)

    # 437 kg of 34.4 % N is the cheapest way to 150-153 kg N
    assert sets[0] == {"AN_34"}
    assert resp.strategies[0].total_cost == 2228.7
    _assert_closure(req, resp)

    # one solve per strategy, each with one more cut than the last
    cuts = [sum(1 for n in m.constraint_names() if n.startswith("nogood_")) for m in direct_pool.models]
    assert cuts == [0, 1, 2]


def test_feasibility_closure_with_required_and_excluded(make_request, npk_catalog, direct_pool):
    req = make_request(
        npk_catalog,
        target={"N": 150, "P": 20, "K": 60, "S": 15},
        must_flags={"must_n": True, "must_p": True, "must_k": True},
        max_products=3,
        top_n=5,
        required_product_ids=["PK_11_21"],
        excluded_product_ids=["AN_34"],
    )
    resp = _run(req, direct_pool)

    assert resp.status == "ok"
    assert resp.strategies
    _assert_closure(req, resp)
    costs = [s.total_cost for s in resp.strategies]
    assert costs == sorted(costs)


def test_same_request_twice_gives_same_rank_one(make_request, npk_catalog, direct_pool):
    req = make_request(
        npk_catalog,
        target={"N": 150, "P": 20, "K": 60},
        must_flags={"must_n": True, "must_p": True, "must_k": True},
        max_products=3,
    )
    first = _run(req, direct_pool).strategies[0]
    second = _run(req, direct_pool).strategies[0]

    assert first.total_cost == second.total_cost
    assert first.achieved == second.achieved


def test_soft_nutrient_oversupply_warns(make_request, make_product, direct_pool):
    req = make_request([make_product("NS_27_4", 4.60, N=27, S=3.7)], target={"N": 150, "S": 5})
    resp = _run(req, direct_pool)

    warnings = resp.strategies[0].warnings
    assert [(w.nutrient, w.type) for w in warnings] == [("S", "HIGH_LEVEL")]
    assert warnings[0].threshold_pct == 150.0
    assert warnings[0].value_kg_ha == resp.strategies[0].achieved.S
    assert warnings[0].ratio > 1.5


def test_band_admitting_zero_supply_still_picks_a_product(make_request, make_product, direct_pool):
    req = make_request(
        [make_product("CAN_27", 4.25, N=27)],
        tolerance_config={"N": ToleranceBand(under_pct=100, over_pct=2)},
    )
    resp = _run(req, direct_pool)

    assert resp.status == "ok"
    s = resp.strategies[0]
    # cheapest non-empty plan: one product at the minimum dose
    assert [(d.product_id, d.dose_kg_ha) for d in s.products] == [("CAN_27", 100)]
    assert s.total_cost == 425.0
    assert s.achieved.N == 27.0


class _EmptyPlanPool(DirectPool):
    """Reports an optimum that selects nothing, as a backend ignoring rows would."""

    async def submit(self, model, timeout=None):
        self.models.append(model)
        return RawResult(status="optimal", values={}, objective_value=0)


def test_empty_plan_from_backend_is_a_solver_error(make_request, n_catalog):
    resp = _run(make_request(n_catalog), _EmptyPlanPool())

    assert resp.status == "error"
    assert resp.error.kind == "solver_error"
    assert resp.strategies == []


def test_empty_catalog_after_filtering(make_request, make_product, direct_pool):
    resp = _run(make_request([make_product("FREE", 0.0, N=27)]), direct_pool)

    assert resp.status == "infeasible"
    assert resp.message == NO_PRODUCTS_MESSAGE
    assert direct_pool.models == []


def test_iteration_cap_truncates(make_request, n_catalog, direct_pool):
    req = make_request(n_catalog, top_n=3)
    resp = _run(req, direct_pool, Settings(PODIUM_MAX_ITERATIONS=1))

    assert resp.status == "ok"
    assert len(resp.strategies) == 1
    assert resp.truncated is True
    assert "iteration cap" in resp.message


def test_failure_after_first_solution_returns_partial_podium(make_request, n_catalog):
    pool = FailingPool([None, SolveTimeout("solve exceeded 1s")])
    resp = _run(make_request(n_catalog, top_n=3), pool)

    assert resp.status == "ok"
    assert len(resp.strategies) == 1
    assert resp.truncated is True
    assert "timeout" in resp.message


def test_failure_on_first_solve_is_typed(make_request, n_catalog):
    resp = _run(make_request(n_catalog), FailingPool([SolveTimeout("solve exceeded 1s")]))
    assert resp.status == "error"
    assert resp.error.kind == "timeout"
    assert resp.error.retryable is True

    resp = _run(make_request(n_catalog), FailingPool([Backpressure("queue full")]))
    assert resp.error.kind == "backpressure"


def test_worker_crash_is_retried_by_the_caller(make_request, n_catalog):
    pool = FailingPool([WorkerCrashed("worker died")])
    resp = _run(make_request(n_catalog, top_n=1), pool)

    assert resp.status == "ok"
    assert pool.calls == 2


def test_repeated_crashes_surface_as_worker_crashed(make_request, n_catalog):
    pool = FailingPool([WorkerCrashed("worker died"), WorkerCrashed("worker died again")])
    resp = _run(make_request(n_catalog, top_n=1), pool, Settings(PODIUM_CRASH_RETRIES=1))

    assert resp.status == "error"
    assert resp.error.kind == "worker_crashed"
    assert pool.calls == 2
