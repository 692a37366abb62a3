# test_scripts/test_optimize_api.py

from __future__ import annotations

from fastapi.testclient import TestClient

from fest.config import Settings
from fest.main import create_app
from fest.workers.errors import Backpressure, PoolShuttingDown, SolverError, SolveTimeout, WorkerCrashed
from test_scripts.solver_fakes import DirectPool, FailingPool


CAN_27 = {"id": "CAN_27", "name": "Kalkammonsalpeter 27", "pricePerKg": 4.25, "nutrients": {"N": 27}}


def _body(**overrides):
    body = {
        "target": {"N": 150},
        "mustFlags": {"mustN": True},
        "maxProducts": 2,
        "catalog": [CAN_27],
    }
    body.update(overrides)
    return body


def _client(pool):
    return TestClient(create_app(Settings(), pool=pool))


def test_optimize_ok():
    pool = DirectPool()
    with _client(pool) as client:
        r = client.post("/optimize", json=_body())

    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "ok"
    assert data["usedMaxProducts"] == 2
    assert data["truncated"] is False

    s = data["strategies"][0]
    assert s["rank"] == 1
    assert s["totalCost"] == 2363.0
    assert s["products"] == [
        {"productId": "CAN_27", "name": "Kalkammonsalpeter 27", "doseKgHa": 556, "costContribution": 2363.0}
    ]
    assert s["achieved"]["N"] == 150.12
    assert s["percentOfTarget"] == {"N": 100.1, "P": None, "K": None, "S": None}
    assert s["warnings"] == []


def test_optimize_infeasible_is_200():
    with _client(DirectPool()) as client:
        r = client.post("/optimize", json=_body(target={"N": 5000}, maxDoseKgHa=200, maxProducts=1))

    assert r.status_code == 200
    assert r.json()["status"] == "infeasible"
    assert r.json()["strategies"] == []


def test_input_error_is_422():
    catalog = [CAN_27, {**CAN_27, "id": "A"}, {**CAN_27, "id": "B"}]
    with _client(DirectPool()) as client:
        r = client.post(
            "/optimize",
            json=_body(catalog=catalog, requiredProductIds=["CAN_27", "A", "B"], maxProducts=2),
        )

    assert r.status_code == 422
    err = r.json()["error"]
    assert err["kind"] == "input_error"
    assert err["retryable"] is False


def test_schema_violation_is_422():
    with _client(DirectPool()) as client:
        r = client.post("/optimize", json=_body(maxProducts=9))
    assert r.status_code == 422


def test_pool_failures_map_to_status_codes():
    cases = [
        (Backpressure("queue full"), 503),
        (PoolShuttingDown("draining"), 503),
        (SolveTimeout("slow"), 504),
        (SolverError("bad"), 502),
    ]
    for failure, status in cases:
        with _client(FailingPool([failure])) as client:
            r = client.post("/optimize", json=_body())
        assert r.status_code == status, failure.kind
        assert r.json()["error"]["kind"] == failure.kind

    with _client(FailingPool([Backpressure("queue full")])) as client:
        r = client.post("/optimize", json=_body())
    assert r.headers["retry-after"] == "1"

    with _client(FailingPool([WorkerCrashed("died"), WorkerCrashed("died")])) as client:
        r = client.post("/optimize", json=_body())
    assert r.status_code == 502


def test_health_and_lifespan():
    pool = DirectPool()
    with _client(pool) as client:
        r = client.get("/health")
        assert pool.started and not pool.stopped

    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["pool"]["size"] == 1
    assert pool.stopped
