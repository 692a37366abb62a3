# fest/api/routes/optimize.py

from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from fest.api.deps import get_settings, get_solver_pool
from fest.config import Settings
from fest.schemas.solve import SolveRequest, SolveResponse
from fest.services.optimization.engine import run_optimization
from fest.services.optimization.strategy_ranker import SolveSubmitter


router = APIRouter(tags=["optimize"])

# error.kind -> HTTP status
ERROR_STATUS: Dict[str, int] = {
    "input_error": 422,
    "backpressure": 503,
    "pool_shutting_down": 503,
    "timeout": 504,
    "worker_crashed": 502,
    "solver_error": 502,
}


def http_status_for(resp: SolveResponse) -> int:
    if resp.status != "error" or resp.error is None:
        return 200
    return ERROR_STATUS.get(resp.error.kind, 500)


@router.post("/optimize", response_model=SolveResponse, response_model_by_alias=True)
async def optimize(
    req: SolveRequest,
    pool: SolveSubmitter = Depends(get_solver_pool),
    cfg: Settings = Depends(get_settings),
) -> JSONResponse:
    """
    Rank up to topN cost-minimal product combinations for a nutrient target.
    ok and infeasible are both 200; failures carry error.kind.
    """
    resp = await run_optimization(req, pool, cfg)
    headers = None
    if resp.error is not None and resp.error.kind in ("backpressure", "pool_shutting_down"):
        headers = {"Retry-After": "1"}
    return JSONResponse(
        status_code=http_status_for(resp),
        content=resp.model_dump(mode="json", by_alias=True),
        headers=headers,
    )
