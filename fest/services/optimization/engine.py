# fest/services/optimization/engine.py
"""
Optimization run orchestration.

Pipeline for one SolveRequest:
1. FeasibilityChecker (InputError -> typed error response, no solve)
2. Resolve tolerance bands (request over settings defaults)
3. Build the scaled MilpModel
4. Podium loop on the solver pool
5. Map candidates to ranked StrategyResult rows

InputError and infeasibility never escape as exceptions; pool failures come
back as typed error responses so the HTTP layer can pick a status code.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Optional

from fest.config import Settings, settings as default_settings
from fest.schemas.solve import ErrorInfo, SolveRequest, SolveResponse
from fest.services.optimization.feasibility_checker import FeasibilityChecker, InputError
from fest.services.optimization.optimization_problem_builder import build_optimization_problem
from fest.services.optimization.result_mapper import to_strategy
from fest.services.optimization.strategy_ranker import SolveSubmitter, rank_strategies
from fest.services.optimization.tolerance_resolver import resolve_tolerances
from fest.workers.errors import PoolError

logger = logging.getLogger(__name__)

NO_PRODUCTS_MESSAGE = "No eligible products in catalog."
INFEASIBLE_MESSAGE = "No product combination satisfies the constraints."


def _input_error_response(request: SolveRequest, err: InputError) -> SolveResponse:
    return SolveResponse(
        status="error",
        error=ErrorInfo(
            kind="input_error",
            message=str(err),
            retryable=False,
            details={
                "errors": [i.model_dump() for i in err.report.errors],
                "warnings": [i.model_dump() for i in err.report.warnings],
            },
        ),
        used_max_products=request.max_products,
    )


def _pool_error_response(request: SolveRequest, err: PoolError) -> SolveResponse:
    return SolveResponse(
        status="error",
        error=ErrorInfo(kind=err.kind, message=err.message, retryable=err.retryable, details=dict(err.details)),
        used_max_products=request.max_products,
    )


async def run_optimization(
    request: SolveRequest,
    pool: SolveSubmitter,
    settings: Optional[Settings] = None,
    *,
    timeout: Optional[float] = None,
) -> SolveResponse:
    """
    Solve one request end to end.

    Args:
        request: Validated request from the HTTP layer
        pool: Anything with `await submit(model, timeout)` (normally SolverPool)
        settings: Defaults for tolerances, podium cap and warning threshold
        timeout: Per-solve timeout; None uses the pool default

    Returns:
        SolveResponse with status ok / infeasible / error
    """
    cfg = settings or default_settings
    request_id = uuid.uuid4().hex[:12]
    t0 = time.monotonic()

    logger.info(
        "engine.start",
        extra={
            "request_id": request_id,
            "count": len(request.catalog),
            "top_n": request.top_n,
        },
    )

    # 1-3) validate, resolve bands, build
    try:
        report = FeasibilityChecker().ensure_valid(request)
        for w in report.warnings:
            logger.info("engine.input_warning", extra={"request_id": request_id, "reason": w.code})
        bands = resolve_tolerances(request.tolerance_config, cfg.DEFAULT_TOLERANCES)
        problem = build_optimization_problem(request, bands)
    except InputError as e:
        logger.info(
            "engine.input_error",
            extra={"request_id": request_id, "reason": ",".join(e.report.error_codes())},
        )
        return _input_error_response(request, e)

    if problem.empty:
        return SolveResponse(
            status="infeasible",
            message=NO_PRODUCTS_MESSAGE,
            used_max_products=request.max_products,
        )

    # 4) podium
    try:
        outcome = await rank_strategies(
            problem,
            pool,
            top_n=request.top_n,
            max_iterations=cfg.PODIUM_MAX_ITERATIONS,
            crash_retries=cfg.PODIUM_CRASH_RETRIES,
            timeout=timeout,
            request_id=request_id,
        )
    except PoolError as e:
        logger.warning(
            "engine.pool_error",
            extra={"request_id": request_id, "kind": e.kind, "reason": e.message},
        )
        return _pool_error_response(request, e)

    elapsed = round(time.monotonic() - t0, 4)

    if not outcome.candidates:
        logger.info(
            "engine.infeasible",
            extra={"request_id": request_id, "elapsed_seconds": elapsed},
        )
        return SolveResponse(
            status="infeasible",
            message=INFEASIBLE_MESSAGE,
            used_max_products=request.max_products,
        )

    # 5) map
    strategies = [
        to_strategy(problem, c, rank=i + 1, high_level_threshold_pct=cfg.HIGH_LEVEL_THRESHOLD_PCT)
        for i, c in enumerate(outcome.candidates)
    ]

    message: Optional[str] = None
    if outcome.stop_reason == "failure" and outcome.failure is not None:
        message = f"Returned {len(strategies)} of {request.top_n} strategies: {outcome.failure.kind}."
    elif outcome.stop_reason == "iteration_cap":
        message = f"Returned {len(strategies)} of {request.top_n} strategies: iteration cap reached."

    logger.info(
        "engine.done",
        extra={
            "request_id": request_id,
            "status": "ok",
            "count": len(strategies),
            "solves": outcome.solves,
            "elapsed_seconds": elapsed,
        },
    )
    return SolveResponse(
        status="ok",
        strategies=strategies,
        message=message,
        used_max_products=request.max_products,
        truncated=outcome.truncated,
    )
