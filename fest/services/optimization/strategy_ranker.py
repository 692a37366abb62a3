# fest/services/optimization/strategy_ranker.py
"""
Podium: up to top_n cost-ranked, product-set-distinct solutions.

Solve the base model, record the solution, forbid exactly that product set
with a no-good cut, re-solve. Stops at top_n, at infeasibility or at the
iteration cap. Solves are strictly sequential: each one depends on the cuts
of all previous rounds.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from typing_extensions import Literal, Protocol

from fest.schemas.optimization_problem import MilpModel
from fest.schemas.optimization_solution import RawResult
from fest.services.optimization.optimization_problem_builder import BuiltProblem, add_exclusion_cut
from fest.services.optimization.result_mapper import CandidateSolution, map_candidate
from fest.workers.errors import PoolError, SolverError, WorkerCrashed

logger = logging.getLogger(__name__)

StopReason = Literal["top_n", "infeasible", "iteration_cap", "failure"]


class SolveSubmitter(Protocol):
    async def submit(self, model: MilpModel, timeout: Optional[float] = None) -> RawResult:
        ...


@dataclass(frozen=True)
class PodiumOutcome:
    candidates: Tuple[CandidateSolution, ...]
    solves: int
    stop_reason: StopReason
    failure: Optional[PoolError] = None

    @property
    def truncated(self) -> bool:
        """True when the loop ended before it could prove there are no more combinations."""
        return self.stop_reason in ("iteration_cap", "failure")


async def _submit_with_retry(
    pool: SolveSubmitter,
    model: MilpModel,
    timeout: Optional[float],
    crash_retries: int,
    request_id: Optional[str],
) -> RawResult:
    attempt = 0
    while True:
        try:
            return await pool.submit(model, timeout=timeout)
        except WorkerCrashed:
            if attempt >= crash_retries:
                raise
            attempt += 1
            logger.warning(
                "podium.crash_retry",
                extra={"request_id": request_id, "count": attempt, "retries": crash_retries},
            )


def sort_podium(candidates: List[CandidateSolution]) -> Tuple[CandidateSolution, ...]:
    """Ascending cost; ties broken by must-nutrient deviation, then product count."""
    return tuple(sorted(candidates, key=lambda c: c.sort_key()))


async def rank_strategies(
    problem: BuiltProblem,
    pool: SolveSubmitter,
    *,
    top_n: int,
    max_iterations: int,
    crash_retries: int = 1,
    timeout: Optional[float] = None,
    request_id: Optional[str] = None,
) -> PodiumOutcome:
    """
    Run the podium loop.

    Raises:
        PoolError: the FIRST solve failed (timeout, crash, backpressure, shutdown,
            solver error). Later failures end the loop and are reported on the outcome.
    """
    if problem.model is None:
        return PodiumOutcome(candidates=(), solves=0, stop_reason="infeasible")

    model = problem.model
    found: List[CandidateSolution] = []
    seen: Set[frozenset] = set()
    solves = 0
    stop_reason: StopReason = "iteration_cap"
    failure: Optional[PoolError] = None

    while len(found) < top_n:
        if solves >= max_iterations:
            stop_reason = "iteration_cap"
            break

        try:
            raw = await _submit_with_retry(pool, model, timeout, crash_retries, request_id)
            if raw.status in ("unknown", "model_invalid"):
                raise SolverError(
                    f"solver returned status {raw.status}",
                    details={"status": raw.status, "diagnostics": dict(raw.diagnostics)},
                )
            if raw.has_solution and not problem.selected_ids(raw.values):
                raise SolverError("solver selected no product despite min_products")
        except PoolError as e:
            if not found:
                raise
            failure = e
            stop_reason = "failure"
            logger.warning(
                "podium.truncated",
                extra={"request_id": request_id, "kind": e.kind, "count": len(found)},
            )
            break
        solves += 1

        if not raw.has_solution:
            stop_reason = "infeasible"
            break

        candidate = map_candidate(problem, raw)
        if candidate.product_set in seen:
            # The cut forbids this; seeing it again means the backend ignored a row
            failure = SolverError("solver repeated an excluded product set")
            stop_reason = "failure"
            logger.error(
                "podium.repeated_product_set",
                extra={"request_id": request_id, "count": len(found)},
            )
            break

        found.append(candidate)
        seen.add(candidate.product_set)
        logger.debug(
            "podium.candidate",
            extra={"request_id": request_id, "count": len(found), "cost_minor": candidate.cost_minor},
        )
        model = add_exclusion_cut(problem, model, candidate.product_ids)
    else:
        stop_reason = "top_n"

    logger.info(
        "podium.done",
        extra={
            "request_id": request_id,
            "count": len(found),
            "solves": solves,
            "reason": stop_reason,
        },
    )
    return PodiumOutcome(
        candidates=sort_podium(found),
        solves=solves,
        stop_reason=stop_reason,
        failure=failure,
    )
