# fest/services/solvers/ortools_cp_sat_adapter.py
"""
OR-Tools CP-SAT backend.

Translates a MilpModel into a CP-SAT model:
1. Integer variables with their bounds (binary -> NewBoolVar)
2. Linear rows: lower <= sum(coef * var) <= upper
3. Objective: minimize sum(coef * var)

Everything arriving here is already integer (see fest.services.optimization.scaling),
which is exactly what CP-SAT wants.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ortools.sat.python import cp_model

from fest.schemas.optimization_problem import LinearConstraint, MilpModel
from fest.schemas.optimization_solution import RawResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CpSatConfig:
    """Configuration for OR-Tools CP-SAT solver."""

    max_time_seconds: float = 10.0
    num_workers: int = 1
    log_search_progress: bool = False


def _constant_row_holds(c: LinearConstraint) -> bool:
    # Row without terms: its value is 0
    if c.lower is not None and c.lower > 0:
        return False
    if c.upper is not None and c.upper < 0:
        return False
    return True


class OrtoolsCpSatSolverAdapter:
    """
    Solver backend using OR-Tools CP-SAT.

    One instance lives in each worker process; it keeps no state between solves.
    """

    def __init__(
        self,
        config: Optional[CpSatConfig] = None,
        max_time_seconds: Optional[float] = None,
        num_workers: Optional[int] = None,
        log_search_progress: Optional[bool] = None,
    ) -> None:
        base = config or CpSatConfig()
        self.config = CpSatConfig(
            max_time_seconds=base.max_time_seconds if max_time_seconds is None else float(max_time_seconds),
            num_workers=base.num_workers if num_workers is None else int(num_workers),
            log_search_progress=base.log_search_progress if log_search_progress is None else bool(log_search_progress),
        )

    def solve(self, problem: MilpModel) -> RawResult:
        logger.debug(
            "cpsat.build",
            extra={"count": len(problem.variables), "constraints": len(problem.constraints)},
        )

        model = cp_model.CpModel()
        v: Dict[str, cp_model.IntVar] = {}

        # ---- Variables ----
        for var in problem.variables:
            if var.binary:
                v[var.name] = model.NewBoolVar(var.name)  # type: ignore[attr-defined]
            else:
                v[var.name] = model.NewIntVar(var.lower, var.upper, var.name)  # type: ignore[attr-defined]

        # ---- Rows ----
        for c in problem.constraints:
            terms = [(v[name], coef) for name, coef in c.terms.items() if coef != 0]
            if not terms:
                if not _constant_row_holds(c):
                    logger.info("cpsat.constant_row_infeasible", extra={"reason": c.name})
                    return RawResult(status="infeasible", diagnostics={"infeasible_row": c.name})
                continue

            expr = sum(coef * var for var, coef in terms)
            if c.lower is not None and c.upper is not None and c.lower == c.upper:
                model.Add(expr == c.lower)  # type: ignore[attr-defined]
                continue
            if c.lower is not None:
                model.Add(expr >= c.lower)  # type: ignore[attr-defined]
            if c.upper is not None:
                model.Add(expr <= c.upper)  # type: ignore[attr-defined]

        # ---- Objective ----
        if problem.objective:
            model.Minimize(sum(coef * v[name] for name, coef in problem.objective.items()))  # type: ignore[attr-defined]

        solver = cp_model.CpSolver()
        solver.parameters.max_time_in_seconds = float(self.config.max_time_seconds)
        solver.parameters.num_workers = int(self.config.num_workers)
        solver.parameters.log_search_progress = bool(self.config.log_search_progress)

        status = solver.Solve(model)

        status_map = {
            cp_model.OPTIMAL: "optimal",
            cp_model.FEASIBLE: "feasible",
            cp_model.INFEASIBLE: "infeasible",
            cp_model.MODEL_INVALID: "model_invalid",
        }
        out_status = status_map.get(status, "unknown")

        logger.info(
            "cpsat.completed",
            extra={"status": out_status, "elapsed_seconds": solver.WallTime()},
        )

        values: Dict[str, int] = {}
        objective_value: Optional[int] = None
        if out_status in {"optimal", "feasible"}:
            values = {name: int(solver.Value(var)) for name, var in v.items()}
            objective_value = int(round(solver.ObjectiveValue())) if problem.objective else 0

        return RawResult(
            status=out_status,  # type: ignore[arg-type]
            values=values,
            objective_value=objective_value,
            wall_time_seconds=solver.WallTime(),
            diagnostics={
                "variable_count": len(problem.variables),
                "constraint_count": len(problem.constraints),
                "num_workers": self.config.num_workers,
                "max_time_seconds": self.config.max_time_seconds,
            },
        )
