# fest/services/optimization/result_mapper.py
"""
Pure computation service for solver results.

Transforms BuiltProblem + RawResult into CandidateSolution value objects and
CandidateSolution into StrategyResult rows for the response.

Key principles:
- Use the frozen ScaledProduct snapshots of the BuiltProblem
- Recompute cost and supply from the dose values (never trust the objective)
- Only unscale and reshape; no constraint logic lives here
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple

from fest.schemas.fertilizer import NUTRIENTS, NutrientAmounts
from fest.schemas.optimization_solution import RawResult
from fest.schemas.solve import PercentOfTarget, ProductDose, StrategyResult, WarningItem
from fest.services.optimization.optimization_problem_builder import BuiltProblem
from fest.services.optimization.scaling import (
    SUPPLY_SCALE,
    percent_of_target,
    unscale_cost,
    unscale_supply,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateSolution:
    """
    One feasible assignment in scaled units. Never mutated after construction.

    doses: (product_id, dose_kg_ha) in catalog order, selected products only.
    """
    product_ids: Tuple[str, ...]
    doses: Tuple[Tuple[str, int], ...]
    cost_minor: int
    supply_scaled: Tuple[Tuple[str, int], ...]
    deviation: float

    @property
    def product_set(self) -> frozenset:
        return frozenset(self.product_ids)

    def supply(self) -> Dict[str, int]:
        return dict(self.supply_scaled)

    def sort_key(self) -> Tuple[int, float, int]:
        # cost, then closeness to the must targets, then fewer products
        return (self.cost_minor, round(self.deviation, 9), len(self.product_ids))


def map_candidate(problem: BuiltProblem, raw: RawResult) -> CandidateSolution:
    """Read doses off a solved RawResult and recompute cost and supply."""
    values = raw.values
    doses: List[Tuple[str, int]] = []
    cost_minor = 0
    supply = {k: 0 for k in NUTRIENTS}

    for sp in problem.products:
        if int(values.get(sp.y_name, 0)) < 1:
            continue
        dose = int(values.get(sp.x_name, 0))
        doses.append((sp.id, dose))
        cost_minor += sp.price_minor * dose
        for k in NUTRIENTS:
            supply[k] += sp.content_milli[k] * dose

    if raw.objective_value is not None and raw.objective_value != cost_minor:
        logger.warning(
            "result_mapper.objective_mismatch",
            extra={"objective": raw.objective_value, "cost_minor": cost_minor},
        )

    return CandidateSolution(
        product_ids=tuple(pid for pid, _ in doses),
        doses=tuple(doses),
        cost_minor=cost_minor,
        supply_scaled=tuple((k, supply[k]) for k in NUTRIENTS),
        deviation=_must_deviation(problem, supply),
    )


def _must_deviation(problem: BuiltProblem, supply: Dict[str, int]) -> float:
    """Sum of |supplied - target| / target over must nutrients."""
    total = 0.0
    for k in problem.target.hard():
        target = problem.target.amounts.get(k)
        total += abs(supply[k] / SUPPLY_SCALE - target) / target
    return total


def _high_level_warnings(problem: BuiltProblem, achieved: Dict[str, float], threshold_pct: float) -> List[WarningItem]:
    warnings: List[WarningItem] = []
    hard = set(problem.target.hard())
    for k in NUTRIENTS:
        target = problem.target.amounts.get(k)
        if k in hard or target <= 0:
            continue
        ratio = achieved[k] / target
        if ratio * 100 > threshold_pct:
            warnings.append(
                WarningItem(
                    nutrient=k,
                    threshold_pct=threshold_pct,
                    value_kg_ha=achieved[k],
                    ratio=round(ratio, 3),
                )
            )
    return warnings


def to_strategy(
    problem: BuiltProblem,
    candidate: CandidateSolution,
    rank: int,
    high_level_threshold_pct: float,
) -> StrategyResult:
    """Unscale one candidate into a response row."""
    by_id = problem.by_id()

    products = [
        ProductDose(
            product_id=pid,
            name=by_id[pid].product.name,
            dose_kg_ha=dose,
            cost_contribution=unscale_cost(by_id[pid].price_minor * dose),
        )
        for pid, dose in candidate.doses
    ]

    scaled = candidate.supply()
    achieved = {k: unscale_supply(scaled[k]) for k in NUTRIENTS}
    pct = {k: percent_of_target(achieved[k], problem.target.amounts.get(k)) for k in NUTRIENTS}

    return StrategyResult(
        rank=rank,
        total_cost=unscale_cost(candidate.cost_minor),
        products=products,
        achieved=NutrientAmounts(**achieved),
        percent_of_target=PercentOfTarget(**pct),
        warnings=_high_level_warnings(problem, achieved, high_level_threshold_pct),
    )
