# fest/schemas/solve.py
"""
Engine boundary: SolveRequest in, SolveResponse out.

Field names are snake_case in code and camelCase on the wire
(mustN, maxProducts, topN ...). Nutrient keys N/P/K/S stay upper-case.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field, field_validator
from typing_extensions import Literal

from fest.schemas.fertilizer import (
    CamelModel,
    MustFlags,
    NutrientAmounts,
    NutrientTarget,
    Product,
    ToleranceBand,
)


ResponseStatus = Literal["ok", "infeasible", "error"]
ErrorKind = Literal[
    "input_error",
    "timeout",
    "worker_crashed",
    "solver_error",
    "backpressure",
    "pool_shutting_down",
]


class SolveRequest(CamelModel):
    """
    A validated optimization request as handed over by the request layer.

    The catalog is expected to be pre-filtered (active, optimizable only);
    the engine still drops products that cannot contribute.
    """

    target: NutrientAmounts = Field(default_factory=NutrientAmounts)
    must_flags: MustFlags = Field(default_factory=MustFlags)
    max_products: int = Field(default=3, ge=1, le=5)
    min_dose_kg_ha: int = Field(default=100, gt=0)
    max_dose_kg_ha: int = Field(default=600, gt=0)
    required_product_ids: List[str] = Field(default_factory=list)
    excluded_product_ids: List[str] = Field(default_factory=list)
    top_n: int = Field(default=3, ge=1, le=50)
    tolerance_config: Dict[str, ToleranceBand] = Field(default_factory=dict)
    catalog: List[Product] = Field(default_factory=list)

    @field_validator("required_product_ids", "excluded_product_ids")
    @classmethod
    def _strip_ids(cls, v: List[str]) -> List[str]:
        # Keep order, drop blanks and duplicates
        seen = set()
        out: List[str] = []
        for raw in v:
            s = str(raw).strip()
            if s and s not in seen:
                seen.add(s)
                out.append(s)
        return out

    def nutrient_target(self) -> NutrientTarget:
        return NutrientTarget(amounts=self.target, must=self.must_flags)


class ProductDose(CamelModel):
    product_id: str
    name: str
    dose_kg_ha: int
    cost_contribution: float


class PercentOfTarget(CamelModel):
    """Achieved / target * 100, None where the target is 0."""
    model_config = ConfigDict(alias_generator=None)

    N: Optional[float] = None
    P: Optional[float] = None
    K: Optional[float] = None
    S: Optional[float] = None


class WarningItem(CamelModel):
    nutrient: str
    type: Literal["HIGH_LEVEL"] = "HIGH_LEVEL"
    threshold_pct: float
    value_kg_ha: float
    ratio: float


class StrategyResult(CamelModel):
    rank: int
    total_cost: float
    products: List[ProductDose]
    achieved: NutrientAmounts
    percent_of_target: PercentOfTarget
    warnings: List[WarningItem] = Field(default_factory=list)


class ErrorInfo(CamelModel):
    kind: ErrorKind
    message: str
    retryable: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class SolveResponse(CamelModel):
    status: ResponseStatus
    strategies: List[StrategyResult] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
    message: Optional[str] = None
    used_max_products: Optional[int] = None
    truncated: bool = False
