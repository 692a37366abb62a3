# fest/schemas/optimization_solution.py
"""
Raw solver output schema.

Values are the scaled integers the backend saw; unscaling happens in the
result mapper, never here.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Literal


SolveStatus = Literal["optimal", "feasible", "infeasible", "model_invalid", "unknown"]

SOLUTION_STATUSES = frozenset({"optimal", "feasible"})


class RawResult(BaseModel):
    """
    Structured backend output.

    Contains:
    - Status (optimal, feasible, infeasible, model_invalid, unknown)
    - Variable values keyed by MilpVariable.name (only when a solution exists)
    - Objective value in scaled units
    - Diagnostics for debugging
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    status: SolveStatus
    values: Dict[str, int] = Field(default_factory=dict)
    objective_value: Optional[int] = None
    wall_time_seconds: Optional[float] = None

    diagnostics: Dict[str, Any] = Field(default_factory=dict)

    @property
    def has_solution(self) -> bool:
        return self.status in SOLUTION_STATUSES
