# fest/schemas/optimization_problem.py
"""
Frozen solver-facing problem schema.

CRITICAL RULE: every bound and coefficient is an integer. Percentages and
prices are rescaled to fixed-point BEFORE they enter MilpModel (see
fest.services.optimization.scaling). StrictInt rejects floats, so a raw float
can never cross the solver boundary.

This schema defines the exact contract between problem builder, worker pool
and solver backend. It is sent in full with every solve request.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, model_validator
from typing_extensions import Literal


ObjectiveSense = Literal["minimize"]


class MilpVariable(BaseModel):
    """A bounded integer decision variable (binary when lower=0, upper=1)."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(..., min_length=1)
    lower: StrictInt = 0
    upper: StrictInt
    binary: bool = False

    @model_validator(mode="after")
    def _validate_bounds(self) -> "MilpVariable":
        if self.lower > self.upper:
            raise ValueError(f"variable {self.name}: lower {self.lower} > upper {self.upper}")
        if self.binary and (self.lower < 0 or self.upper > 1):
            raise ValueError(f"binary variable {self.name} must be bounded by [0, 1]")
        return self


class LinearConstraint(BaseModel):
    """
    lower <= sum(coef * var) <= upper

    At least one side must be present. Terms reference MilpVariable names.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = Field(..., min_length=1)
    terms: Dict[str, StrictInt]
    lower: Optional[StrictInt] = None
    upper: Optional[StrictInt] = None

    @model_validator(mode="after")
    def _validate_sides(self) -> "LinearConstraint":
        if self.lower is None and self.upper is None:
            raise ValueError(f"constraint {self.name} has neither lower nor upper bound")
        if self.lower is not None and self.upper is not None and self.lower > self.upper:
            raise ValueError(f"constraint {self.name}: lower {self.lower} > upper {self.upper}")
        return self


class MilpModel(BaseModel):
    """
    Complete integer program handed to a solver backend.

    metadata is carried for logging/debugging only; backends must not read it
    to change the math.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str = "fest"
    sense: ObjectiveSense = "minimize"
    variables: List[MilpVariable]
    constraints: List[LinearConstraint] = Field(default_factory=list)
    objective: Dict[str, StrictInt] = Field(default_factory=dict)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_references(self) -> "MilpModel":
        names = [v.name for v in self.variables]
        known = set(names)
        if len(known) != len(names):
            raise ValueError("duplicate variable names in model")
        for c in self.constraints:
            unknown = [t for t in c.terms if t not in known]
            if unknown:
                raise ValueError(f"constraint {c.name} references unknown variables: {unknown[:5]}")
        unknown_obj = [t for t in self.objective if t not in known]
        if unknown_obj:
            raise ValueError(f"objective references unknown variables: {unknown_obj[:5]}")
        return self

    def with_constraints(self, extra: List[LinearConstraint]) -> "MilpModel":
        """Return a copy of this model with additional constraint rows."""
        return MilpModel(
            name=self.name,
            sense=self.sense,
            variables=list(self.variables),
            constraints=[*self.constraints, *extra],
            objective=dict(self.objective),
            metadata=dict(self.metadata),
        )

    def constraint_names(self) -> List[str]:
        return [c.name for c in self.constraints]
