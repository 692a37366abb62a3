# fest/schemas/fertilizer.py
"""
Domain inputs for fertilizer optimization: products, nutrient targets,
must-flags and tolerance bands.

These objects arrive already validated by the request layer and are treated
as immutable snapshots for the duration of one solve call.
"""
from __future__ import annotations

from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing_extensions import Literal


Nutrient = Literal["N", "P", "K", "S"]
NUTRIENTS: Tuple[Nutrient, ...] = ("N", "P", "K", "S")


class CamelModel(BaseModel):
    """Base for boundary objects: camelCase on the wire, snake_case in code."""
    model_config = ConfigDict(
        extra="ignore",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class NutrientAmounts(BaseModel):
    """
    Per-nutrient values. Used for targets (kg/ha), product content (percent)
    and achieved supply (kg/ha). Absent means 0.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    N: float = Field(default=0.0, ge=0)
    P: float = Field(default=0.0, ge=0)
    K: float = Field(default=0.0, ge=0)
    S: float = Field(default=0.0, ge=0)

    def get(self, nutrient: Nutrient) -> float:
        return float(getattr(self, nutrient) or 0.0)

    def as_dict(self) -> Dict[str, float]:
        return {k: self.get(k) for k in NUTRIENTS}

    def positive(self) -> Tuple[Nutrient, ...]:
        """Nutrients with a strictly positive value, in canonical order."""
        return tuple(k for k in NUTRIENTS if self.get(k) > 0)


class ProductContent(NutrientAmounts):
    """Nutrient content as percent of product mass (0-100)."""

    N: float = Field(default=0.0, ge=0, le=100)
    P: float = Field(default=0.0, ge=0, le=100)
    K: float = Field(default=0.0, ge=0, le=100)
    S: float = Field(default=0.0, ge=0, le=100)


class Product(CamelModel):
    """A fertilizer product snapshot as delivered by the catalog collaborator."""

    id: str = Field(..., min_length=1)
    name: str
    price_per_kg: float = Field(..., description="Price per kg (SEK)")
    nutrients: ProductContent = Field(default_factory=ProductContent)
    optimizable: bool = True
    active: bool = True
    description: Optional[str] = None


class MustFlags(CamelModel):
    """Which nutrients are hard requirements (must land inside tolerance)."""

    must_n: bool = False
    must_p: bool = False
    must_k: bool = False
    must_s: bool = False

    def is_must(self, nutrient: Nutrient) -> bool:
        return bool(getattr(self, f"must_{nutrient.lower()}"))

    def musts(self) -> Tuple[Nutrient, ...]:
        return tuple(k for k in NUTRIENTS if self.is_must(k))


class ToleranceBand(CamelModel):
    """
    Allowed deviation for a must nutrient, in percent of target:
    [target * (1 - under_pct/100), target * (1 + over_pct/100)].

    soft_max_pct optionally caps a soft (non-must) nutrient at
    target * soft_max_pct/100. None keeps soft nutrients uncapped.
    """

    under_pct: float = Field(..., ge=0, le=100)
    over_pct: float = Field(..., ge=0)
    soft_max_pct: Optional[float] = Field(default=None, gt=0)


class NutrientTarget(BaseModel):
    """Target supply plus the hard/soft split."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    amounts: NutrientAmounts
    must: MustFlags

    def needed(self) -> Tuple[Nutrient, ...]:
        return self.amounts.positive()

    def hard(self) -> Tuple[Nutrient, ...]:
        """Must-flagged nutrients with a positive target."""
        return tuple(k for k in self.must.musts() if self.amounts.get(k) > 0)
