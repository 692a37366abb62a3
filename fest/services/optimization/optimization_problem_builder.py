# fest/services/optimization/optimization_problem_builder.py
"""
Builder for solver-ready MilpModel objects.

Responsibilities:
1. Drop catalog products that cannot contribute (inactive, non-optimizable,
   non-positive price, no N/P/K/S content)
2. Scale prices and nutrient content to fixed-point integers
3. Emit variables, linking rows, selection rows and nutrient band rows
4. Return a BuiltProblem that the ranker re-solves with exclusion cuts

CRITICAL rule: the builder is the only place where domain floats become
solver integers (through fest.services.optimization.scaling).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from fest.schemas.feasibility import InputIssue, InputReport
from fest.schemas.fertilizer import NUTRIENTS, Nutrient, NutrientTarget, Product, ToleranceBand
from fest.schemas.optimization_problem import LinearConstraint, MilpModel, MilpVariable
from fest.schemas.solve import SolveRequest
from fest.services.optimization.feasibility_checker import InputError
from fest.services.optimization.scaling import (
    scale_percent,
    scale_price,
    supply_cap,
    supply_lower_bound,
    supply_upper_bound,
)

logger = logging.getLogger(__name__)

CUT_PREFIX = "nogood_"


@dataclass(frozen=True)
class ScaledProduct:
    """A catalog product with its solver-side integer coefficients."""
    index: int
    product: Product
    price_minor: int
    content_milli: Dict[str, int]

    @property
    def id(self) -> str:
        return self.product.id

    @property
    def x_name(self) -> str:
        return f"x_{self.index}"

    @property
    def y_name(self) -> str:
        return f"y_{self.index}"


@dataclass(frozen=True)
class BuiltProblem:
    """
    Base model plus everything needed to interpret its solutions.

    model is None when no eligible product survived catalog hygiene.
    """
    model: Optional[MilpModel]
    products: Tuple[ScaledProduct, ...]
    target: NutrientTarget
    bands: Dict[Nutrient, ToleranceBand]
    max_products: int
    min_dose_kg_ha: int
    max_dose_kg_ha: int
    dropped: Dict[str, int] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return self.model is None or not self.products

    def by_id(self) -> Dict[str, ScaledProduct]:
        return {sp.id: sp for sp in self.products}

    def selected_ids(self, values: Mapping[str, int]) -> Tuple[str, ...]:
        """Product ids whose selection indicator is set, in catalog order."""
        return tuple(sp.id for sp in self.products if int(values.get(sp.y_name, 0)) >= 1)


# -------------------------
# Catalog hygiene
# -------------------------

def _has_content(p: Product) -> bool:
    return any(p.nutrients.get(k) > 0 for k in NUTRIENTS)


def filter_catalog(catalog: Iterable[Product]) -> Tuple[List[Product], Dict[str, int]]:
    """
    Keep products the model can use. Returns (eligible, dropped counts by reason).
    """
    eligible: List[Product] = []
    dropped: Dict[str, int] = {"inactive": 0, "not_optimizable": 0, "non_positive_price": 0, "no_content": 0}
    for p in catalog:
        if not p.active:
            dropped["inactive"] += 1
        elif not p.optimizable:
            dropped["not_optimizable"] += 1
        elif p.price_per_kg <= 0:
            dropped["non_positive_price"] += 1
        elif not _has_content(p):
            dropped["no_content"] += 1
        else:
            eligible.append(p)
    return eligible, {k: v for k, v in dropped.items() if v}


def _scale_products(products: Sequence[Product]) -> Tuple[ScaledProduct, ...]:
    out: List[ScaledProduct] = []
    for i, p in enumerate(products):
        out.append(
            ScaledProduct(
                index=i,
                product=p,
                price_minor=scale_price(p.price_per_kg),
                content_milli={k: scale_percent(p.nutrients.get(k)) for k in NUTRIENTS},
            )
        )
    return tuple(out)


# -------------------------
# Rows
# -------------------------

def _variables(products: Sequence[ScaledProduct], max_dose: int) -> List[MilpVariable]:
    variables: List[MilpVariable] = []
    for sp in products:
        variables.append(MilpVariable(name=sp.x_name, lower=0, upper=max_dose))
        variables.append(MilpVariable(name=sp.y_name, lower=0, upper=1, binary=True))
    return variables


def _linking_rows(products: Sequence[ScaledProduct], min_dose: int, max_dose: int) -> List[LinearConstraint]:
    # x_i - min*y_i >= 0 and x_i - max*y_i <= 0: dose is 0 unless selected
    rows: List[LinearConstraint] = []
    for sp in products:
        rows.append(
            LinearConstraint(name=f"dose_min_{sp.index}", terms={sp.x_name: 1, sp.y_name: -min_dose}, lower=0)
        )
        rows.append(
            LinearConstraint(name=f"dose_max_{sp.index}", terms={sp.x_name: 1, sp.y_name: -max_dose}, upper=0)
        )
    return rows


def _selection_rows(
    products: Sequence[ScaledProduct],
    max_products: int,
    required: Sequence[str],
    excluded: Sequence[str],
) -> List[LinearConstraint]:
    selected = {sp.y_name: 1 for sp in products}
    rows = [
        # An empty plan is never a strategy, even when every band admits zero supply
        LinearConstraint(name="min_products", terms=dict(selected), lower=1),
        LinearConstraint(name="max_products", terms=selected, upper=max_products),
    ]
    by_id = {sp.id: sp for sp in products}
    for pid in required:
        sp = by_id[pid]
        rows.append(LinearConstraint(name=f"required_{sp.index}", terms={sp.y_name: 1}, lower=1, upper=1))
    for pid in excluded:
        sp = by_id.get(pid)
        if sp is None:
            continue
        rows.append(LinearConstraint(name=f"excluded_{sp.index}", terms={sp.y_name: 1}, lower=0, upper=0))
    return rows


def _nutrient_rows(
    products: Sequence[ScaledProduct],
    target: NutrientTarget,
    bands: Mapping[Nutrient, ToleranceBand],
) -> List[LinearConstraint]:
    rows: List[LinearConstraint] = []
    hard = set(target.hard())
    for nutrient in NUTRIENTS:
        amount = target.amounts.get(nutrient)
        band = bands[nutrient]
        terms = {sp.x_name: sp.content_milli[nutrient] for sp in products if sp.content_milli[nutrient] > 0}

        if nutrient in hard:
            if not terms:
                logger.warning(
                    "builder.must_nutrient_unsupplied",
                    extra={"nutrient": nutrient},
                )
            lo = supply_lower_bound(amount, band.under_pct)
            hi = supply_upper_bound(amount, band.over_pct)
            if lo <= hi:
                rows.append(LinearConstraint(name=f"band_{nutrient}", terms=terms, lower=lo, upper=hi))
            else:
                # Zero-width band between two fixed-point steps: no integer supply fits
                rows.append(LinearConstraint(name=f"band_{nutrient}_lo", terms=terms, lower=lo))
                rows.append(LinearConstraint(name=f"band_{nutrient}_hi", terms=terms, upper=hi))
        elif band.soft_max_pct is not None and amount > 0 and terms:
            rows.append(
                LinearConstraint(
                    name=f"soft_max_{nutrient}",
                    terms=terms,
                    upper=supply_cap(amount, band.soft_max_pct),
                )
            )
        # Soft nutrient without soft_max: supplied >= 0 holds by variable bounds
    return rows


# -------------------------
# Public API
# -------------------------

def build_optimization_problem(
    request: SolveRequest,
    bands: Mapping[Nutrient, ToleranceBand],
) -> BuiltProblem:
    """
    Build the base model for a request that already passed FeasibilityChecker.

    Raises:
        InputError: a required product was dropped by catalog hygiene
    """
    target = request.nutrient_target()
    eligible, dropped = filter_catalog(request.catalog)

    if dropped:
        logger.info(
            "builder.catalog_filtered",
            extra={"count": len(eligible), "total": len(request.catalog), "dropped": dropped},
        )

    eligible_ids = {p.id for p in eligible}
    unusable = sorted(pid for pid in request.required_product_ids if pid not in eligible_ids)
    if unusable:
        raise InputError(
            InputReport.from_issues(
                [
                    InputIssue(
                        severity="error",
                        code="REQUIRED_NOT_USABLE",
                        message="Required product(s) have no price or no N/P/K/S content.",
                        product_ids=unusable,
                    )
                ]
            )
        )

    ignored = sorted(pid for pid in request.excluded_product_ids if pid not in eligible_ids)
    if ignored:
        logger.info("builder.excluded_not_in_catalog", extra={"count": len(ignored)})

    products = _scale_products(eligible)
    common = dict(
        products=products,
        target=target,
        bands=dict(bands),
        max_products=request.max_products,
        min_dose_kg_ha=request.min_dose_kg_ha,
        max_dose_kg_ha=request.max_dose_kg_ha,
        dropped=dropped,
    )

    if not products:
        logger.warning("builder.no_eligible_products", extra={"total": len(request.catalog)})
        return BuiltProblem(model=None, **common)

    constraints: List[LinearConstraint] = []
    constraints.extend(_linking_rows(products, request.min_dose_kg_ha, request.max_dose_kg_ha))
    constraints.extend(
        _selection_rows(products, request.max_products, request.required_product_ids, request.excluded_product_ids)
    )
    constraints.extend(_nutrient_rows(products, target, bands))

    model = MilpModel(
        name="fest",
        variables=_variables(products, request.max_dose_kg_ha),
        constraints=constraints,
        objective={sp.x_name: sp.price_minor for sp in products},
        metadata={
            "product_ids": [sp.id for sp in products],
            "must": list(target.hard()),
            "max_products": request.max_products,
        },
    )

    logger.info(
        "builder.model_built",
        extra={"count": len(products), "constraints": len(constraints)},
    )
    return BuiltProblem(model=model, **common)


def exclusion_cut(problem: BuiltProblem, selected_ids: Sequence[str], name: str) -> LinearConstraint:
    """
    No-good cut forbidding exactly this product set:
    sum_{i not in S} y_i - sum_{i in S} y_i >= 1 - |S|
    """
    selected = set(selected_ids)
    terms = {sp.y_name: (-1 if sp.id in selected else 1) for sp in problem.products}
    return LinearConstraint(name=name, terms=terms, lower=1 - len(selected))


def add_exclusion_cut(problem: BuiltProblem, model: MilpModel, selected_ids: Sequence[str]) -> MilpModel:
    """Return a new model that also forbids the given product set."""
    existing = sum(1 for n in model.constraint_names() if n.startswith(CUT_PREFIX))
    cut = exclusion_cut(problem, selected_ids, f"{CUT_PREFIX}{existing}")
    return model.with_constraints([cut])
