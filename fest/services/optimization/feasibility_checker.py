# fest/services/optimization/feasibility_checker.py
"""
Fast, deterministic input checks BEFORE any model is built or solved.

Catches contradictory requests (required+excluded, too many required products,
empty target, inverted dose bounds) so they surface as InputError rather than
as an infeasible solve.
"""
from __future__ import annotations

from collections import Counter
from typing import List, Set

from fest.schemas.feasibility import InputIssue, InputReport
from fest.schemas.solve import SolveRequest

# A must-flagged nutrient needs at least this target to be meaningful (kg/ha)
MIN_MUST_TARGET_KG = 1.0


class InputError(ValueError):
    """Malformed or contradictory request. Never retried."""

    def __init__(self, report: InputReport) -> None:
        self.report = report
        codes = ", ".join(report.error_codes()) or "unknown"
        super().__init__(f"Invalid optimization input: {codes}")

    @property
    def issues(self) -> List[InputIssue]:
        return list(self.report.errors)


class FeasibilityChecker:
    """
    Request-level checks. Operates purely on SolveRequest.
    """

    def check(self, request: SolveRequest) -> InputReport:
        """
        Run all checks and return a structured report.

        Args:
            request: The solve request to check

        Returns:
            InputReport with errors and warnings
        """
        issues: List[InputIssue] = []

        catalog_ids = {p.id for p in request.catalog}

        # --- 1) Target sanity ---
        issues.extend(self._check_target(request))

        # --- 2) Dose bounds ---
        issues.extend(self._check_dose_bounds(request))

        # --- 3) Governance contradictions ---
        issues.extend(self._check_required_count(request))
        issues.extend(self._check_required_excluded_overlap(request))
        issues.extend(self._check_required_references(request))
        issues.extend(self._check_excluded_references(request, catalog_ids))

        # --- 4) Catalog sanity ---
        issues.extend(self._check_duplicate_ids(request))

        return InputReport.from_issues(issues)

    def ensure_valid(self, request: SolveRequest) -> InputReport:
        """Like check(), but raises InputError when the report has errors."""
        report = self.check(request)
        if not report.is_valid:
            raise InputError(report)
        return report

    # -------------------------
    # Target
    # -------------------------

    def _check_target(self, request: SolveRequest) -> List[InputIssue]:
        issues: List[InputIssue] = []
        target = request.nutrient_target()

        if not target.needed():
            issues.append(
                InputIssue(
                    severity="error",
                    code="EMPTY_TARGET",
                    message="All nutrient targets are zero; nothing to optimize.",
                )
            )
            return issues

        for nutrient in target.must.musts():
            value = target.amounts.get(nutrient)
            if value < MIN_MUST_TARGET_KG:
                issues.append(
                    InputIssue(
                        severity="error",
                        code="MUST_TARGET_TOO_LOW",
                        message=f"Must nutrient {nutrient} has target {value} kg/ha, minimum is {MIN_MUST_TARGET_KG}.",
                        nutrient=nutrient,
                        details={"target": value, "minimum": MIN_MUST_TARGET_KG},
                    )
                )

        if not target.hard():
            issues.append(
                InputIssue(
                    severity="error",
                    code="NO_MUST_NUTRIENT",
                    message="At least one nutrient with a positive target must be flagged as must.",
                    details={"needed": list(target.needed())},
                )
            )
        return issues

    # -------------------------
    # Dose bounds
    # -------------------------

    def _check_dose_bounds(self, request: SolveRequest) -> List[InputIssue]:
        if request.min_dose_kg_ha > request.max_dose_kg_ha:
            return [
                InputIssue(
                    severity="error",
                    code="INVERTED_DOSE_BOUNDS",
                    message="minDoseKgHa is greater than maxDoseKgHa.",
                    details={
                        "min_dose_kg_ha": request.min_dose_kg_ha,
                        "max_dose_kg_ha": request.max_dose_kg_ha,
                    },
                )
            ]
        return []

    # -------------------------
    # Governance checks
    # -------------------------

    def _check_required_count(self, request: SolveRequest) -> List[InputIssue]:
        required = request.required_product_ids
        if len(required) > request.max_products:
            return [
                InputIssue(
                    severity="error",
                    code="TOO_MANY_REQUIRED",
                    message=f"{len(required)} required products exceed maxProducts={request.max_products}.",
                    product_ids=list(required),
                    details={"required_count": len(required), "max_products": request.max_products},
                )
            ]
        return []

    def _check_required_excluded_overlap(self, request: SolveRequest) -> List[InputIssue]:
        excluded = set(request.excluded_product_ids)
        both = sorted(pid for pid in request.required_product_ids if pid in excluded)
        if both:
            return [
                InputIssue(
                    severity="error",
                    code="REQUIRED_EXCLUDED_OVERLAP",
                    message="Product(s) are both required and excluded.",
                    product_ids=both,
                )
            ]
        return []

    def _check_required_references(self, request: SolveRequest) -> List[InputIssue]:
        """Required products must exist and be usable by the model."""
        eligible = {p.id for p in request.catalog if p.active and p.optimizable}
        missing = sorted(pid for pid in request.required_product_ids if pid not in eligible)
        if missing:
            return [
                InputIssue(
                    severity="error",
                    code="REQUIRED_NOT_IN_CATALOG",
                    message="Required product(s) are not present among active, optimizable catalog products.",
                    product_ids=missing,
                )
            ]
        return []

    def _check_excluded_references(self, request: SolveRequest, catalog_ids: Set[str]) -> List[InputIssue]:
        missing = sorted(pid for pid in request.excluded_product_ids if pid not in catalog_ids)
        if missing:
            return [
                InputIssue(
                    severity="warning",
                    code="EXCLUDED_NOT_IN_CATALOG",
                    message="Excluded product(s) are not in the catalog and are ignored.",
                    product_ids=missing,
                )
            ]
        return []

    # -------------------------
    # Catalog
    # -------------------------

    def _check_duplicate_ids(self, request: SolveRequest) -> List[InputIssue]:
        counts = Counter(p.id for p in request.catalog)
        dupes = sorted(pid for pid, n in counts.items() if n > 1)
        if dupes:
            return [
                InputIssue(
                    severity="error",
                    code="DUPLICATE_PRODUCT_ID",
                    message="Catalog contains duplicate product ids.",
                    product_ids=dupes,
                )
            ]
        return []
