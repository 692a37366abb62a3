# fest/schemas/feasibility.py
"""
Input report schemas for pre-solver validation.
Used to detect contradictory constraints before any model is built or solved.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


Severity = Literal["error", "warning"]


class InputIssue(BaseModel):
    """A single input issue (error or warning)."""
    model_config = ConfigDict(extra="ignore")

    severity: Severity
    code: str
    message: str

    product_ids: List[str] = Field(default_factory=list)
    nutrient: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class InputReport(BaseModel):
    """
    Structured pre-solve report.
    Errors make the request unusable; warnings are logged and carried along.
    """
    model_config = ConfigDict(extra="ignore")

    is_valid: bool
    errors: List[InputIssue] = Field(default_factory=list)
    warnings: List[InputIssue] = Field(default_factory=list)
    summary: str = ""

    @classmethod
    def from_issues(cls, issues: List[InputIssue]) -> "InputReport":
        """Build a report from a list of issues, auto-calculating validity."""
        errors = [i for i in issues if i.severity == "error"]
        warnings = [i for i in issues if i.severity == "warning"]
        is_valid = len(errors) == 0
        summary = (
            f"valid ({len(warnings)} warnings)" if is_valid else f"invalid ({len(errors)} errors, {len(warnings)} warnings)"
        )
        return cls(is_valid=is_valid, errors=errors, warnings=warnings, summary=summary)

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]
