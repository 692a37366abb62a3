from .fertilizer import (
	NUTRIENTS,
	Nutrient,
	NutrientAmounts,
	ProductContent,
	Product,
	MustFlags,
	ToleranceBand,
	NutrientTarget,
)
from .feasibility import InputIssue, InputReport
from .optimization_problem import MilpVariable, LinearConstraint, MilpModel
from .optimization_solution import RawResult, SolveStatus
from .solve import (
	SolveRequest,
	SolveResponse,
	StrategyResult,
	ProductDose,
	PercentOfTarget,
	WarningItem,
	ErrorInfo,
)

__all__ = [
	"NUTRIENTS",
	"Nutrient",
	"NutrientAmounts",
	"ProductContent",
	"Product",
	"MustFlags",
	"ToleranceBand",
	"NutrientTarget",
	"InputIssue",
	"InputReport",
	"MilpVariable",
	"LinearConstraint",
	"MilpModel",
	"RawResult",
	"SolveStatus",
	"SolveRequest",
	"SolveResponse",
	"StrategyResult",
	"ProductDose",
	"PercentOfTarget",
	"WarningItem",
	"ErrorInfo",
]
