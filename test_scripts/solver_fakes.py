# test_scripts/solver_fakes.py
"""
Test-only solver backends and pool stand-ins.

The backends are top-level classes so spawned worker processes can load them
by path ("test_scripts.solver_fakes:ScriptedBackend").
"""
from __future__ import annotations

import os
import time
from typing import List, Optional, Sequence

from fest.schemas.optimization_problem import MilpModel, MilpVariable
from fest.schemas.optimization_solution import RawResult
from fest.services.solvers.ortools_cp_sat_adapter import OrtoolsCpSatSolverAdapter
from fest.workers.errors import PoolError

SCRIPTED = "test_scripts.solver_fakes:ScriptedBackend"
BROKEN = "test_scripts.solver_fakes:BrokenBackend"


class ScriptedBackend:
    """
    Behaviour chosen by model.name:
      "sleep:<seconds>"  sleep, then answer optimal
      "crash"            exit the process without replying
      "boom"             raise inside solve
      anything else      answer optimal at once
    """

    def __init__(self, **_options) -> None:
        pass

    def solve(self, model: MilpModel) -> RawResult:
        name = model.name
        if name.startswith("sleep:"):
            time.sleep(float(name.split(":", 1)[1]))
        elif name == "crash":
            os._exit(13)
        elif name == "boom":
            raise RuntimeError("boom")
        return RawResult(
            status="optimal",
            values={v.name: v.lower for v in model.variables},
            objective_value=0,
            diagnostics={"pid": os.getpid()},
        )


class BrokenBackend:
    def __init__(self, **_options) -> None:
        raise RuntimeError("backend cannot start")

    def solve(self, model: MilpModel) -> RawResult:  # pragma: no cover
        raise NotImplementedError


def tiny_model(name: str = "fest") -> MilpModel:
    return MilpModel(name=name, variables=[MilpVariable(name="x", lower=0, upper=1)])


class DirectPool:
    """In-process stand-in for SolverPool: solves with CP-SAT on the caller's thread."""

    def __init__(self) -> None:
        self.backend = OrtoolsCpSatSolverAdapter(max_time_seconds=10.0, num_workers=1)
        self.models: List[MilpModel] = []
        self.started = False
        self.stopped = False

    async def submit(self, model: MilpModel, timeout: Optional[float] = None) -> RawResult:
        self.models.append(model)
        return self.backend.solve(model)

    async def start(self) -> "DirectPool":
        self.started = True
        return self

    async def shutdown(self, grace: Optional[float] = None) -> None:
        self.stopped = True

    def stats(self) -> dict:
        return {"size": 1, "total_solves": len(self.models), "accepting": self.started and not self.stopped}


class FailingPool(DirectPool):
    """
    Raises the scripted failures in order (None = solve normally),
    then solves normally once the script is exhausted.
    """

    def __init__(self, failures: Sequence[Optional[PoolError]]) -> None:
        super().__init__()
        self.failures = list(failures)
        self.calls = 0

    async def submit(self, model: MilpModel, timeout: Optional[float] = None) -> RawResult:
        self.calls += 1
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        return await super().submit(model, timeout)
