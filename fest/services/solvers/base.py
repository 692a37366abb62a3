# fest/services/solvers/base.py
"""
Narrow backend interface: solve(MilpModel) -> RawResult.

Backends are instantiated inside worker processes from a "module:Class" path,
so the pool never has to pickle a solver object.
"""
from __future__ import annotations

import importlib
from typing import Any, Dict, Optional

from typing_extensions import Protocol, runtime_checkable

from fest.schemas.optimization_problem import MilpModel
from fest.schemas.optimization_solution import RawResult


@runtime_checkable
class SolverBackend(Protocol):
    def solve(self, model: MilpModel) -> RawResult:
        ...


def load_backend(path: str, options: Optional[Dict[str, Any]] = None) -> SolverBackend:
    """
    Import and instantiate a backend from "package.module:ClassName".

    options are passed to the class constructor as keyword arguments.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid solver backend path {path!r}; expected 'package.module:ClassName'")

    module = importlib.import_module(module_name)
    try:
        factory = getattr(module, attr)
    except AttributeError as e:
        raise ValueError(f"Solver backend {attr!r} not found in {module_name}") from e

    backend = factory(**(options or {}))
    if not isinstance(backend, SolverBackend):
        raise TypeError(f"{path} does not provide solve(model) -> RawResult")
    return backend
