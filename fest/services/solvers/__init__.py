# fest/services/solvers/__init__.py
"""
Solver backends for MilpModel problems.

Each backend translates a MilpModel into solver-specific form, runs the solver,
and returns a RawResult. Backends are loaded by dotted path inside worker
processes (see fest.services.solvers.base.load_backend).
"""
from fest.services.solvers.base import SolverBackend, load_backend

__all__ = ["SolverBackend", "load_backend"]
