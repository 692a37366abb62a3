# fest/workers/errors.py
"""
Typed failures raised by the solver pool.

Every failure carries a stable `kind` (mirrored in SolveResponse.error.kind)
and whether the caller may reasonably retry.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class PoolError(Exception):
    kind = "solver_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SolveTimeout(PoolError):
    """Solve exceeded its timeout; the worker was killed and replaced."""
    kind = "timeout"
    retryable = True


class WorkerCrashed(PoolError):
    """Worker process exited while holding the request."""
    kind = "worker_crashed"
    retryable = True


class SolverError(PoolError):
    """The backend raised inside the worker."""
    kind = "solver_error"
    retryable = False


class Backpressure(PoolError):
    """Queue is full."""
    kind = "backpressure"
    retryable = True


class PoolShuttingDown(PoolError):
    kind = "pool_shutting_down"
    retryable = True


class WorkerStartupError(RuntimeError):
    """A worker process did not report ready within its startup timeout."""
