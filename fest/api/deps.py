# fest/api/deps.py
from __future__ import annotations

from fastapi import HTTPException, Request

from fest.config import Settings, settings as default_settings
from fest.services.optimization.strategy_ranker import SolveSubmitter


def get_solver_pool(request: Request) -> SolveSubmitter:
    """Pool started by the app lifespan."""
    pool = getattr(request.app.state, "solver_pool", None)
    if pool is None:
        raise HTTPException(status_code=503, detail="Solver pool is not running")
    return pool


def get_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or default_settings
