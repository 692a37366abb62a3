# fest/main.py

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Request

from fest.config import Settings, resolve_log_level, setup_json_logging, settings as default_settings
from fest.api.routes.optimize import router as optimize_router
from fest.workers.solver_pool import SolverPool

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, pool: Optional[Any] = None) -> FastAPI:
    """
    pool: anything with start/shutdown/submit/stats; defaults to a SolverPool
    built from settings. It is started and shut down by the lifespan.
    """
    cfg = settings or default_settings
    setup_json_logging(log_level=resolve_log_level(cfg.LOG_LEVEL))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        solver_pool = pool if pool is not None else SolverPool.from_settings(cfg)
        await solver_pool.start()
        app.state.solver_pool = solver_pool
        app.state.settings = cfg
        logger.info("app.started", extra={"count": cfg.SOLVER_POOL_SIZE})
        try:
            yield
        finally:
            # Runs on SIGTERM/SIGINT via the server's graceful shutdown
            await solver_pool.shutdown()
            app.state.solver_pool = None
            logger.info("app.stopped")

    app = FastAPI(
        title="FEST - Fertilizer Optimization API",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(optimize_router)

    @app.get("/health")
    def health(request: Request):
        solver_pool = getattr(request.app.state, "solver_pool", None)
        return {"ok": True, "pool": solver_pool.stats() if solver_pool is not None else None}

    return app


app = create_app()
