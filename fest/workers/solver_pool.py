# fest/workers/solver_pool.py
"""
Fixed-size pool of solver worker processes.

Coordination model:
- One asyncio event loop owns the FIFO queue and the worker-slot table.
- One runner task per slot pulls jobs from the shared queue, so the pool
  interleaves independent callers fairly.
- Blocking pipe waits (SolverWorker.request/start/stop) run in helper threads;
  those threads never touch pool state.

Failure handling:
- queue full            -> Backpressure (fail fast)
- solve timeout         -> SolveTimeout, worker killed and replaced
- worker died           -> WorkerCrashed, worker replaced (no automatic retry)
- worker died idle      -> counted as a crash, replaced at once by its exit watcher
- backend raised        -> SolverError, worker replaced
- shutdown              -> queued and abandoned requests get PoolShuttingDown
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import multiprocessing
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from fest.config import Settings, resolve_log_level
from fest.schemas.optimization_problem import MilpModel
from fest.schemas.optimization_solution import RawResult
from fest.workers.errors import (
    Backpressure,
    PoolShuttingDown,
    SolverError,
    SolveTimeout,
    WorkerCrashed,
    WorkerStartupError,
)
from fest.workers.solver_worker import SolverWorker, WorkerState

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    model: MilpModel
    timeout: float
    future: "asyncio.Future[RawResult]"
    request_id: str
    enqueued_at: float = field(default_factory=time.monotonic)


class SolverPool:
    """
    Usage:
        pool = SolverPool(backend_path, size=2)
        await pool.start()
        result = await pool.submit(model, timeout=10)
        await pool.shutdown()

    or `async with SolverPool(...) as pool:`.
    """

    def __init__(
        self,
        backend_path: str,
        backend_options: Optional[Dict[str, Any]] = None,
        *,
        size: int = 2,
        queue_size: int = 32,
        default_timeout: float = 30.0,
        shutdown_grace: float = 5.0,
        max_solves_per_worker: int = 50,
        start_method: str = "spawn",
        startup_timeout: float = 60.0,
        log_level: int = logging.INFO,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be >= 1")
        if queue_size < 1:
            raise ValueError("queue_size must be >= 1")

        self.backend_path = backend_path
        self.backend_options = dict(backend_options or {})
        self.size = size
        self.queue_size = queue_size
        self.default_timeout = float(default_timeout)
        self.shutdown_grace = float(shutdown_grace)
        self.max_solves_per_worker = int(max_solves_per_worker)
        self.startup_timeout = float(startup_timeout)
        self.log_level = log_level
        self._ctx = multiprocessing.get_context(start_method)

        self._queue: Optional["asyncio.Queue[_Job]"] = None
        self._workers: List[SolverWorker] = []
        self._runners: List["asyncio.Task[None]"] = []
        self._in_flight: Dict[int, _Job] = {}
        self._spawning: Set["asyncio.Future[SolverWorker]"] = set()
        self._recovering: Dict[int, "asyncio.Task[None]"] = {}
        self._ids = itertools.count(1)

        self._started = False
        self._accepting = False
        self._closing = False
        self._closed: Optional[asyncio.Event] = None

        self._counters: Dict[str, int] = {
            "total_solves": 0,
            "restarts": 0,
            "timeouts": 0,
            "crashes": 0,
            "solver_errors": 0,
            "rejected": 0,
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "SolverPool":
        return cls(
            settings.SOLVER_BACKEND,
            {
                "max_time_seconds": settings.CPSAT_MAX_TIME_SECONDS,
                "num_workers": settings.CPSAT_NUM_WORKERS,
            },
            size=settings.SOLVER_POOL_SIZE,
            queue_size=settings.SOLVER_QUEUE_SIZE,
            default_timeout=settings.SOLVER_TIMEOUT_SECONDS,
            shutdown_grace=settings.SOLVER_SHUTDOWN_GRACE_SECONDS,
            max_solves_per_worker=settings.SOLVER_MAX_SOLVES_PER_WORKER,
            start_method=settings.SOLVER_START_METHOD,
            startup_timeout=settings.SOLVER_STARTUP_TIMEOUT_SECONDS,
            log_level=resolve_log_level(settings.LOG_LEVEL),
        )

    # -------------------------
    # Lifecycle
    # -------------------------

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def start(self) -> "SolverPool":
        """Spawn every worker and wait for each ready handshake."""
        if self._started:
            return self
        self._started = True
        self._queue = asyncio.Queue(maxsize=self.queue_size)

        t0 = time.monotonic()
        spawned = await asyncio.gather(
            *(self._spawn(slot) for slot in range(self.size)),
            return_exceptions=True,
        )
        failures = [s for s in spawned if isinstance(s, BaseException)]
        if failures:
            ok = [s for s in spawned if isinstance(s, SolverWorker)]
            await asyncio.gather(*(asyncio.to_thread(w.kill) for w in ok))
            self._closing = True
            raise failures[0]

        self._workers = list(spawned)  # type: ignore[arg-type]
        for slot, worker in enumerate(self._workers):
            self._watch(slot, worker)
        self._runners = [
            asyncio.create_task(self._run_slot(slot), name=f"fest-solver-runner-{slot}")
            for slot in range(self.size)
        ]
        self._accepting = True
        logger.info(
            "solver_pool.started",
            extra={"count": self.size, "elapsed_seconds": round(time.monotonic() - t0, 3)},
        )
        return self

    async def __aenter__(self) -> "SolverPool":
        return await self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -------------------------
    # Submit
    # -------------------------

    async def submit(self, model: MilpModel, timeout: Optional[float] = None) -> RawResult:
        """
        Solve one model on the next free worker.

        Raises:
            PoolShuttingDown, Backpressure, SolveTimeout, WorkerCrashed, SolverError
        """
        if not self._accepting or self._queue is None:
            raise PoolShuttingDown("solver pool is not accepting requests")

        loop = asyncio.get_running_loop()
        job = _Job(
            model=model,
            timeout=float(timeout) if timeout is not None else self.default_timeout,
            future=loop.create_future(),
            request_id=f"{os.getpid()}-{next(self._ids)}",
        )
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self._counters["rejected"] += 1
            logger.warning("solver_pool.backpressure", extra={"count": self._queue.qsize()})
            raise Backpressure(
                f"solver queue is full ({self.queue_size} waiting)",
                details={"queue_size": self.queue_size},
            ) from None

        return await job.future

    # -------------------------
    # Runner per slot
    # -------------------------

    async def _run_slot(self, slot: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                if job.future.done():
                    # Caller went away while queued
                    continue
                self._in_flight[slot] = job
                await self._dispatch(slot, job)
            finally:
                self._in_flight.pop(slot, None)
                self._queue.task_done()

    async def _dispatch(self, slot: int, job: _Job) -> None:
        recovering = self._recovering.get(slot)
        if recovering is not None:
            await recovering
        worker = self._workers[slot]
        if not worker.is_alive():
            # Died idle before its watcher reported it
            self._counters["crashes"] += 1
            await self._replace(slot, reason="dead_before_dispatch", kill=True)
            worker = self._workers[slot]

        worker.state = WorkerState.BUSY
        waited = time.monotonic() - job.enqueued_at
        try:
            result = await asyncio.to_thread(worker.request, job.model, job.request_id, job.timeout)
        except SolveTimeout as e:
            self._counters["timeouts"] += 1
            worker.state = WorkerState.CRASHED
            logger.warning(
                "solver_pool.timeout",
                extra={"slot": slot, "pid": worker.pid, "request_id": job.request_id},
            )
            self._settle(job, exc=e)
            await self._replace(slot, reason="timeout", kill=True)
        except WorkerCrashed as e:
            self._counters["crashes"] += 1
            worker.state = WorkerState.CRASHED
            logger.error(
                "solver_pool.worker_crashed",
                extra={"slot": slot, "pid": worker.pid, "request_id": job.request_id, "reason": e.message},
            )
            self._settle(job, exc=e)
            await self._replace(slot, reason="crash", kill=True)
        except SolverError as e:
            self._counters["solver_errors"] += 1
            worker.state = WorkerState.CRASHED
            logger.error(
                "solver_pool.solver_error",
                extra={"slot": slot, "pid": worker.pid, "request_id": job.request_id, "reason": e.message},
            )
            self._settle(job, exc=e)
            await self._replace(slot, reason="solver_error", kill=False)
        else:
            self._counters["total_solves"] += 1
            worker.state = WorkerState.IDLE
            logger.debug(
                "solver_pool.solved",
                extra={
                    "slot": slot,
                    "request_id": job.request_id,
                    "status": result.status,
                    "elapsed_seconds": round(waited, 4),
                },
            )
            self._settle(job, result=result)
            if worker.solve_count >= self.max_solves_per_worker:
                await self._replace(slot, reason="max_solves", kill=False)

    @staticmethod
    def _settle(job: _Job, result: Optional[RawResult] = None, exc: Optional[BaseException] = None) -> None:
        if job.future.done():
            return
        if exc is not None:
            job.future.set_exception(exc)
        else:
            job.future.set_result(result)  # type: ignore[arg-type]

    # -------------------------
    # Worker replacement
    # -------------------------

    def _start_worker(self, slot: int) -> SolverWorker:
        worker = SolverWorker(
            slot,
            self.backend_path,
            self.backend_options,
            self._ctx,
            log_level=self.log_level,
        )
        return worker.start(self.startup_timeout)

    async def _spawn(self, slot: int) -> SolverWorker:
        fut = asyncio.ensure_future(asyncio.to_thread(self._start_worker, slot))
        self._spawning.add(fut)
        try:
            # Shielded so a cancelled runner leaves the spawn to shutdown() to clean up
            worker = await asyncio.shield(fut)
        except WorkerStartupError:
            self._spawning.discard(fut)
            raise
        self._spawning.discard(fut)
        return worker

    async def _replace(self, slot: int, reason: str, kill: bool) -> None:
        old = self._workers[slot]
        old.state = WorkerState.RESTARTING
        if kill:
            await asyncio.to_thread(old.kill)
        else:
            await asyncio.to_thread(old.stop, 1.0)

        attempt = 0
        while not self._closing:
            try:
                worker = await self._spawn(slot)
            except WorkerStartupError:
                attempt += 1
                logger.exception("solver_pool.respawn_failed", extra={"slot": slot, "count": attempt})
                await asyncio.sleep(min(5.0, 0.5 * attempt))
                continue

            if self._closing:
                await asyncio.to_thread(worker.stop, 1.0)
                break

            self._workers[slot] = worker
            self._watch(slot, worker)
            self._counters["restarts"] += 1
            logger.info(
                "solver_pool.worker_replaced",
                extra={"slot": slot, "pid": worker.pid, "reason": reason},
            )
            return

        old.state = WorkerState.TERMINATED

    def _watch(self, slot: int, worker: SolverWorker) -> None:
        """Report the worker's exit to the loop from a dedicated thread."""
        loop = asyncio.get_running_loop()

        def _wait() -> None:
            worker.wait_for_exit()
            try:
                loop.call_soon_threadsafe(self._on_worker_exit, slot, worker)
            except RuntimeError:
                # Loop already closed; nothing left to replace
                return

        threading.Thread(target=_wait, name=f"fest-solver-watch-{slot}", daemon=True).start()

    def _on_worker_exit(self, slot: int, worker: SolverWorker) -> None:
        # Busy, recycled and stopped workers are handled by whoever ended them
        if self._closing or self._workers[slot] is not worker or worker.state != WorkerState.IDLE:
            return
        self._counters["crashes"] += 1
        worker.state = WorkerState.CRASHED
        logger.error(
            "solver_pool.worker_exited_idle",
            extra={"slot": slot, "pid": worker.pid, "reason": f"exitcode={worker.exitcode}"},
        )
        self._recovering[slot] = asyncio.create_task(self._recover(slot), name=f"fest-solver-recover-{slot}")

    async def _recover(self, slot: int) -> None:
        try:
            await self._replace(slot, reason="exited_idle", kill=True)
        finally:
            self._recovering.pop(slot, None)

    # -------------------------
    # Shutdown
    # -------------------------

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """
        Stop accepting, fail queued requests, give in-flight requests up to
        `grace` seconds, then stop every worker. Safe to call more than once.
        """
        if self._closed is not None:
            await self._closed.wait()
            return
        self._closed = asyncio.Event()
        self._accepting = False
        self._closing = True
        grace = self.shutdown_grace if grace is None else float(grace)

        try:
            # 1) queued -> PoolShuttingDown
            drained = 0
            if self._queue is not None:
                while True:
                    try:
                        job = self._queue.get_nowait()
                    except asyncio.QueueEmpty:
                        break
                    self._settle(job, exc=PoolShuttingDown("solver pool is shutting down"))
                    self._queue.task_done()
                    drained += 1

            # 2) in-flight get the grace window
            pending = [j.future for j in self._in_flight.values() if not j.future.done()]
            logger.info(
                "solver_pool.draining",
                extra={"count": len(pending), "queued": drained},
            )
            if pending and grace > 0:
                await asyncio.wait(pending, timeout=grace)

            # 3) abandon what is still running
            abandoned = 0
            for job in list(self._in_flight.values()):
                if not job.future.done():
                    abandoned += 1
                    self._settle(
                        job,
                        exc=PoolShuttingDown(
                            "solver pool shut down before the solve finished",
                            details={"grace_seconds": grace},
                        ),
                    )

            # 4) runners and idle-exit recoveries
            tasks = [*self._runners, *self._recovering.values()]
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            # 5) workers: kill busy ones, stop idle ones
            stops = []
            for worker in self._workers:
                if worker.state == WorkerState.BUSY:
                    stops.append(asyncio.to_thread(worker.kill))
                elif worker.state != WorkerState.TERMINATED:
                    stops.append(asyncio.to_thread(worker.stop, 1.0))
            await asyncio.gather(*stops, return_exceptions=True)

            # 6) spawns orphaned by cancelled runners
            if self._spawning:
                done, _ = await asyncio.wait(list(self._spawning))
                for fut in done:
                    if not fut.cancelled() and fut.exception() is None:
                        await asyncio.to_thread(fut.result().stop, 1.0)
                self._spawning.clear()

            for worker in self._workers:
                worker.state = WorkerState.TERMINATED

            logger.info(
                "solver_pool.stopped",
                extra={"count": abandoned, "solves": self._counters["total_solves"]},
            )
        finally:
            self._closed.set()

    # -------------------------
    # Introspection
    # -------------------------

    def stats(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "alive": sum(1 for w in self._workers if w.is_alive()),
            "busy": sum(1 for w in self._workers if w.state == WorkerState.BUSY),
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "queue_size": self.queue_size,
            "accepting": self._accepting,
            **self._counters,
            "workers": [
                {"slot": w.slot, "pid": w.pid, "state": w.state.value, "solves": w.solve_count}
                for w in self._workers
            ],
        }

