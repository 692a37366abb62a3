# fest/workers/solver_worker.py
"""
One solver worker = one OS process running one backend instance.

Wire protocol over a duplex multiprocessing Pipe (dict envelopes):
    child  -> parent  {"type": "ready", "pid": int}
    parent -> child   {"type": "solve", "id": str, "model": MilpModel.model_dump()}
    child  -> parent  {"type": "result", "id": str, "result": RawResult.model_dump()}
                      {"type": "error", "id": str, "message": str}
    parent -> child   {"type": "shutdown"}

The parent-side SolverWorker methods block; the pool calls them from helper
threads and never from the event loop itself.
"""
from __future__ import annotations

import enum
import logging
import os
import signal
from multiprocessing.connection import Connection, wait
from typing import Any, Dict, Optional

from fest.config import setup_json_logging
from fest.schemas.optimization_problem import MilpModel
from fest.schemas.optimization_solution import RawResult
from fest.services.solvers.base import load_backend
from fest.workers.errors import SolverError, SolveTimeout, WorkerCrashed, WorkerStartupError

logger = logging.getLogger(__name__)


class WorkerState(str, enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    CRASHED = "crashed"
    RESTARTING = "restarting"
    DRAINING = "draining"
    TERMINATED = "terminated"


# -------------------------
# Child process side
# -------------------------

def run_worker_process(
    conn: Connection,
    backend_path: str,
    backend_options: Optional[Dict[str, Any]],
    log_level: int,
) -> None:
    """Entry point of a worker process: load the backend, then serve solves until told to stop."""
    setup_json_logging(log_level=log_level)
    # Ctrl-C reaches the whole process group; shutdown is driven by the parent
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    try:
        backend = load_backend(backend_path, backend_options)
    except Exception as e:
        logger.exception("solver_worker.backend_load_failed", extra={"reason": backend_path})
        conn.send({"type": "startup_error", "message": f"{type(e).__name__}: {e}"})
        conn.close()
        return

    conn.send({"type": "ready", "pid": os.getpid()})
    logger.info("solver_worker.ready", extra={"pid": os.getpid()})

    served = 0
    while True:
        try:
            msg = conn.recv()
        except (EOFError, OSError):
            # Parent went away
            break

        mtype = msg.get("type") if isinstance(msg, dict) else None
        if mtype == "shutdown":
            break
        if mtype != "solve":
            logger.warning("solver_worker.unknown_message", extra={"reason": str(mtype)})
            continue

        request_id = msg.get("id")
        try:
            model = MilpModel.model_validate(msg["model"])
            result = backend.solve(model)
            reply = {"type": "result", "id": request_id, "result": result.model_dump()}
        except Exception as e:
            logger.exception("solver_worker.solve_failed", extra={"request_id": request_id})
            reply = {"type": "error", "id": request_id, "message": f"{type(e).__name__}: {e}"}

        try:
            conn.send(reply)
        except (BrokenPipeError, OSError):
            break
        served += 1

    logger.info("solver_worker.exit", extra={"pid": os.getpid(), "count": served})
    conn.close()


# -------------------------
# Parent side
# -------------------------

class SolverWorker:
    """
    Parent-side handle of one worker process.

    Holds the process, the parent end of its pipe and its state. Not thread-safe:
    the pool guarantees one caller at a time per handle.
    """

    def __init__(
        self,
        slot: int,
        backend_path: str,
        backend_options: Optional[Dict[str, Any]],
        ctx: Any,
        log_level: int = logging.INFO,
    ) -> None:
        self.slot = slot
        self.backend_path = backend_path
        self.backend_options = dict(backend_options or {})
        self.log_level = log_level
        self.state = WorkerState.RESTARTING
        self.solve_count = 0
        self._ctx = ctx
        self._process = None
        self._conn: Optional[Connection] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def exitcode(self) -> Optional[int]:
        return self._process.exitcode if self._process is not None else None

    @property
    def sentinel(self) -> Optional[int]:
        """Becomes ready once the process has exited."""
        return self._process.sentinel if self._process is not None else None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def wait_for_exit(self) -> None:
        """Block until the process exits. Does not reap it."""
        sentinel = self.sentinel
        if sentinel is not None:
            wait([sentinel])

    def start(self, startup_timeout: float) -> "SolverWorker":
        """Spawn the process and block until it reports ready."""
        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        process = self._ctx.Process(
            target=run_worker_process,
            args=(child_conn, self.backend_path, self.backend_options, self.log_level),
            name=f"fest-solver-{self.slot}",
            daemon=True,
        )
        process.start()
        # Only the child keeps its end; EOF then tracks the child's lifetime
        child_conn.close()

        ready = wait([parent_conn, process.sentinel], timeout=startup_timeout)
        msg: Dict[str, Any] = {}
        if parent_conn in ready:
            try:
                msg = parent_conn.recv()
            except (EOFError, OSError):
                msg = {}

        if msg.get("type") != "ready":
            reason = msg.get("message") or ("timeout" if not ready else f"exitcode={process.exitcode}")
            self._reap(process, parent_conn)
            raise WorkerStartupError(f"solver worker {self.slot} failed to start: {reason}")

        self._process = process
        self._conn = parent_conn
        self.solve_count = 0
        self.state = WorkerState.IDLE
        logger.info("solver_worker.started", extra={"slot": self.slot, "pid": process.pid})
        return self

    def request(self, model: MilpModel, request_id: str, timeout: float) -> RawResult:
        """
        Send one solve and block for its reply.

        Raises:
            SolveTimeout: no reply within timeout (worker must then be killed)
            WorkerCrashed: process died, pipe broke, or reply did not match request_id
            SolverError: backend raised inside the worker
        """
        conn, process = self._conn, self._process
        if conn is None or process is None:
            raise WorkerCrashed(f"solver worker {self.slot} is not running")

        try:
            conn.send({"type": "solve", "id": request_id, "model": model.model_dump()})
            ready = wait([conn, process.sentinel], timeout=timeout)
        except (BrokenPipeError, EOFError, OSError) as e:
            raise WorkerCrashed(f"solver worker {self.slot} pipe failed: {e}") from e

        if not ready:
            raise SolveTimeout(
                f"solve exceeded {timeout:g}s",
                details={"timeout_seconds": timeout, "slot": self.slot},
            )

        if conn not in ready:
            raise WorkerCrashed(
                f"solver worker {self.slot} exited during solve",
                details={"exitcode": self._exitcode_after_death(), "slot": self.slot},
            )

        try:
            msg = conn.recv()
        except (EOFError, OSError) as e:
            raise WorkerCrashed(
                f"solver worker {self.slot} exited during solve",
                details={"exitcode": self._exitcode_after_death(), "slot": self.slot},
            ) from e

        if not isinstance(msg, dict) or msg.get("id") != request_id:
            # Stale or foreign reply: the pipe can no longer be trusted
            raise WorkerCrashed(
                f"solver worker {self.slot} replied out of order",
                details={"expected": request_id, "got": msg.get("id") if isinstance(msg, dict) else None},
            )

        if msg.get("type") == "error":
            raise SolverError(str(msg.get("message") or "solver backend failed"), details={"slot": self.slot})

        self.solve_count += 1
        return RawResult.model_validate(msg["result"])

    def stop(self, grace: float = 1.0) -> None:
        """Ask the process to exit; escalate to terminate and kill after grace."""
        process, conn = self._process, self._conn
        if process is None:
            return
        self.state = WorkerState.DRAINING
        if conn is not None:
            try:
                conn.send({"type": "shutdown"})
            except (BrokenPipeError, OSError):
                pass
        process.join(grace)
        if process.is_alive():
            process.terminate()
            process.join(1.0)
        self._reap(process, conn)
        self.state = WorkerState.TERMINATED

    def kill(self) -> None:
        """Kill without waiting for the current solve."""
        process, conn = self._process, self._conn
        if process is None:
            return
        self._reap(process, conn)
        self.state = WorkerState.TERMINATED

    def _exitcode_after_death(self) -> Optional[int]:
        if self._process is None:
            return None
        self._process.join(0.5)
        return self._process.exitcode

    @staticmethod
    def _reap(process: Any, conn: Optional[Connection]) -> None:
        if process.is_alive():
            process.kill()
        process.join(5.0)
        if conn is not None:
            conn.close()
