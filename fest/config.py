# fest/config.py

from typing import Dict, Optional
from pathlib import Path
import json
import logging
import sys

from pydantic import BaseModel, Field, model_validator, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv
from pythonjsonlogger.json import JsonFormatter

load_dotenv()

# Custom JSON formatter that excludes null/None fields
class CustomJsonFormatter(JsonFormatter):
    """Custom JSON formatter that only includes fields with non-None values."""

    def add_fields(self, log_record, record, message_dict):
        """Override to filter out None values before adding to JSON output."""
        super().add_fields(log_record, record, message_dict)

        log_record_copy = dict(log_record)
        for key, value in log_record_copy.items():
            if value is None:
                del log_record[key]

def setup_json_logging(log_level: int = logging.INFO) -> None:
    """Initialize JSON logging configuration for the optimizer."""
    handler = logging.StreamHandler(sys.stdout)

    # Fields shared by the engine, the pool and the worker processes
    formatter = CustomJsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s "
        "%(process)d %(request_id)s %(slot)s %(pid)s %(status)s "
        "%(count)s %(total)s %(reason)s %(kind)s %(elapsed_seconds)s "
        "%(nutrient)s %(cost_minor)s %(objective)s %(dropped)s %(solves)s %(top_n)s "
        "%(constraints)s %(retries)s %(queued)s"
    )

    handler.setFormatter(formatter)

    root_logger = logging.getLogger("fest")
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers = []

    root_logger.addHandler(handler)

    # Prevent propagation to avoid duplicate logs
    root_logger.propagate = False


def resolve_log_level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


class ToleranceSetting(BaseModel):
    """Default tolerance band for one nutrient (percent numbers, 10 == 10%)."""
    under_pct: float = Field(..., ge=0, le=100)
    over_pct: float = Field(..., ge=0)
    soft_max_pct: Optional[float] = Field(default=None, gt=0)


BASE_DIR = Path(__file__).resolve().parent.parent  # project root folder


def _default_tolerances() -> Dict[str, ToleranceSetting]:
    return {
        "N": ToleranceSetting(under_pct=0, over_pct=2),
        "P": ToleranceSetting(under_pct=10, over_pct=50),
        "K": ToleranceSetting(under_pct=10, over_pct=50),
        "S": ToleranceSetting(under_pct=10, over_pct=50),
        "default": ToleranceSetting(under_pct=10, over_pct=50),
    }


class Settings(BaseSettings):
    # App
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Solver backend, loaded inside every worker process ("module:Class")
    SOLVER_BACKEND: str = "fest.services.solvers.ortools_cp_sat_adapter:OrtoolsCpSatSolverAdapter"

    # Worker pool
    SOLVER_POOL_SIZE: int = Field(default=2, ge=1, le=32)
    SOLVER_QUEUE_SIZE: int = Field(default=32, ge=1)
    SOLVER_TIMEOUT_SECONDS: float = Field(default=30.0, gt=0)
    SOLVER_STARTUP_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    SOLVER_SHUTDOWN_GRACE_SECONDS: float = Field(default=5.0, ge=0)
    SOLVER_MAX_SOLVES_PER_WORKER: int = Field(default=50, ge=1)
    SOLVER_START_METHOD: str = "spawn"

    # CP-SAT (per worker process)
    CPSAT_MAX_TIME_SECONDS: float = Field(default=20.0, gt=0)
    CPSAT_NUM_WORKERS: int = Field(default=1, ge=1)

    # Podium: upper bound on solves per request (trades completeness for latency)
    PODIUM_MAX_ITERATIONS: int = Field(default=50, ge=1)
    # Caller-side re-submits after a worker crash (the pool itself never retries)
    PODIUM_CRASH_RETRIES: int = Field(default=1, ge=0)

    # Warn when a soft nutrient exceeds this share of its target
    HIGH_LEVEL_THRESHOLD_PCT: float = Field(default=150.0, gt=0)

    DEFAULT_TOLERANCES: Dict[str, ToleranceSetting] = Field(default_factory=_default_tolerances)

    # path to JSON object {nutrient|"default": {under_pct, over_pct, soft_max_pct?}}
    TOLERANCE_CONFIG_FILE: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("SOLVER_START_METHOD")
    @classmethod
    def validate_start_method(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"spawn", "fork", "forkserver"}:
            raise ValueError(f"SOLVER_START_METHOD must be spawn, fork or forkserver, got {v!r}")
        return v

    @field_validator("SOLVER_BACKEND")
    @classmethod
    def validate_backend_path(cls, v: str) -> str:
        if ":" not in v:
            raise ValueError("SOLVER_BACKEND must look like 'package.module:ClassName'")
        return v

    @model_validator(mode="after")
    def load_tolerances_from_file(self) -> "Settings":
        """
        If TOLERANCE_CONFIG_FILE is set, read that JSON file and merge it
        over DEFAULT_TOLERANCES.
        """
        if self.TOLERANCE_CONFIG_FILE:
            cfg_path = Path(self.TOLERANCE_CONFIG_FILE)
            if not cfg_path.is_absolute():
                cfg_path = BASE_DIR / cfg_path

            if not cfg_path.exists():
                raise FileNotFoundError(
                    f"TOLERANCE_CONFIG_FILE points to {cfg_path}, but it does not exist."
                )

            with cfg_path.open("r", encoding="utf-8") as f:
                raw = json.load(f)

            if not isinstance(raw, dict):
                raise ValueError(
                    "TOLERANCE_CONFIG_FILE must contain a JSON object keyed by nutrient."
                )

            merged = dict(self.DEFAULT_TOLERANCES)
            for key, item in raw.items():
                merged[str(key).strip()] = ToleranceSetting.model_validate(item)
            self.DEFAULT_TOLERANCES = merged

        return self


settings = Settings()
