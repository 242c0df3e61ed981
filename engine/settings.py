"""
Trust Engine Configuration

All settings load from environment variables with defaults suitable for
development and tests.
"""
import os
from functools import lru_cache
from typing import Optional


def _env_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


class Settings:
    def __init__(self):
        # === Storage ===
        self.DB_URL = os.getenv("TRUST_DB_URL", "sqlite:///trust_engine.db")

        # === Trust graph ===
        self.ANCHOR_NODE_ID = os.getenv("TRUST_ANCHOR_NODE_ID", "anchor")
        self.DECAY_FACTOR = _env_float("TRUST_DECAY_FACTOR", "0.15")
        self.MAX_ITERATIONS = _env_int("TRUST_MAX_ITERATIONS", "100")
        self.CONVERGENCE_THRESHOLD = _env_float("TRUST_CONVERGENCE_THRESHOLD", "1e-6")
        self.ROW_TOLERANCE = _env_float("TRUST_ROW_TOLERANCE", "0.01")
        self.SOLVER_WORKERS = _env_int("TRUST_SOLVER_WORKERS", "4")

        deadline = os.getenv("TRUST_RUN_DEADLINE_SECONDS", "")
        self.RUN_DEADLINE_SECONDS: Optional[float] = (
            _env_float("TRUST_RUN_DEADLINE_SECONDS", deadline) if deadline else None
        )

        # === Referral chains ===
        self.CHAIN_MAX_HOPS = _env_int("TRUST_CHAIN_MAX_HOPS", "10")
        self.DEFAULT_PAYOUT = _env_int("TRUST_DEFAULT_PAYOUT", "10000")

        # === Logging ===
        self.LOG_LEVEL = os.getenv("TRUST_LOG_LEVEL", "INFO").upper()
        self.LOG_JSON = os.getenv("TRUST_LOG_JSON", "true").lower() in ("1", "true", "yes")

        self._validate()

    def _validate(self) -> None:
        if not 0.0 <= self.DECAY_FACTOR < 1.0:
            raise ValueError("TRUST_DECAY_FACTOR must be in [0, 1)")
        if self.MAX_ITERATIONS < 1:
            raise ValueError("TRUST_MAX_ITERATIONS must be at least 1")
        if self.CONVERGENCE_THRESHOLD <= 0:
            raise ValueError("TRUST_CONVERGENCE_THRESHOLD must be positive")
        if self.ROW_TOLERANCE < 0:
            raise ValueError("TRUST_ROW_TOLERANCE must not be negative")
        if self.SOLVER_WORKERS < 1:
            raise ValueError("TRUST_SOLVER_WORKERS must be at least 1")
        if self.CHAIN_MAX_HOPS < 1:
            raise ValueError("TRUST_CHAIN_MAX_HOPS must be at least 1")
        if self.DEFAULT_PAYOUT < 0:
            raise ValueError("TRUST_DEFAULT_PAYOUT must not be negative")
        if self.RUN_DEADLINE_SECONDS is not None and self.RUN_DEADLINE_SECONDS <= 0:
            raise ValueError("TRUST_RUN_DEADLINE_SECONDS must be positive")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
