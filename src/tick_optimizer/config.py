"""
Optimizer configuration using pydantic-settings.

Values are read from ``TICK_OPTIMIZER_*`` environment variables or a ``.env``
file, resolved once when the service is constructed.
"""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings

from tick_optimizer.engine.models import SessionAggregation


class OptimizerSettings(BaseSettings):
    """Process-level optimizer configuration."""

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False
    log_dir: Path = Path("logs")

    # Storage
    data_dir: Path = Path("data/sessions")
    runs_db_path: str = "data/optimization_runs.db"
    checkpoint_dir: str = "data/checkpoints"

    # Search limits
    max_combinations_default: int = 10000
    max_workers: int | None = None

    # Progress delivery
    progress_buffer_size: int = 256

    # Simulation
    initial_capital: float = 1000.0
    session_aggregation: SessionAggregation = SessionAggregation.MEAN
    outcome: str | None = "YES"

    # Results carried by the terminal event of a grid search
    completed_top_n: int = 10

    # Phase 9 refinement
    random_seed: int = 42
    random_samples: int = 50
    pair_top_k: int = 3
    pair_grid_points: int = 5
    max_pair_combinations: int = 100

    model_config = {"env_prefix": "TICK_OPTIMIZER_", "env_file": ".env", "extra": "ignore"}

    @field_validator("max_combinations_default", "progress_buffer_size", "completed_top_n")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("initial_capital")
    @classmethod
    def _positive_capital(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("initial_capital must be positive")
        return value
