# =============================================================================
# config.py — Application configuration
#
# All tunable settings are defined here using Pydantic's BaseSettings, so
# every value can be overridden via environment variable (or a local .env
# file) without touching code.
#
# The simulation knobs live here too: iteration counts, the sensitivity
# mini-run size, worker count and the wall-clock deadline. The engine reads
# them as defaults; callers can still pass explicit values per run.
# =============================================================================

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # ── Server ────────────────────────────────────────────────────────────────
    port: int = 8000
    host: str = "0.0.0.0"
    debug: bool = False
    log_level: str = "INFO"

    # ── Simulation defaults ───────────────────────────────────────────────────
    # 10,000 iterations per forecast; the tornado analysis re-runs the model
    # at 2,000 iterations for every perturbed assumption (up and down).
    default_iterations: int = 10_000
    max_iterations: int = 100_000
    sensitivity_iterations: int = 2_000
    max_open_deals: int = 5_000
    histogram_buckets: int = 100
    top_variance_drivers: int = 5

    # ── Execution ─────────────────────────────────────────────────────────────
    # workers > 1 splits iterations across a process pool. Runs smaller than
    # parallel_min_iterations always stay in-process.
    simulation_workers: int = 1
    parallel_min_iterations: int = 5_000
    simulation_deadline_seconds: Optional[float] = 120.0

    # ── Data quality & risk signals ───────────────────────────────────────────
    reliable_sample_size: int = 20
    risk_evidence_max_age_days: int = 7
    rep_average_lookback_months: int = 24

    # ── CORS — which origins can call this API ────────────────────────────────
    allowed_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]

    # ── API metadata ──────────────────────────────────────────────────────────
    api_title: str = "Monte Carlo Revenue Forecast API"
    api_version: str = "2.0.0"
    api_description: str = (
        "Stateless Monte Carlo revenue forecasting service. Accepts fitted "
        "distributions and open pipeline, returns percentile outcomes, a "
        "histogram and a ranked variance-driver (tornado) breakdown."
    )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


# Module-level singleton — import this everywhere instead of re-instantiating
settings = Settings()
