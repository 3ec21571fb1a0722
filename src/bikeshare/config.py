"""
Pipeline configuration.

Keep OPENWEATHER_API_KEY in env (prod) / .env (local). Everything else has a
sensible default and can be overridden with BIKESHARE_* variables.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


def new_run_id() -> str:
    """UTC timestamp down to microseconds plus a random suffix; unique per run."""
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f") + "_" + uuid.uuid4().hex[:8]


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    return raw.strip() if raw and raw.strip() else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class BikeshareConfig:
    # IO
    data_dir: str = "data"
    models_dir: str = "models"
    reports_dir: str = "reports"
    logs_dir: str = "logs"
    overwrite: bool = False

    # Collection sources
    openweather_base_url: str = "http://api.openweathermap.org/data/2.5/forecast"
    wiki_url: str = "https://en.wikipedia.org/wiki/List_of_bicycle-sharing_systems"
    seoul_bike_url: str = (
        "https://raw.githubusercontent.com/Navneet2409/"
        "bike-sharing-demand-prediction/main/SeoulBikeData.csv"
    )
    target_cities: Tuple[str, ...] = ("New York", "Paris", "Suzhou", "London", "Seoul")
    request_timeout: int = 30
    request_pause_seconds: float = 1.0

    # Stage timeouts (seconds)
    collect_timeout: float = 600
    wrangle_timeout: float = 300
    analysis_timeout: float = 180
    visualize_timeout: float = 240
    model_timeout: float = 900

    # Modeling
    test_size: float = 0.2
    random_state: int = 123
    cv_folds: int = 5
    rf_n_estimators: int = 200
    rf_max_features: Tuple[int, ...] = (3, 5, 8)
    rf_min_samples_split: Tuple[int, ...] = (5, 15, 25)
    regularization_alpha: float = 0.1
    n_jobs: int = 1

    # Fallback estimator: max(0, base + slope * temperature + noise)
    fallback_base: float = 200.0
    fallback_slope: float = 15.0
    fallback_noise_sd: float = 50.0
    fallback_seed: Optional[int] = None

    # Serving
    entity_aliases: Tuple[Tuple[str, str], ...] = field(
        default_factory=lambda: (("Suzhou", "Shanghai"),)
    )

    @classmethod
    def from_env(cls, **overrides) -> "BikeshareConfig":
        """
        Build a config from BIKESHARE_* environment variables (and .env).

        Explicit keyword overrides win over the environment.
        """
        load_dotenv()
        defaults = cls()
        cfg = cls(
            data_dir=_env_str("BIKESHARE_DATA_DIR", defaults.data_dir),
            models_dir=_env_str("BIKESHARE_MODELS_DIR", defaults.models_dir),
            reports_dir=_env_str("BIKESHARE_REPORTS_DIR", defaults.reports_dir),
            logs_dir=_env_str("BIKESHARE_LOGS_DIR", defaults.logs_dir),
            overwrite=_env_bool("BIKESHARE_OVERWRITE", defaults.overwrite),
            target_cities=_env_list("BIKESHARE_TARGET_CITIES", defaults.target_cities),
            n_jobs=_env_int("BIKESHARE_N_JOBS", defaults.n_jobs),
            rf_n_estimators=_env_int("BIKESHARE_RF_TREES", defaults.rf_n_estimators),
            model_timeout=_env_float("BIKESHARE_MODEL_TIMEOUT", defaults.model_timeout),
            fallback_noise_sd=_env_float("BIKESHARE_FALLBACK_NOISE_SD", defaults.fallback_noise_sd),
        )
        return replace(cfg, **overrides) if overrides else cfg

    def run_id(self) -> str:
        return new_run_id()

    def data_path(self) -> Path:
        return Path(self.data_dir)

    def raw_dir(self) -> Path:
        return self.data_path() / "raw"

    def clean_dir(self) -> Path:
        return self.data_path() / "clean"

    def models_path(self) -> Path:
        return Path(self.models_dir)

    def reports_path(self) -> Path:
        return Path(self.reports_dir)

    def logs_path(self) -> Path:
        return Path(self.logs_dir)

    def raw_path(self, name: str) -> Path:
        return self.raw_dir() / f"raw_{name}.csv"

    def clean_path(self, name: str) -> Path:
        return self.clean_dir() / f"{name}_clean.csv"

    def transformer_state_path(self) -> Path:
        return self.clean_dir() / "transformer_state.json"

    def candidates_dir(self) -> Path:
        return self.models_path() / "candidates"

    def best_model_path(self) -> Path:
        return self.models_path() / "best_model.joblib"

    def comparison_path(self) -> Path:
        return self.models_path() / "model_comparison.csv"

    def sql_report_path(self) -> Path:
        return self.reports_path() / "sql_analysis.json"

    def figures_dir(self) -> Path:
        return self.reports_path() / "figures"

    def run_log_path(self) -> Path:
        return self.logs_path() / "pipeline_run.json"

    def run_db_path(self) -> Path:
        return self.logs_path() / "pipeline_runs.sqlite"


def load_openweather_api_key() -> Optional[str]:
    """Read the OpenWeather key from env/.env; None when not configured."""
    load_dotenv()
    api_key = os.getenv("OPENWEATHER_API_KEY")
    return api_key or None
