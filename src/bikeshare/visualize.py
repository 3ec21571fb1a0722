"""
Visualization stage: static EDA charts of the Seoul history into
reports/figures/.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend; the stage runs headless
import matplotlib.pyplot as plt  # noqa: E402
import pandas as pd  # noqa: E402

from .config import BikeshareConfig  # noqa: E402
from .io_utils import TMP_SUFFIX, ensure_dir  # noqa: E402
from .schemas import ArtifactHandle, clean_handle  # noqa: E402

logger = logging.getLogger(__name__)

SEASON_ORDER = ["Winter", "Spring", "Summer", "Autumn"]


def _save(fig, path: Path) -> Path:
    """Write the figure to a temp file and publish it with os.replace."""
    ensure_dir(path.parent)
    tmp = path.with_suffix(path.suffix + TMP_SUFFIX)
    fig.savefig(tmp, format="png", dpi=150, bbox_inches="tight")
    plt.close(fig)
    os.replace(tmp, path)
    return path


def _with_dates(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out["DATE"] = pd.to_datetime(out["DATE"], format="%d/%m/%Y", errors="coerce")
    return out.dropna(subset=["DATE"])


def plot_demand_over_time(df: pd.DataFrame, out_dir: Path) -> Path:
    fig, ax = plt.subplots(figsize=(12, 6))
    sc = ax.scatter(df["DATE"], df["RENTED_BIKE_COUNT"], c=df["HOUR"], cmap="viridis", s=4, alpha=0.5)
    fig.colorbar(sc, ax=ax, label="Hour")
    ax.set_title("Seoul bike rentals over time")
    ax.set_xlabel("Date")
    ax.set_ylabel("Rented bikes")
    return _save(fig, out_dir / "demand_over_time.png")


def plot_demand_histogram(df: pd.DataFrame, out_dir: Path) -> Path:
    fig, ax = plt.subplots(figsize=(10, 6))
    ax.hist(df["RENTED_BIKE_COUNT"], bins=50, alpha=0.8, color="steelblue")
    ax.axvline(df["RENTED_BIKE_COUNT"].median(), color="darkred", linestyle="--", label="median")
    ax.legend()
    ax.set_title("Distribution of hourly rentals")
    ax.set_xlabel("Rented bikes")
    return _save(fig, out_dir / "demand_histogram.png")


def plot_temperature_vs_demand(df: pd.DataFrame, out_dir: Path) -> Path:
    seasons = [s for s in SEASON_ORDER if s in set(df["SEASONS"])]
    fig, axes = plt.subplots(1, max(len(seasons), 1), figsize=(4 * max(len(seasons), 1), 4), sharey=True, squeeze=False)
    for ax, season in zip(axes[0], seasons):
        sub = df[df["SEASONS"] == season]
        ax.scatter(sub["TEMPERATURE_C"], sub["RENTED_BIKE_COUNT"], c=sub["HOUR"], cmap="viridis", s=4, alpha=0.5)
        ax.set_title(season)
        ax.set_xlabel("Temperature (C)")
    axes[0][0].set_ylabel("Rented bikes")
    return _save(fig, out_dir / "temperature_vs_demand.png")


def plot_hourly_by_season(df: pd.DataFrame, out_dir: Path) -> Path:
    fig, ax = plt.subplots(figsize=(12, 6))
    hourly = df.groupby(["SEASONS", "HOUR"])["RENTED_BIKE_COUNT"].mean().reset_index()
    for season in SEASON_ORDER:
        sub = hourly[hourly["SEASONS"] == season]
        if not sub.empty:
            ax.plot(sub["HOUR"], sub["RENTED_BIKE_COUNT"], marker="o", label=season)
    ax.set_title("Average rentals by hour and season")
    ax.set_xlabel("Hour")
    ax.set_ylabel("Average rented bikes")
    ax.legend()
    return _save(fig, out_dir / "hourly_by_season.png")


def plot_daily_precipitation(df: pd.DataFrame, out_dir: Path) -> Path:
    daily = df.groupby("DATE")[["RAINFALL_MM", "SNOWFALL_CM"]].sum().reset_index()
    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(daily["DATE"], daily["RAINFALL_MM"], label="Rainfall (mm)")
    ax.plot(daily["DATE"], daily["SNOWFALL_CM"], label="Snowfall (cm)")
    ax.set_title("Daily precipitation")
    ax.legend()
    return _save(fig, out_dir / "daily_precipitation.png")


PLOTS = (
    plot_demand_over_time,
    plot_demand_histogram,
    plot_temperature_vs_demand,
    plot_hourly_by_season,
    plot_daily_precipitation,
)


def run_visualization(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, ArtifactHandle]:
    """Stage handler."""
    artifacts = artifacts or {}
    handle = artifacts.get("clean_seoul_bike_sharing") or clean_handle(config, "seoul_bike_sharing")
    df = _with_dates(handle.load())
    if df.empty:
        raise ValueError("No dated Seoul rows to plot")

    out_dir = config.figures_dir()
    written: List[Path] = [plot(df, out_dir) for plot in PLOTS]
    for path in written:
        logger.info("[viz] wrote %s", path)
    return {
        f"figure_{p.stem}": ArtifactHandle(name=f"figure_{p.stem}", path=str(p), kind="png")
        for p in written
    }
