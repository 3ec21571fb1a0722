"""
Wrangling stage: raw CSVs -> clean CSVs + frozen transformer state.

Steps:
- standardise column names (upper case, non-alphanumerics -> "_")
- strip wiki reference marks from text columns
- extract TOTAL_BIKES from the free-text BICYCLES column
- coerce weather columns to numbers
- report and impute missing values in the Seoul history
- derive HOUR_CATEGORY, fit the feature transformer once and apply it
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Optional

import pandas as pd

from .config import BikeshareConfig
from .errors import ArtifactNotFoundError
from .features import add_hour_category, apply_frame, fit, save_state
from .io_utils import atomic_write_csv, ensure_dir
from .schemas import DATASETS, ArtifactHandle, clean_handle, raw_handle, validate_columns

logger = logging.getLogger(__name__)

_REFERENCE_PATTERNS = (
    re.compile(r"\[\d+\]"),
    re.compile(r"\[ref\]"),
    re.compile(r"\[citation needed\]"),
    re.compile(r"\[\w+\]"),
)
WEATHER_NUMERIC_PATTERN = re.compile(r"TEMPERATURE|HUMIDITY|WIND|PRESSURE|CLOUDS|VISIBILITY|LAT|LON")
MEDIAN_IMPUTE = (
    "TEMPERATURE_C", "HUMIDITY", "WIND_SPEED_M_S", "VISIBILITY_10M",
    "DEW_POINT_TEMPERATURE_C", "SOLAR_RADIATION_MJ_M2",
)
ZERO_IMPUTE = ("RAINFALL_MM", "SNOWFALL_CM")


def standardize_column_name(name: str) -> str:
    out = re.sub(r"[^A-Z0-9]+", "_", str(name).upper())
    return out.strip("_")


def standardize_column_names(df: pd.DataFrame) -> pd.DataFrame:
    return df.rename(columns=standardize_column_name)


def remove_reference_links(value):
    if not isinstance(value, str):
        return value
    for pattern in _REFERENCE_PATTERNS:
        value = pattern.sub("", value)
    return value.strip()


def strip_references(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    for col in out.select_dtypes(include="object").columns:
        out[col] = out[col].map(remove_reference_links)
    return out


def extract_total_bikes(df: pd.DataFrame) -> pd.DataFrame:
    """TOTAL_BIKES = leading integer of BICYCLES ("7,500 (+300 e-bikes)" -> 7500)."""
    if "BICYCLES" not in df.columns:
        logger.warning("[wrangle] BICYCLES column not found; TOTAL_BIKES not created")
        return df
    out = df.copy()
    out["BICYCLES_ORIGINAL"] = out["BICYCLES"]
    digits = out["BICYCLES"].astype(str).str.replace(",", "", regex=False).str.extract(r"^(\d+)")[0]
    out["TOTAL_BIKES"] = pd.to_numeric(digits, errors="coerce")
    logger.info(
        "[wrangle] TOTAL_BIKES: %d of %d rows converted",
        int(out["TOTAL_BIKES"].notna().sum()), len(out),
    )
    return out


def coerce_weather_numeric(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    for col in out.columns:
        if WEATHER_NUMERIC_PATTERN.search(col):
            out[col] = pd.to_numeric(out[col], errors="coerce")
    return out


def report_missing(df: pd.DataFrame, name: str) -> pd.DataFrame:
    counts = df.isna().sum()
    report = pd.DataFrame(
        {
            "column": counts.index,
            "missing_count": counts.values,
            "missing_percent": (counts.values / max(len(df), 1) * 100).round(2),
        }
    )
    report = report[report["missing_count"] > 0].reset_index(drop=True)
    if report.empty:
        logger.info("[wrangle] %s: no missing values", name)
    else:
        for row in report.itertuples(index=False):
            logger.info("[wrangle] %s: %s missing %d (%.2f%%)", name, row.column, row.missing_count, row.missing_percent)
    return report


def impute_seoul(df: pd.DataFrame) -> pd.DataFrame:
    """Drop rows without a target, median-impute weather, zero-impute precipitation."""
    out = df.copy()
    out["RENTED_BIKE_COUNT"] = pd.to_numeric(out["RENTED_BIKE_COUNT"], errors="coerce")
    before = len(out)
    out = out[out["RENTED_BIKE_COUNT"].notna()].copy()
    if len(out) < before:
        logger.info("[wrangle] dropped %d rows without RENTED_BIKE_COUNT", before - len(out))

    for col in MEDIAN_IMPUTE + ZERO_IMPUTE + ("HOUR",):
        out[col] = pd.to_numeric(out[col], errors="coerce")
    for col in MEDIAN_IMPUTE:
        out[col] = out[col].fillna(out[col].median())
    for col in ZERO_IMPUTE:
        out[col] = out[col].fillna(0.0)
    return out.reset_index(drop=True)


def clean_seoul_bikes(df_raw: pd.DataFrame) -> pd.DataFrame:
    df = standardize_column_names(df_raw)
    validate_columns(df, DATASETS["seoul_bike_sharing"][0], name="raw_seoul_bike_sharing")
    report_missing(df, "seoul_bike_sharing")
    df = impute_seoul(df)
    return add_hour_category(df)


def clean_bike_systems(df_raw: pd.DataFrame) -> pd.DataFrame:
    df = strip_references(standardize_column_names(df_raw))
    return extract_total_bikes(df)


def clean_weather_forecast(df_raw: pd.DataFrame) -> pd.DataFrame:
    df = strip_references(standardize_column_names(df_raw))
    df = coerce_weather_numeric(df)
    if "DATETIME" in df.columns:
        df["DATETIME"] = pd.to_datetime(df["DATETIME"], errors="coerce")
    return df


def clean_world_cities(df_raw: pd.DataFrame) -> pd.DataFrame:
    df = strip_references(standardize_column_names(df_raw))
    for col in ("LAT", "LNG", "POPULATION"):
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    return df


_CLEANERS = {
    "bike_sharing_systems": clean_bike_systems,
    "cities_weather_forecast": clean_weather_forecast,
    "worldcities": clean_world_cities,
}


def _raw(artifacts: Dict[str, ArtifactHandle], config: BikeshareConfig, name: str) -> ArtifactHandle:
    return artifacts.get(f"raw_{name}") or raw_handle(config, name)


def wrangle_seoul(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, ArtifactHandle]:
    """Clean the training history and fit + persist the transformer state."""
    artifacts = artifacts or {}
    out_handle = clean_handle(config, "seoul_bike_sharing")
    state_path = config.transformer_state_path()
    state_handle = ArtifactHandle(name="transformer_state", path=str(state_path), kind="json")

    if out_handle.exists() and state_path.exists() and not config.overwrite:
        logger.info("[wrangle] clean seoul + state exist, skipping: %s", out_handle.path)
        return {out_handle.name: out_handle, state_handle.name: state_handle}

    df_raw = _raw(artifacts, config, "seoul_bike_sharing").load(validate=False)
    df = clean_seoul_bikes(df_raw)

    state = fit(df)
    features = apply_frame(state, df)
    df_clean = pd.concat([df, features], axis=1)

    atomic_write_csv(df_clean, out_handle.path)
    save_state(state, state_path)
    logger.info(
        "[wrangle] wrote clean: %s (%d rows, %d features, state %s)",
        out_handle.path, len(df_clean), len(state.feature_columns), state.fingerprint()[:12],
    )
    return {out_handle.name: out_handle, state_handle.name: state_handle}


def wrangle_dataset(config: BikeshareConfig, name: str,
                    artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Optional[ArtifactHandle]:
    artifacts = artifacts or {}
    out_handle = clean_handle(config, name)
    if out_handle.exists() and not config.overwrite:
        logger.info("[wrangle] clean exists, skipping: %s", out_handle.path)
        return out_handle

    try:
        df_raw = _raw(artifacts, config, name).load(validate=False)
    except ArtifactNotFoundError as e:
        logger.warning("[wrangle] %s", e.message)
        return None

    df = _CLEANERS[name](df_raw)
    validate_columns(df, out_handle.schema, name=out_handle.name)
    atomic_write_csv(df, out_handle.path)
    logger.info("[wrangle] wrote clean: %s (%d rows)", out_handle.path, len(df))
    return out_handle


def run_wrangling(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, ArtifactHandle]:
    """Stage handler."""
    ensure_dir(config.clean_dir())
    handles = dict(wrangle_seoul(config, artifacts))
    for name in _CLEANERS:
        handle = wrangle_dataset(config, name, artifacts)
        if handle is not None:
            handles[handle.name] = handle
    return handles
