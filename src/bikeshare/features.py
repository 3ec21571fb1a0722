"""
Feature transformer: raw rows -> model-ready numeric vectors.

`fit` runs once over the training set and freezes every scaling constant and
categorical level list into a TransformerState. `apply` only ever reads that
state, so a live forecast row and a training row with the same raw values
produce the same FeatureVector. Constants are never recomputed from a live
batch.

Field groups:
- bounded (min-max): HUMIDITY, HOUR
- unbounded (z-score): temperature, wind speed, visibility, dew point,
  solar radiation, rainfall, snowfall
- dummy-encoded: SEASONS, HOLIDAY, FUNCTIONING_DAY, HOUR_CATEGORY
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd

from .errors import (
    BikeshareError,
    InvalidTimestampError,
    MissingFieldError,
    SchemaMismatchError,
)

STATE_VERSION = 1

BOUNDED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("HUMIDITY", "HUMIDITY_NORM"),
    ("HOUR", "HOUR_NORM"),
)
UNBOUNDED_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("TEMPERATURE_C", "TEMPERATURE_STD"),
    ("WIND_SPEED_M_S", "WIND_SPEED_STD"),
    ("VISIBILITY_10M", "VISIBILITY_STD"),
    ("DEW_POINT_TEMPERATURE_C", "DEW_POINT_STD"),
    ("SOLAR_RADIATION_MJ_M2", "SOLAR_RADIATION_STD"),
    ("RAINFALL_MM", "RAINFALL_STD"),
    ("SNOWFALL_CM", "SNOWFALL_STD"),
)
# field -> dummy column prefix
CATEGORICAL_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("SEASONS", "SEASON"),
    ("HOLIDAY", "HOLIDAY"),
    ("FUNCTIONING_DAY", "FUNCTIONING_DAY"),
    ("HOUR_CATEGORY", "HOUR"),
)

# Live forecast rows use the weather API's names
LIVE_FIELD_ALIASES = {
    "TEMPERATURE": "TEMPERATURE_C",
    "WIND_SPEED": "WIND_SPEED_M_S",
    "VISIBILITY": "VISIBILITY_10M",
}
ZERO_DEFAULT_FIELDS = ("SOLAR_RADIATION_MJ_M2", "RAINFALL_MM", "SNOWFALL_CM")
CATEGORY_DEFAULTS = {"HOLIDAY": "No Holiday", "FUNCTIONING_DAY": "Yes"}

SEASON_BY_MONTH = {
    12: "Winter", 1: "Winter", 2: "Winter",
    3: "Spring", 4: "Spring", 5: "Spring",
    6: "Summer", 7: "Summer", 8: "Summer",
    9: "Autumn", 10: "Autumn", 11: "Autumn",
}


def season_for_month(month: int) -> str:
    return SEASON_BY_MONTH[int(month)]


def hour_bucket(hour: int) -> str:
    hour = int(hour)
    if 6 <= hour <= 9:
        return "MORNING_RUSH"
    if 17 <= hour <= 19:
        return "EVENING_RUSH"
    if 10 <= hour <= 16:
        return "DAYTIME"
    if 20 <= hour <= 23:
        return "EVENING"
    return "NIGHT"


def add_hour_category(df: pd.DataFrame, hour_col: str = "HOUR") -> pd.DataFrame:
    if hour_col not in df.columns:
        raise MissingFieldError(hour_col)
    out = df.copy()
    out["HOUR_CATEGORY"] = out[hour_col].map(hour_bucket)
    return out


def derive_dew_point(temperature: float, humidity: float) -> float:
    return temperature - ((100.0 - humidity) / 5.0)


def _slug(value: str) -> str:
    return re.sub(r"[^A-Z0-9]+", "_", str(value).upper()).strip("_")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    try:
        return bool(np.ndim(value) == 0 and pd.isna(value))
    except (TypeError, ValueError):
        return False


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScalingConstant:
    """
    Frozen scaling for one numeric field.

    minmax: loc=min, scale=max-min. zscore: loc=mean, scale=std.
    """

    field: str
    column: str
    method: str
    loc: float
    scale: float

    def normalize(self, value: float) -> float:
        return (float(value) - self.loc) / self.scale

    def denormalize(self, value: float) -> float:
        return float(value) * self.scale + self.loc

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"field": self.field, "column": self.column, "method": self.method}
        if self.method == "minmax":
            out.update({"min": self.loc, "max": self.loc + self.scale, "range": self.scale})
        else:
            out.update({"mean": self.loc, "std": self.scale})
        return out

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ScalingConstant":
        method = payload["method"]
        if method == "minmax":
            lo = float(payload["min"])
            spread = float(payload.get("range", float(payload["max"]) - lo)) or 1.0
            return cls(payload["field"], payload["column"], method, lo, spread)
        if method == "zscore":
            return cls(payload["field"], payload["column"], method, float(payload["mean"]), float(payload["std"]))
        raise ValueError(f"Unknown scaling method: {method}")


@dataclass(frozen=True)
class CategoricalLevels:
    field: str
    prefix: str
    levels: Tuple[str, ...]

    def columns(self) -> Tuple[str, ...]:
        return tuple(f"{self.prefix}_{_slug(level)}" for level in self.levels)

    def encode(self, value: Any) -> Tuple[float, ...]:
        level = str(value).strip()
        if level not in self.levels:
            raise SchemaMismatchError(
                f"{self.field}={level!r} is outside the fitted levels {list(self.levels)}",
                {"field": self.field, "value": level, "levels": list(self.levels)},
            )
        return tuple(1.0 if level == known else 0.0 for known in self.levels)


@dataclass(frozen=True)
class TransformerState:
    """Versioned, immutable output of `fit`."""

    scalers: Tuple[ScalingConstant, ...]
    categoricals: Tuple[CategoricalLevels, ...]
    version: int = STATE_VERSION
    n_rows: int = 0

    @property
    def feature_columns(self) -> Tuple[str, ...]:
        cols = tuple(s.column for s in self.scalers)
        for cat in self.categoricals:
            cols += cat.columns()
        return cols

    def scaler(self, name: str) -> ScalingConstant:
        for s in self.scalers:
            if name in (s.field, s.column):
                return s
        raise KeyError(name)

    def levels(self, field: str) -> Tuple[str, ...]:
        for cat in self.categoricals:
            if cat.field == field:
                return cat.levels
        raise KeyError(field)

    def normalize(self, name: str, value: float) -> float:
        return self.scaler(name).normalize(value)

    def denormalize(self, name: str, value: float) -> float:
        return self.scaler(name).denormalize(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "n_rows": self.n_rows,
            "scalers": [s.to_dict() for s in self.scalers],
            "categoricals": [
                {"field": c.field, "prefix": c.prefix, "levels": list(c.levels)}
                for c in self.categoricals
            ],
            "feature_columns": list(self.feature_columns),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "TransformerState":
        version = int(payload.get("version", -1))
        if version != STATE_VERSION:
            raise SchemaMismatchError(
                f"Unsupported transformer state version {version} (expected {STATE_VERSION})"
            )
        state = cls(
            scalers=tuple(ScalingConstant.from_dict(s) for s in payload["scalers"]),
            categoricals=tuple(
                CategoricalLevels(c["field"], c["prefix"], tuple(c["levels"]))
                for c in payload["categoricals"]
            ),
            version=version,
            n_rows=int(payload.get("n_rows", 0)),
        )
        declared = payload.get("feature_columns")
        if declared is not None and tuple(declared) != state.feature_columns:
            raise SchemaMismatchError(
                "Persisted feature_columns disagree with the persisted constants",
                {"declared": list(declared), "derived": list(state.feature_columns)},
            )
        return state

    def fingerprint(self) -> str:
        payload = self.to_dict()
        payload.pop("n_rows", None)
        blob = json.dumps(payload, sort_keys=True).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()


@dataclass(frozen=True)
class FeatureVector:
    columns: Tuple[str, ...]
    values: Tuple[float, ...]

    def __getitem__(self, column: str) -> float:
        return self.values[self.columns.index(column)]

    def as_dict(self) -> Dict[str, float]:
        return dict(zip(self.columns, self.values))

    def as_array(self) -> np.ndarray:
        return np.asarray(self.values, dtype=float)


@dataclass(frozen=True)
class ApplyResult:
    """Explicit success/failure value returned by `try_apply`."""

    vector: Optional[FeatureVector] = None
    error: Optional[BikeshareError] = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


# ---------------------------------------------------------------------------
# fit
# ---------------------------------------------------------------------------


def fit(training_rows: Union[pd.DataFrame, Iterable[Mapping[str, Any]]]) -> TransformerState:
    """
    Fit scaling constants and category levels over the full training set.

    Fails loud (MissingFieldError) if a required column is absent or empty.
    """
    df = training_rows if isinstance(training_rows, pd.DataFrame) else pd.DataFrame(list(training_rows))
    df = df.rename(columns=lambda c: str(c).upper())
    if df.empty:
        raise ValueError("Cannot fit transformer on an empty training set")

    if "HOUR_CATEGORY" not in df.columns and "HOUR" in df.columns:
        df = add_hour_category(df)

    scalers = []
    for field, column in BOUNDED_FIELDS:
        values = _numeric_column(df, field)
        lo, hi = float(values.min()), float(values.max())
        scalers.append(ScalingConstant(field, column, "minmax", lo, (hi - lo) or 1.0))

    for field, column in UNBOUNDED_FIELDS:
        values = _numeric_column(df, field)
        mean = float(values.mean())
        std = float(values.std(ddof=1)) if len(values) > 1 else 0.0
        if not np.isfinite(std) or std == 0.0:
            std = 1.0
        scalers.append(ScalingConstant(field, column, "zscore", mean, std))

    categoricals = []
    for field, prefix in CATEGORICAL_FIELDS:
        if field not in df.columns:
            raise MissingFieldError(field)
        levels = sorted({str(v).strip() for v in df[field].dropna()})
        if not levels:
            raise MissingFieldError(field, {"reason": "no non-null values"})
        categoricals.append(CategoricalLevels(field, prefix, tuple(levels)))

    return TransformerState(
        scalers=tuple(scalers),
        categoricals=tuple(categoricals),
        n_rows=int(len(df)),
    )


def _numeric_column(df: pd.DataFrame, field: str) -> pd.Series:
    if field not in df.columns:
        raise MissingFieldError(field)
    values = pd.to_numeric(df[field], errors="raise").dropna()
    if values.empty:
        raise MissingFieldError(field, {"reason": "no non-null values"})
    return values


# ---------------------------------------------------------------------------
# apply
# ---------------------------------------------------------------------------


def _canonical_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in row.items():
        name = str(key).upper()
        out[name] = value
    for live_name, train_name in LIVE_FIELD_ALIASES.items():
        if _is_missing(out.get(train_name)) and not _is_missing(out.get(live_name)):
            out[train_name] = out[live_name]
    return out


def _number(row: Mapping[str, Any], field: str) -> float:
    value = row.get(field)
    if _is_missing(value):
        raise MissingFieldError(field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise SchemaMismatchError(f"{field}={value!r} is not numeric", {"field": field}) from None
    if not math.isfinite(number):
        raise SchemaMismatchError(f"{field}={value!r} is not finite", {"field": field})
    return number


def _timestamp(row: Mapping[str, Any]) -> Optional[pd.Timestamp]:
    if not _is_missing(row.get("DATETIME")):
        return _parse_timestamp(row["DATETIME"])
    if not _is_missing(row.get("DATE")):
        return _parse_timestamp(row["DATE"], dayfirst_format="%d/%m/%Y")
    return None


def _parse_timestamp(value: Any, dayfirst_format: Optional[str] = None) -> pd.Timestamp:
    if dayfirst_format and isinstance(value, str):
        try:
            return pd.Timestamp(pd.to_datetime(value, format=dayfirst_format))
        except (ValueError, TypeError):
            pass
    try:
        ts = pd.Timestamp(value)
    except (ValueError, TypeError, OverflowError):
        raise InvalidTimestampError(value) from None
    if pd.isna(ts):
        raise InvalidTimestampError(value)
    return ts


def resolve_raw_fields(row: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Fill every raw field the transformer needs, applying live-row defaults.

    Returns the completed raw row (numeric fields as floats, categoricals as
    strings). Raises MissingFieldError / InvalidTimestampError.
    """
    data = _canonical_row(row)

    # DATETIME is the key of a live record, so it is always validated
    ts: Optional[pd.Timestamp] = None
    if not _is_missing(data.get("DATETIME")):
        ts = _parse_timestamp(data["DATETIME"])

    def _ts() -> pd.Timestamp:
        nonlocal ts
        if ts is None:
            ts = _timestamp(data)
        if ts is None:
            raise MissingFieldError("DATETIME")
        return ts

    resolved: Dict[str, Any] = {}

    if _is_missing(data.get("HOUR")):
        resolved["HOUR"] = float(_ts().hour)
    else:
        resolved["HOUR"] = _number(data, "HOUR")

    for field in ("TEMPERATURE_C", "HUMIDITY", "WIND_SPEED_M_S", "VISIBILITY_10M"):
        resolved[field] = _number(data, field)

    for field in ZERO_DEFAULT_FIELDS:
        resolved[field] = 0.0 if _is_missing(data.get(field)) else _number(data, field)

    if _is_missing(data.get("DEW_POINT_TEMPERATURE_C")):
        resolved["DEW_POINT_TEMPERATURE_C"] = derive_dew_point(
            resolved["TEMPERATURE_C"], resolved["HUMIDITY"]
        )
    else:
        resolved["DEW_POINT_TEMPERATURE_C"] = _number(data, "DEW_POINT_TEMPERATURE_C")

    if _is_missing(data.get("SEASONS")):
        resolved["SEASONS"] = season_for_month(_ts().month)
    else:
        resolved["SEASONS"] = str(data["SEASONS"]).strip()

    for field, default in CATEGORY_DEFAULTS.items():
        value = data.get(field)
        resolved[field] = default if _is_missing(value) else str(value).strip()

    resolved["HOUR_CATEGORY"] = hour_bucket(int(resolved["HOUR"]))
    return resolved


def apply(state: TransformerState, row: Mapping[str, Any]) -> FeatureVector:
    """
    Map one raw row (training-shaped or live forecast) to a FeatureVector.

    Pure: reads only `state` and `row`.
    """
    raw = resolve_raw_fields(row)
    values = [s.normalize(raw[s.field]) for s in state.scalers]
    for cat in state.categoricals:
        if cat.field not in raw:
            raise MissingFieldError(cat.field)
        values.extend(cat.encode(raw[cat.field]))
    return FeatureVector(columns=state.feature_columns, values=tuple(values))


def try_apply(state: TransformerState, row: Mapping[str, Any]) -> ApplyResult:
    try:
        return ApplyResult(vector=apply(state, row))
    except BikeshareError as exc:
        return ApplyResult(error=exc)
    except (ValueError, OverflowError, TypeError) as exc:
        # a row that cannot be coerced fails alone, never the batch
        return ApplyResult(error=SchemaMismatchError(f"{type(exc).__name__}: {exc}"))


def apply_frame(state: TransformerState, df: pd.DataFrame) -> pd.DataFrame:
    """
    Apply the frozen state to every row of a frame (fail-loud).

    Uses the same per-row path as live inference so the two can never drift.
    """
    if df.empty:
        return pd.DataFrame(columns=list(state.feature_columns))
    vectors = [apply(state, row).values for row in df.to_dict("records")]
    return pd.DataFrame(vectors, columns=list(state.feature_columns), index=df.index)


def save_state(state: TransformerState, path) -> None:
    from .io_utils import atomic_write_json

    atomic_write_json(state.to_dict(), path)


def load_state(path) -> TransformerState:
    with open(path, "r", encoding="utf-8") as f:
        return TransformerState.from_dict(json.load(f))
