"""
Prediction serving path.

predict() turns a live forecast batch into per-entity peak demand joined with
geographic reference data. It never raises: transform or inference failures
fall back to a temperature heuristic per record, and an empty join falls back
to a small fixed sample. Every fallback is logged and labelled on the result.

PredictionService is the pull-based query layer the display consumes; results
are memoised on (forecast version, selected countries).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import BikeshareError, ErrorKind
from .features import try_apply
from .registry import COMPARISON_COLUMNS, TrainedModelArtifact, load_artifact_once, read_comparison
from .schemas import CLEAN_WORLD_CITIES, clean_handle, missing_columns

logger = logging.getLogger(__name__)


class PredictionSource(str, Enum):
    MODEL = "model"
    FALLBACK = "fallback"


DATA_SOURCE_LIVE = "live"
DATA_SOURCE_SAMPLE = "sample"

# (entity, country, lat, lng, demand), used when no reference data is usable
BUILTIN_SAMPLE: Tuple[Tuple[str, str, float, float, int], ...] = (
    ("Seoul", "South Korea", 37.5665, 126.9780, 800),
    ("London", "United Kingdom", 51.5074, -0.1278, 600),
    ("Paris", "France", 48.8566, 2.3522, 500),
)
SAMPLE_DEMANDS = (800, 600, 500, 400, 300)

RESULT_COLUMNS = (
    "entity", "peak_demand", "latitude", "longitude", "country",
    "prediction_source", "data_source",
)


@dataclass(frozen=True)
class ForecastRecord:
    entity: str
    timestamp: Any
    values: Mapping[str, Any] = field(default_factory=dict)

    def as_row(self) -> Dict[str, Any]:
        row = {str(k).upper(): v for k, v in self.values.items()}
        row["CITY"] = self.entity
        row["DATETIME"] = self.timestamp
        return row


def records_from_frame(df: pd.DataFrame, entity_col: str = "CITY", time_col: str = "DATETIME") -> List[ForecastRecord]:
    if df is None or df.empty:
        return []
    records = []
    for row in df.to_dict("records"):
        entity = row.pop(entity_col, None)
        ts = row.pop(time_col, None)
        if entity is None or (isinstance(entity, float) and math.isnan(entity)):
            continue
        records.append(ForecastRecord(entity=str(entity), timestamp=ts, values=row))
    return records


@dataclass(frozen=True)
class FallbackEstimator:
    """max(0, base + slope * temperature + N(0, noise_sd))"""

    base: float = 200.0
    slope: float = 15.0
    noise_sd: float = 0.0
    seed: Optional[int] = None

    @classmethod
    def from_config(cls, config) -> "FallbackEstimator":
        return cls(
            base=config.fallback_base,
            slope=config.fallback_slope,
            noise_sd=config.fallback_noise_sd,
            seed=config.fallback_seed,
        )

    def new_rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)

    def estimate(self, temperature: float, rng: Optional[np.random.Generator] = None) -> float:
        noise = 0.0
        if self.noise_sd > 0:
            noise = float((rng or self.new_rng()).normal(0.0, self.noise_sd))
        return max(0.0, self.base + self.slope * float(temperature) + noise)


def temperature_of(row: Mapping[str, Any]) -> float:
    for key in ("TEMPERATURE_C", "TEMPERATURE"):
        value = row.get(key)
        try:
            t = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(t):
            return t
    return 0.0


@dataclass(frozen=True)
class EntityAliasTable:
    """Forecast-source name -> reference-dataset name."""

    aliases: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, str]]) -> "EntityAliasTable":
        return cls(aliases=dict(pairs))

    def resolve(self, name: str) -> str:
        return self.aliases.get(name, name)


@dataclass(frozen=True)
class RecordPrediction:
    entity: str
    timestamp: Any
    value: float
    source: PredictionSource
    reason: str = ""


@dataclass(frozen=True)
class PredictionResult:
    entity: str
    peak_demand: int
    prediction_source: PredictionSource
    latitude: float
    longitude: float
    country: str
    data_source: str = DATA_SOURCE_LIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "peak_demand": self.peak_demand,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "country": self.country,
            "prediction_source": self.prediction_source.value,
            "data_source": self.data_source,
        }


def predict_records(
    batch: Sequence[ForecastRecord],
    artifact: Optional[TrainedModelArtifact],
    fallback: FallbackEstimator,
) -> List[RecordPrediction]:
    """Per-record predictions; any transform or inference failure falls back."""
    rng = fallback.new_rng()
    rows = [r.as_row() for r in batch]
    out: List[Optional[RecordPrediction]] = [None] * len(rows)

    def _fallback(i: int, reason: str) -> RecordPrediction:
        return RecordPrediction(
            entity=batch[i].entity,
            timestamp=batch[i].timestamp,
            value=fallback.estimate(temperature_of(rows[i]), rng),
            source=PredictionSource.FALLBACK,
            reason=reason,
        )

    if artifact is None:
        if rows:
            logger.warning("[serve] no model artifact; fallback estimator for %d record(s)", len(rows))
        return [_fallback(i, ErrorKind.ARTIFACT_NOT_FOUND.value) for i in range(len(rows))]

    ok_idx: List[int] = []
    vectors = []
    for i, row in enumerate(rows):
        result = try_apply(artifact.state, row)
        if result.ok:
            ok_idx.append(i)
            vectors.append(result.vector.values)
        else:
            logger.warning("[serve] %s: %s; using fallback", batch[i].entity, result.error.message)
            out[i] = _fallback(i, result.error.kind.value)

    if ok_idx:
        X = pd.DataFrame(vectors, columns=list(artifact.feature_columns))
        try:
            preds = artifact.predict(X)
        except Exception as e:  # any model failure routes the batch to fallback
            logger.warning("[serve] inference failed (%s: %s); fallback for %d record(s)",
                           type(e).__name__, e, len(ok_idx))
            preds = None

        for j, i in enumerate(ok_idx):
            value = None if preds is None or j >= len(preds) else float(preds[j])
            if value is None or not math.isfinite(value):
                out[i] = _fallback(i, ErrorKind.EXECUTION_ERROR.value)
            else:
                out[i] = RecordPrediction(
                    entity=batch[i].entity,
                    timestamp=batch[i].timestamp,
                    value=max(0.0, value),
                    source=PredictionSource.MODEL,
                )

    return [p for p in out if p is not None]


def aggregate_peaks(
    predictions: Sequence[RecordPrediction],
    aliases: Optional[EntityAliasTable] = None,
) -> Dict[str, Tuple[int, PredictionSource]]:
    """
    Peak demand per entity: round(max(value)) over the horizon.

    Entity names are alias-resolved first so an aliased entity is counted
    once under its canonical name. The source is that of the peak record.
    """
    aliases = aliases or EntityAliasTable()
    best: Dict[str, RecordPrediction] = {}
    for p in predictions:
        name = aliases.resolve(p.entity)
        if name not in best or p.value > best[name].value:
            best[name] = p
    return {name: (int(round(p.value)), p.source) for name, p in best.items()}


def _usable_reference(reference: Optional[pd.DataFrame]) -> Optional[pd.DataFrame]:
    if reference is None or not isinstance(reference, pd.DataFrame) or reference.empty:
        return None
    missing = missing_columns(reference, CLEAN_WORLD_CITIES)
    if missing:
        logger.warning("[serve] reference data missing columns %s; ignoring it", missing)
        return None
    ref = reference.dropna(subset=["CITY"]).copy()
    ref["_KEY"] = ref["CITY"].astype(str).str.strip().str.lower()
    return ref.drop_duplicates("_KEY", keep="first")


def fallback_sample(reference: Optional[pd.DataFrame] = None) -> List[PredictionResult]:
    """Deterministic non-empty result used when nothing joins."""
    ref = _usable_reference(reference)
    if ref is not None:
        head = ref.head(len(SAMPLE_DEMANDS))
        return [
            PredictionResult(
                entity=str(row["CITY"]),
                peak_demand=demand,
                prediction_source=PredictionSource.FALLBACK,
                latitude=float(row["LAT"]),
                longitude=float(row["LNG"]),
                country=str(row["COUNTRY"]),
                data_source=DATA_SOURCE_SAMPLE,
            )
            for demand, (_, row) in zip(SAMPLE_DEMANDS, head.iterrows())
        ]
    return [
        PredictionResult(
            entity=city,
            peak_demand=demand,
            prediction_source=PredictionSource.FALLBACK,
            latitude=lat,
            longitude=lng,
            country=country,
            data_source=DATA_SOURCE_SAMPLE,
        )
        for city, country, lat, lng, demand in BUILTIN_SAMPLE
    ]


def join_reference(
    peaks: Mapping[str, Tuple[int, PredictionSource]],
    reference: Optional[pd.DataFrame],
) -> List[PredictionResult]:
    ref = _usable_reference(reference)
    if ref is None:
        return []
    by_key = {row["_KEY"]: row for _, row in ref.iterrows()}

    results = []
    unresolved = []
    for entity, (peak, source) in peaks.items():
        row = by_key.get(entity.strip().lower())
        if row is None:
            unresolved.append(entity)
            continue
        results.append(
            PredictionResult(
                entity=str(row["CITY"]),
                peak_demand=peak,
                prediction_source=source,
                latitude=float(row["LAT"]),
                longitude=float(row["LNG"]),
                country=str(row["COUNTRY"]),
            )
        )
    if unresolved:
        logger.info("[serve] %s: dropped %d unmapped entit%s: %s",
                    ErrorKind.JOIN_UNRESOLVED.value, len(unresolved),
                    "y" if len(unresolved) == 1 else "ies", sorted(unresolved))
    return sorted(results, key=lambda r: (-r.peak_demand, r.entity))


def predict(
    batch: Sequence[ForecastRecord],
    artifact: Optional[TrainedModelArtifact],
    aliases: Optional[EntityAliasTable],
    reference: Optional[pd.DataFrame],
    fallback: Optional[FallbackEstimator] = None,
) -> List[PredictionResult]:
    """
    Peak demand per entity joined with the reference table. Never raises and
    never returns an empty list.
    """
    results, _ = _predict_with_records(batch, artifact, aliases, reference, fallback or FallbackEstimator())
    return results


def _predict_with_records(
    batch: Sequence[ForecastRecord],
    artifact: Optional[TrainedModelArtifact],
    aliases: Optional[EntityAliasTable],
    reference: Optional[pd.DataFrame],
    fallback: FallbackEstimator,
) -> Tuple[List[PredictionResult], List[RecordPrediction]]:
    records: List[RecordPrediction] = []
    try:
        records = predict_records(batch, artifact, fallback)
        peaks = aggregate_peaks(records, aliases)
        results = join_reference(peaks, reference)
    except Exception:  # serving must not surface errors to the display
        logger.exception("[serve] prediction path failed; returning sample data")
        results = []

    if not results:
        logger.warning("[serve] no joined predictions; returning fallback sample")
        return fallback_sample(reference), records
    return results, records


def results_to_frame(results: Sequence[PredictionResult]) -> pd.DataFrame:
    return pd.DataFrame([r.to_dict() for r in results], columns=list(RESULT_COLUMNS))


def _mtime_ns(path: Path) -> int:
    return path.stat().st_mtime_ns if path.exists() else 0


class PredictionService:
    """
    Read-only query layer over the published artifacts.

    Recomputes only when the forecast, the reference table or the published
    model changes on disk, or when different countries are requested.
    """

    def __init__(self, config, artifact_path: Optional[Path] = None):
        self.config = config
        self.artifact_path = Path(artifact_path or config.best_model_path())
        self.aliases = EntityAliasTable.from_pairs(config.entity_aliases)
        self.fallback = FallbackEstimator.from_config(config)
        self._query = lru_cache(maxsize=32)(self._compute)

    def artifact(self) -> Optional[TrainedModelArtifact]:
        try:
            return load_artifact_once(self.artifact_path)
        except BikeshareError as e:
            logger.warning("[serve] model unavailable (%s): %s", e.kind.value, e.message)
            return None

    def forecast_version(self) -> int:
        return _mtime_ns(Path(clean_handle(self.config, "cities_weather_forecast").path))

    def versions(self) -> Tuple[int, int, int]:
        """(forecast, reference, model) file mtimes; 0 for a missing file."""
        return (
            self.forecast_version(),
            _mtime_ns(Path(clean_handle(self.config, "worldcities").path)),
            _mtime_ns(self.artifact_path),
        )

    def _load_frame(self, name: str, validate: bool = True) -> Optional[pd.DataFrame]:
        try:
            return clean_handle(self.config, name).load(validate=validate)
        except BikeshareError as e:
            logger.warning("[serve] %s unavailable (%s): %s", name, e.kind.value, e.message)
            return None

    def _compute(self, versions: Tuple[int, int, int], countries: Tuple[str, ...]) -> Tuple[pd.DataFrame, pd.DataFrame]:
        logger.info("[serve] computing predictions (versions=%s, countries=%s)", versions, list(countries))
        forecast = self._load_frame("cities_weather_forecast")
        reference = self._load_frame("worldcities")
        batch = records_from_frame(forecast) if forecast is not None else []
        artifact = self.artifact()

        results, records = _predict_with_records(batch, artifact, self.aliases, reference, self.fallback)
        frame = results_to_frame(results)
        if countries:
            selected = frame[frame["country"].isin(countries)]
            if selected.empty:
                logger.info("[serve] no predictions for countries %s; showing all", list(countries))
            else:
                frame = selected.reset_index(drop=True)

        hourly = pd.DataFrame(
            [
                {
                    "entity": self.aliases.resolve(r.entity),
                    "timestamp": r.timestamp,
                    "demand": r.value,
                    "prediction_source": r.source.value,
                }
                for r in records
            ],
            columns=["entity", "timestamp", "demand", "prediction_source"],
        )
        hourly = hourly[hourly["entity"].str.lower().isin(frame["entity"].str.lower())].reset_index(drop=True)
        return frame, hourly

    def peak_demand(self, countries: Optional[Sequence[str]] = None) -> pd.DataFrame:
        key = tuple(sorted(countries)) if countries else ()
        frame, _ = self._query(self.versions(), key)
        return frame.copy()

    def hourly_demand(self, countries: Optional[Sequence[str]] = None) -> pd.DataFrame:
        key = tuple(sorted(countries)) if countries else ()
        _, hourly = self._query(self.versions(), key)
        return hourly.copy()

    def model_comparison(self) -> pd.DataFrame:
        try:
            return read_comparison(self.config.comparison_path())
        except BikeshareError as e:
            logger.warning("[serve] model comparison unavailable: %s", e.message)
            return pd.DataFrame(columns=list(COMPARISON_COLUMNS))

    def clear_cache(self) -> None:
        self._query.cache_clear()
