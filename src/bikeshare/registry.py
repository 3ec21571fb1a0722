"""
Model registry.

A model and the TransformerState it was fit with are persisted as one joblib
bundle and only ever loaded together. `load` validates the bundle and fails
with ArtifactCorrupt rather than returning something half-usable.
"""

from __future__ import annotations

import logging
import math
import os
import re
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import joblib
import numpy as np
import pandas as pd

from .errors import ArtifactCorruptError, ArtifactNotFoundError, BikeshareError
from .features import TransformerState
from .io_utils import TMP_SUFFIX, atomic_write_csv, atomic_write_joblib, ensure_dir
from .schemas import ArtifactHandle

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
REQUIRED_KEYS = (
    "format_version",
    "model_name",
    "model",
    "transformer_state",
    "feature_columns",
    "state_fingerprint",
    "metrics",
)
COMPARISON_COLUMNS = ("model", "rmse", "rsq", "mae", "artifact")
# metrics where larger is better
DESCENDING_METRICS = {"rsq", "r2"}


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


@dataclass(frozen=True)
class TrainedModelArtifact:
    model_name: str
    model: Any
    state: TransformerState
    metrics: Dict[str, float] = field(default_factory=dict)
    path: str = ""
    created_at_utc: str = ""

    @property
    def feature_columns(self) -> Tuple[str, ...]:
        return self.state.feature_columns

    def predict(self, features: pd.DataFrame) -> np.ndarray:
        X = features.loc[:, list(self.feature_columns)]
        return np.asarray(self.model.predict(X), dtype=float)


class ModelRegistry:
    def __init__(self, root: Path):
        self.root = Path(root)

    @classmethod
    def from_config(cls, config) -> "ModelRegistry":
        return cls(config.models_path())

    def candidates_dir(self) -> Path:
        return self.root / "candidates"

    def best_path(self) -> Path:
        return self.root / "best_model.joblib"

    def comparison_path(self) -> Path:
        return self.root / "model_comparison.csv"

    def save(self, name: str, model: Any, state: TransformerState, metrics: Mapping[str, float]) -> ArtifactHandle:
        """Persist model + state + metrics as one atomic artifact."""
        if not hasattr(model, "predict"):
            raise TypeError(f"Model {name!r} has no predict()")
        fingerprint = state.fingerprint()
        payload = {
            "format_version": FORMAT_VERSION,
            "model_name": name,
            "model": model,
            "transformer_state": state.to_dict(),
            "feature_columns": list(state.feature_columns),
            "state_fingerprint": fingerprint,
            "metrics": {k: float(v) for k, v in metrics.items()},
            "created_at_utc": datetime.now(timezone.utc).isoformat(),
        }
        path = self.candidates_dir() / f"{slugify(name)}.joblib"
        atomic_write_joblib(payload, path)
        logger.info("[registry] saved %s -> %s", name, path)
        return ArtifactHandle(name=name, path=str(path), kind="joblib", fingerprint=fingerprint)

    def load(self, handle: ArtifactHandle) -> TrainedModelArtifact:
        return load_artifact(handle.path)

    def promote(self, handle: ArtifactHandle) -> ArtifactHandle:
        """Publish a candidate as best_model.joblib (validated first)."""
        artifact = load_artifact(handle.path)
        target = self.best_path()
        ensure_dir(target.parent)
        tmp = target.with_suffix(target.suffix + TMP_SUFFIX)
        shutil.copyfile(handle.path, tmp)
        os.replace(tmp, target)
        logger.info("[registry] promoted %s -> %s", artifact.model_name, target)
        return ArtifactHandle(
            name=artifact.model_name,
            path=str(target),
            kind="joblib",
            fingerprint=artifact.state.fingerprint(),
        )

    def write_comparison(self, rows: Sequence[Mapping[str, Any]]) -> ArtifactHandle:
        df = comparison_frame(rows)
        atomic_write_csv(df, self.comparison_path())
        logger.info("[registry] wrote comparison: %s (%d models)", self.comparison_path(), len(df))
        return ArtifactHandle(name="model_comparison", path=str(self.comparison_path()), schema=COMPARISON_COLUMNS)

    def read_comparison(self) -> pd.DataFrame:
        return read_comparison(self.comparison_path())


def _metric_key(value: Any) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return math.inf
    return v if math.isfinite(v) else math.inf


def select_best(
    candidates: Sequence[Tuple[ArtifactHandle, Mapping[str, float]]],
    metric: str = "rmse",
) -> ArtifactHandle:
    """
    Pick the best candidate by `metric`.

    Error metrics rank ascending, rsq descending; missing or non-finite
    values rank last.
    """
    if not candidates:
        raise ValueError("select_best needs at least one candidate")
    sign = -1.0 if metric in DESCENDING_METRICS else 1.0

    def key(item):
        value = _metric_key(item[1].get(metric))
        return value if value == math.inf else sign * value

    best_handle, best_metrics = min(candidates, key=key)
    logger.info("[registry] best by %s: %s (%s)", metric, best_handle.name, best_metrics.get(metric))
    return best_handle


def comparison_frame(rows: Sequence[Mapping[str, Any]]) -> pd.DataFrame:
    df = pd.DataFrame(list(rows))
    for col in COMPARISON_COLUMNS:
        if col not in df.columns:
            df[col] = np.nan
    extra = [c for c in df.columns if c not in COMPARISON_COLUMNS]
    df = df[list(COMPARISON_COLUMNS) + extra]
    return df.sort_values("rmse", ascending=True, na_position="last").reset_index(drop=True)


def read_comparison(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise ArtifactNotFoundError(f"Model comparison not found at {path}")
    df = pd.read_csv(path)
    if "rmse" not in df.columns:
        raise ArtifactCorruptError(f"Model comparison at {path} has no rmse column")
    return df.sort_values("rmse", ascending=True, na_position="last").reset_index(drop=True)


def load_artifact(path) -> TrainedModelArtifact:
    """
    Load and validate a bundle.

    Raises ArtifactNotFoundError if the file is absent and ArtifactCorruptError
    if it cannot be read or its parts do not fit together.
    """
    path = Path(path)
    if not path.exists():
        raise ArtifactNotFoundError(f"Model artifact not found at {path}")

    try:
        payload = joblib.load(path)
    except Exception as e:
        raise ArtifactCorruptError(f"Could not deserialize {path}: {type(e).__name__}: {e}") from e

    if not isinstance(payload, dict):
        raise ArtifactCorruptError(f"{path} does not hold a model bundle (got {type(payload).__name__})")
    missing = [k for k in REQUIRED_KEYS if k not in payload]
    if missing:
        raise ArtifactCorruptError(f"{path} is missing bundle keys: {missing}", {"missing": missing})
    if payload["format_version"] != FORMAT_VERSION:
        raise ArtifactCorruptError(
            f"{path} has format_version {payload['format_version']}, expected {FORMAT_VERSION}"
        )

    model = payload["model"]
    if not hasattr(model, "predict"):
        raise ArtifactCorruptError(f"{path}: stored model has no predict()")

    try:
        state = TransformerState.from_dict(payload["transformer_state"])
    except (BikeshareError, KeyError, TypeError, ValueError) as e:
        raise ArtifactCorruptError(f"{path}: transformer state unreadable: {e}") from e

    if state.fingerprint() != payload["state_fingerprint"]:
        raise ArtifactCorruptError(f"{path}: transformer state fingerprint mismatch")
    if tuple(payload["feature_columns"]) != state.feature_columns:
        raise ArtifactCorruptError(f"{path}: feature columns disagree with transformer state")

    fitted_names = getattr(model, "feature_names_in_", None)
    if fitted_names is not None and tuple(fitted_names) != state.feature_columns:
        raise ArtifactCorruptError(
            f"{path}: model was fit on different columns than the transformer produces",
            {"model": list(fitted_names), "state": list(state.feature_columns)},
        )

    return TrainedModelArtifact(
        model_name=str(payload["model_name"]),
        model=model,
        state=state,
        metrics=dict(payload["metrics"]),
        path=str(path),
        created_at_utc=str(payload.get("created_at_utc", "")),
    )


@lru_cache(maxsize=8)
def _load_cached(path: str, mtime_ns: int) -> TrainedModelArtifact:
    return load_artifact(path)


def load_artifact_once(path) -> TrainedModelArtifact:
    """Process-wide memoised load; a rewritten file (new mtime) is reloaded."""
    path = Path(path)
    if not path.exists():
        raise ArtifactNotFoundError(f"Model artifact not found at {path}")
    return _load_cached(str(path.resolve()), path.stat().st_mtime_ns)


def list_candidates(root: Path) -> List[Path]:
    cand_dir = Path(root) / "candidates"
    if not cand_dir.exists():
        return []
    return sorted(cand_dir.glob("*.joblib"))


def describe(artifact: Optional[TrainedModelArtifact]) -> Dict[str, Any]:
    if artifact is None:
        return {"model_name": None}
    return {
        "model_name": artifact.model_name,
        "path": artifact.path,
        "created_at_utc": artifact.created_at_utc,
        "n_features": len(artifact.feature_columns),
        **artifact.metrics,
    }
