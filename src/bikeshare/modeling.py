"""
Modeling stage: train candidate regressors on FeatureVector columns, record
them in the registry, write the comparison table and promote the best.

Every candidate is a scikit-learn Pipeline that accepts the full, ordered
feature frame produced by the transformer and selects its own subset, so any
saved model can be fed the same vectors at serving time.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import BikeshareConfig
from .errors import ArtifactNotFoundError
from .features import TransformerState, apply_frame, load_state
from .registry import ModelRegistry, select_best
from .schemas import ArtifactHandle, clean_handle

logger = logging.getLogger(__name__)

TARGET = "RENTED_BIKE_COUNT"
POLY_FIELDS = ("TEMPERATURE_STD", "HUMIDITY_NORM", "WIND_SPEED_STD")
INTERACTION_FIELDS = ("TEMPERATURE_STD", "HUMIDITY_NORM")


class RegressionMetrics:
    """rmse / mae / rsq with explicit NaN masking."""

    @staticmethod
    def _valid(y_true: np.ndarray, y_pred: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        y_true = np.asarray(y_true, dtype=float)
        y_pred = np.asarray(y_pred, dtype=float)
        mask = np.isfinite(y_true) & np.isfinite(y_pred)
        return y_true[mask], y_pred[mask]

    @staticmethod
    def rmse(y_true: np.ndarray, y_pred: np.ndarray) -> float:
        t, p = RegressionMetrics._valid(y_true, y_pred)
        if t.size == 0:
            return np.nan
        return float(np.sqrt(np.mean((p - t) ** 2)))

    @staticmethod
    def mae(y_true: np.ndarray, y_pred: np.ndarray) -> float:
        t, p = RegressionMetrics._valid(y_true, y_pred)
        if t.size == 0:
            return np.nan
        return float(np.mean(np.abs(p - t)))

    @staticmethod
    def rsq(y_true: np.ndarray, y_pred: np.ndarray) -> float:
        t, p = RegressionMetrics._valid(y_true, y_pred)
        if t.size < 2:
            return np.nan
        ss_tot = float(np.sum((t - t.mean()) ** 2))
        if ss_tot == 0:
            return np.nan
        return 1.0 - float(np.sum((t - p) ** 2)) / ss_tot

    @classmethod
    def compute_all(cls, y_true: np.ndarray, y_pred: np.ndarray) -> Dict[str, float]:
        return {
            "rmse": cls.rmse(y_true, y_pred),
            "rsq": cls.rsq(y_true, y_pred),
            "mae": cls.mae(y_true, y_pred),
        }


def weather_columns(state: TransformerState) -> List[str]:
    return [s.column for s in state.scalers if s.field != "HOUR"]


def time_columns(state: TransformerState) -> List[str]:
    cols = [s.column for s in state.scalers if s.field == "HOUR"]
    for cat in state.categoricals:
        cols.extend(cat.columns())
    return cols


def _select(columns: Sequence[str], transformer="passthrough"):
    from sklearn.compose import ColumnTransformer

    return ColumnTransformer([("features", transformer, list(columns))], remainder="drop")


def _expand(columns: Sequence[str], others: Sequence[str], **poly_kwargs):
    from sklearn.compose import ColumnTransformer
    from sklearn.preprocessing import PolynomialFeatures

    return ColumnTransformer(
        [
            ("poly", PolynomialFeatures(degree=2, include_bias=False, **poly_kwargs), list(columns)),
            ("rest", "passthrough", [c for c in others if c not in columns]),
        ],
        remainder="drop",
    )


def build_candidates(state: TransformerState, config: BikeshareConfig) -> Dict[str, object]:
    """Candidate name -> unfitted estimator."""
    from sklearn.ensemble import RandomForestRegressor
    from sklearn.linear_model import Lasso, LinearRegression, Ridge
    from sklearn.model_selection import GridSearchCV, KFold
    from sklearn.pipeline import Pipeline

    all_cols = list(state.feature_columns)
    weather = weather_columns(state)
    time_cols = time_columns(state)

    candidates: Dict[str, object] = {
        "Weather Only": Pipeline([("select", _select(weather)), ("model", LinearRegression())]),
        "Time Only": Pipeline([("select", _select(time_cols)), ("model", LinearRegression())]),
        "Combined": Pipeline([("select", _select(all_cols)), ("model", LinearRegression())]),
        "Polynomial": Pipeline([("select", _expand(POLY_FIELDS, all_cols)), ("model", LinearRegression())]),
        "Interactions": Pipeline(
            [("select", _expand(INTERACTION_FIELDS, all_cols, interaction_only=True)), ("model", LinearRegression())]
        ),
        "Ridge": Pipeline([("select", _select(all_cols)), ("model", Ridge(alpha=config.regularization_alpha))]),
        "Lasso": Pipeline(
            [("select", _select(all_cols)), ("model", Lasso(alpha=config.regularization_alpha, max_iter=10000))]
        ),
    }

    max_features = [m for m in config.rf_max_features if m <= len(all_cols)] or [len(all_cols)]
    rf = Pipeline(
        [
            ("select", _select(all_cols)),
            ("model", RandomForestRegressor(n_estimators=config.rf_n_estimators, random_state=config.random_state)),
        ]
    )
    candidates["Random Forest"] = GridSearchCV(
        rf,
        param_grid={
            "model__max_features": max_features,
            "model__min_samples_split": list(config.rf_min_samples_split),
        },
        cv=KFold(n_splits=config.cv_folds, shuffle=True, random_state=config.random_state),
        scoring="neg_root_mean_squared_error",
        n_jobs=config.n_jobs,
        refit=True,
    )
    return candidates


def training_frame(state: TransformerState, df_clean: pd.DataFrame) -> Tuple[pd.DataFrame, pd.Series]:
    """Recompute FeatureVectors from the clean rows with the frozen state."""
    if TARGET not in df_clean.columns:
        raise ValueError(f"Clean training data has no {TARGET} column")
    X = apply_frame(state, df_clean)
    y = pd.to_numeric(df_clean[TARGET], errors="coerce")
    keep = y.notna()
    return X.loc[keep].reset_index(drop=True), y.loc[keep].reset_index(drop=True)


def train_candidates(
    state: TransformerState,
    X: pd.DataFrame,
    y: pd.Series,
    config: BikeshareConfig,
    registry: ModelRegistry,
    only: Optional[Sequence[str]] = None,
) -> List[Tuple[ArtifactHandle, Dict[str, float]]]:
    from sklearn.model_selection import train_test_split

    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=config.test_size, random_state=config.random_state
    )
    logger.info("[model] train=%d test=%d features=%d", len(X_train), len(X_test), X.shape[1])

    results = []
    for name, estimator in build_candidates(state, config).items():
        if only and name not in only:
            continue
        estimator.fit(X_train, y_train)
        model = getattr(estimator, "best_estimator_", estimator)
        if hasattr(estimator, "best_params_"):
            logger.info("[model] %s best params: %s", name, estimator.best_params_)
        metrics = RegressionMetrics.compute_all(y_test.to_numpy(), model.predict(X_test))
        logger.info("[model] %s rmse=%.2f rsq=%.3f mae=%.2f", name, metrics["rmse"], metrics["rsq"], metrics["mae"])
        handle = registry.save(name, model, state, metrics)
        results.append((handle, metrics))
    return results


def run_modeling(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, ArtifactHandle]:
    """Stage handler."""
    artifacts = artifacts or {}
    data_handle = artifacts.get("clean_seoul_bike_sharing") or clean_handle(config, "seoul_bike_sharing")
    state_handle = artifacts.get("transformer_state") or ArtifactHandle(
        name="transformer_state", path=str(config.transformer_state_path()), kind="json"
    )
    if not state_handle.exists():
        raise ArtifactNotFoundError(f"Transformer state not found at {state_handle.path}")

    df_clean = data_handle.load()
    state = load_state(state_handle.path)
    X, y = training_frame(state, df_clean)

    registry = ModelRegistry.from_config(config)
    results = train_candidates(state, X, y, config, registry)

    comparison = registry.write_comparison(
        [{"model": h.name, **m, "artifact": h.path} for h, m in results]
    )
    best = registry.promote(select_best(results, metric="rmse"))
    return {"best_model": best, "model_comparison": comparison}
