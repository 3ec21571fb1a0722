import math

import numpy as np
import pandas as pd
import pytest

from src.bikeshare.errors import ArtifactNotFoundError
from src.bikeshare.features import load_state
from src.bikeshare.modeling import (
    RegressionMetrics,
    build_candidates,
    run_modeling,
    time_columns,
    training_frame,
    weather_columns,
)
from src.bikeshare.registry import load_artifact
from src.bikeshare.serving import FallbackEstimator, ForecastRecord, PredictionSource, predict_records
from src.bikeshare.wrangle import run_wrangling


class TestRegressionMetrics:

    def test_perfect_fit(self):
        y = np.array([1.0, 2.0, 3.0])
        m = RegressionMetrics.compute_all(y, y)
        assert m == {"rmse": 0.0, "mae": 0.0, "rsq": 1.0}

    def test_known_values(self):
        y_true = np.array([0.0, 0.0, 0.0, 0.0])
        y_pred = np.array([1.0, -1.0, 1.0, -1.0])
        assert RegressionMetrics.rmse(y_true, y_pred) == pytest.approx(1.0)
        assert RegressionMetrics.mae(y_true, y_pred) == pytest.approx(1.0)

    def test_nan_pairs_ignored(self):
        y_true = np.array([1.0, np.nan, 3.0])
        y_pred = np.array([1.0, 5.0, np.nan])
        assert RegressionMetrics.rmse(y_true, y_pred) == 0.0

    def test_all_nan_is_nan(self):
        assert math.isnan(RegressionMetrics.rmse(np.array([np.nan]), np.array([1.0])))


class TestCandidates:

    def test_column_groups_partition_features(self, state):
        weather = set(weather_columns(state))
        time_cols = set(time_columns(state))
        assert "TEMPERATURE_STD" in weather and "HOUR_NORM" in time_cols
        assert not weather & time_cols

    def test_candidate_names(self, state, config):
        assert list(build_candidates(state, config)) == [
            "Weather Only", "Time Only", "Combined", "Polynomial",
            "Interactions", "Ridge", "Lasso", "Random Forest",
        ]

    def test_training_frame_recomputes_features(self, state, seoul_df):
        X, y = training_frame(state, seoul_df)
        assert list(X.columns) == list(state.feature_columns)
        assert len(X) == len(y) == len(seoul_df)

    @pytest.mark.fail_loud
    def test_training_frame_needs_target(self, state, seoul_df):
        with pytest.raises(ValueError):
            training_frame(state, seoul_df.drop(columns=["RENTED_BIKE_COUNT"]))


@pytest.mark.smoke
class TestRunModeling:

    def test_trains_compares_and_promotes(self, raw_files):
        config = raw_files
        artifacts = run_wrangling(config, {})
        handles = run_modeling(config, artifacts)

        comparison = pd.read_csv(handles["model_comparison"].path)
        assert len(comparison) == 8
        assert comparison["rmse"].is_monotonic_increasing
        assert comparison["rmse"].notna().all()

        best = load_artifact(handles["best_model"].path)
        assert best.model_name == comparison["model"].iloc[0]
        assert best.state == load_state(config.transformer_state_path())

        batch = [
            ForecastRecord("Seoul", "2024-07-01 08:00:00", {"TEMPERATURE": 26.0, "HUMIDITY": 60, "WIND_SPEED": 2.0, "VISIBILITY": 10000}),
            ForecastRecord("Seoul", "2024-07-01 03:00:00", {"TEMPERATURE": 22.0, "HUMIDITY": 80, "WIND_SPEED": 1.0, "VISIBILITY": 8000}),
        ]
        preds = predict_records(batch, best, FallbackEstimator())
        assert [p.source for p in preds] == [PredictionSource.MODEL, PredictionSource.MODEL]
        assert all(p.value >= 0 for p in preds)

    @pytest.mark.fail_loud
    def test_missing_state_fails(self, config):
        with pytest.raises(ArtifactNotFoundError):
            run_modeling(config, {})
