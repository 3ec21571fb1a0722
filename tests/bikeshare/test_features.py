"""
Feature transformer tests.

The frozen state must make training rows and live forecast rows encode
identically, and apply() must never refit on the data it is given.
"""

import dataclasses
from unittest.mock import patch

import numpy as np
import pandas as pd
import pytest

from src.bikeshare.errors import (
    ErrorKind,
    InvalidTimestampError,
    MissingFieldError,
    SchemaMismatchError,
)
from src.bikeshare.features import (
    STATE_VERSION,
    TransformerState,
    apply,
    apply_frame,
    derive_dew_point,
    fit,
    hour_bucket,
    load_state,
    save_state,
    season_for_month,
    try_apply,
)


def _training_row(**overrides):
    row = {
        "DATE": "15/07/2018",
        "HOUR": 8,
        "TEMPERATURE_C": 25.0,
        "HUMIDITY": 60.0,
        "WIND_SPEED_M_S": 2.0,
        "VISIBILITY_10M": 2000.0,
        "DEW_POINT_TEMPERATURE_C": derive_dew_point(25.0, 60.0),
        "SOLAR_RADIATION_MJ_M2": 0.0,
        "RAINFALL_MM": 0.0,
        "SNOWFALL_CM": 0.0,
        "SEASONS": "Summer",
        "HOLIDAY": "No Holiday",
        "FUNCTIONING_DAY": "Yes",
    }
    row.update(overrides)
    return row


def _live_row(**overrides):
    row = {
        "CITY": "Seoul",
        "DATETIME": "2018-07-15 08:00:00",
        "TEMPERATURE": 25.0,
        "HUMIDITY": 60.0,
        "WIND_SPEED": 2.0,
        "VISIBILITY": 2000.0,
    }
    row.update(overrides)
    return row


class TestCalendarDerivation:
    """Month -> season and hour -> bucket tables."""

    @pytest.mark.parametrize(
        "month,season",
        [(12, "Winter"), (1, "Winter"), (2, "Winter"), (3, "Spring"), (5, "Spring"),
         (6, "Summer"), (8, "Summer"), (9, "Autumn"), (11, "Autumn")],
    )
    def test_season_for_month(self, month, season):
        assert season_for_month(month) == season

    @pytest.mark.parametrize(
        "hour,bucket",
        [(6, "MORNING_RUSH"), (9, "MORNING_RUSH"), (10, "DAYTIME"), (16, "DAYTIME"),
         (17, "EVENING_RUSH"), (19, "EVENING_RUSH"), (20, "EVENING"), (23, "EVENING"),
         (0, "NIGHT"), (5, "NIGHT")],
    )
    def test_hour_bucket(self, hour, bucket):
        assert hour_bucket(hour) == bucket

    def test_dew_point_formula(self):
        assert derive_dew_point(20.0, 50.0) == pytest.approx(10.0)


class TestFit:
    """fit() freezes constants computed over the whole training set."""

    def test_bounded_fields_use_min_max(self, seoul_df, state):
        hum = state.scaler("HUMIDITY")
        assert hum.method == "minmax"
        assert hum.loc == pytest.approx(seoul_df["HUMIDITY"].min())
        assert hum.loc + hum.scale == pytest.approx(seoul_df["HUMIDITY"].max())
        assert state.scaler("HOUR").column == "HOUR_NORM"

    def test_unbounded_fields_use_mean_std(self, seoul_df, state):
        temp = state.scaler("TEMPERATURE_C")
        assert temp.method == "zscore"
        assert temp.loc == pytest.approx(seoul_df["TEMPERATURE_C"].mean())
        assert temp.scale == pytest.approx(seoul_df["TEMPERATURE_C"].std())

    def test_categorical_levels_complete_and_sorted(self, state):
        assert state.levels("SEASONS") == ("Autumn", "Spring", "Summer", "Winter")
        assert state.levels("HOLIDAY") == ("Holiday", "No Holiday")
        assert state.levels("FUNCTIONING_DAY") == ("No", "Yes")
        assert set(state.levels("HOUR_CATEGORY")) == {
            "MORNING_RUSH", "EVENING_RUSH", "DAYTIME", "EVENING", "NIGHT",
        }

    def test_feature_columns_order(self, state):
        cols = state.feature_columns
        assert cols[:2] == ("HUMIDITY_NORM", "HOUR_NORM")
        assert "TEMPERATURE_STD" in cols
        assert "SEASON_WINTER" in cols
        assert "HOLIDAY_NO_HOLIDAY" in cols
        assert "HOUR_MORNING_RUSH" in cols
        assert len(cols) == len(set(cols))

    def test_zero_variance_field_scales_by_one(self, seoul_df):
        df = seoul_df.copy()
        df["SNOWFALL_CM"] = 0.0
        st = fit(df)
        assert st.scaler("SNOWFALL_CM").scale == 1.0
        assert st.normalize("SNOWFALL_CM", 0.0) == 0.0

    def test_state_is_immutable(self, state):
        with pytest.raises(dataclasses.FrozenInstanceError):
            state.version = 99


@pytest.mark.fail_loud
class TestFitFailLoud:

    def test_missing_column_raises(self, seoul_df):
        with pytest.raises(MissingFieldError) as exc:
            fit(seoul_df.drop(columns=["VISIBILITY_10M"]))
        assert exc.value.field == "VISIBILITY_10M"

    def test_empty_training_set_raises(self):
        with pytest.raises(ValueError):
            fit(pd.DataFrame())


class TestApply:
    """apply() is pure, deterministic and reads only the frozen state."""

    def test_deterministic(self, state):
        row = _live_row()
        assert apply(state, row) == apply(state, row)

    def test_schema_parity_training_vs_live(self, state):
        train_vec = apply(state, _training_row())
        live_vec = apply(state, _live_row())
        assert train_vec.columns == live_vec.columns == state.feature_columns
        np.testing.assert_allclose(train_vec.as_array(), live_vec.as_array())

    def test_live_defaults_match_explicit_zero(self, state):
        """Missing rain/snow/solar encode like explicit zeros; dew point is derived."""
        vec = apply(state, _live_row(TEMPERATURE=18.0, HUMIDITY=40.0))
        assert vec["RAINFALL_STD"] == pytest.approx(state.normalize("RAINFALL_MM", 0.0))
        assert vec["SNOWFALL_STD"] == pytest.approx(state.normalize("SNOWFALL_CM", 0.0))
        assert vec["SOLAR_RADIATION_STD"] == pytest.approx(state.normalize("SOLAR_RADIATION_MJ_M2", 0.0))
        assert vec["DEW_POINT_STD"] == pytest.approx(
            state.normalize("DEW_POINT_TEMPERATURE_C", 18.0 - (100.0 - 40.0) / 5.0)
        )

    def test_live_row_derives_calendar_fields(self, state):
        vec = apply(state, _live_row(DATETIME="2018-01-10 18:00:00"))
        assert vec["SEASON_WINTER"] == 1.0
        assert vec["SEASON_SUMMER"] == 0.0
        assert vec["HOUR_EVENING_RUSH"] == 1.0
        assert vec["HOLIDAY_NO_HOLIDAY"] == 1.0
        assert vec["FUNCTIONING_DAY_YES"] == 1.0

    def test_does_not_refit_on_batch(self, state):
        """A batch of identical hot rows keeps the training constants."""
        batch = pd.DataFrame([_live_row(TEMPERATURE=40.0)] * 5)
        out = apply_frame(state, batch)
        expected = (40.0 - state.scaler("TEMPERATURE_C").loc) / state.scaler("TEMPERATURE_C").scale
        np.testing.assert_allclose(out["TEMPERATURE_STD"].to_numpy(), expected)
        assert list(out.columns) == list(state.feature_columns)

    def test_apply_frame_matches_per_row_apply(self, state, seoul_df):
        sample = seoul_df.head(20)
        frame = apply_frame(state, sample)
        for i, (_, row) in enumerate(sample.iterrows()):
            np.testing.assert_allclose(frame.iloc[i].to_numpy(), apply(state, row.to_dict()).as_array())

    @pytest.mark.parametrize("field", ["HUMIDITY", "HOUR", "TEMPERATURE_C", "RAINFALL_MM"])
    def test_round_trip(self, state, field):
        for x in (-5.0, 0.0, 13.37, 99.0):
            assert state.denormalize(field, state.normalize(field, x)) == pytest.approx(x)


@pytest.mark.fail_loud
class TestApplyFailures:

    def test_unknown_category_is_schema_mismatch(self, state):
        with pytest.raises(SchemaMismatchError):
            apply(state, _training_row(SEASONS="Monsoon"))

    def test_missing_required_field(self, state):
        row = _live_row()
        del row["HUMIDITY"]
        with pytest.raises(MissingFieldError) as exc:
            apply(state, row)
        assert exc.value.field == "HUMIDITY"

    def test_nan_counts_as_missing(self, state):
        with pytest.raises(MissingFieldError):
            apply(state, _live_row(VISIBILITY=float("nan")))

    def test_unparsable_timestamp(self, state):
        with pytest.raises(InvalidTimestampError):
            apply(state, _live_row(DATETIME="not-a-date"))

    def test_no_timestamp_and_no_hour(self, state):
        row = _live_row()
        del row["DATETIME"]
        with pytest.raises(MissingFieldError):
            apply(state, row)

    def test_try_apply_returns_error_value(self, state):
        result = try_apply(state, _training_row(HOLIDAY="Festival"))
        assert not result.ok
        assert result.error.kind is ErrorKind.SCHEMA_MISMATCH

        ok = try_apply(state, _training_row())
        assert ok.ok and ok.error is None

    @pytest.mark.parametrize("field, value", [
        ("TEMPERATURE", float("inf")),
        ("HOUR", float("inf")),
        ("HUMIDITY", float("-inf")),
        ("WIND_SPEED", "inf"),
    ])
    def test_non_finite_is_schema_mismatch(self, state, field, value):
        with pytest.raises(SchemaMismatchError) as exc:
            apply(state, _live_row(**{field: value}))
        assert "not finite" in exc.value.message

    def test_try_apply_wraps_coercion_errors(self, state):
        with patch("src.bikeshare.features.hour_bucket", side_effect=OverflowError("cannot convert float infinity to integer")):
            result = try_apply(state, _live_row())
        assert not result.ok
        assert result.error.kind is ErrorKind.SCHEMA_MISMATCH
        assert result.error.message.startswith("OverflowError")


class TestStatePersistence:

    def test_round_trip_preserves_fingerprint(self, state, tmp_path):
        path = tmp_path / "state.json"
        save_state(state, path)
        loaded = load_state(path)
        assert loaded == state
        assert loaded.fingerprint() == state.fingerprint()

    def test_fingerprint_changes_with_levels(self, state):
        payload = state.to_dict()
        payload["categoricals"][0]["levels"].append("Monsoon")
        payload.pop("feature_columns")
        assert TransformerState.from_dict(payload).fingerprint() != state.fingerprint()

    @pytest.mark.fail_loud
    def test_version_mismatch_rejected(self, state):
        payload = state.to_dict()
        payload["version"] = STATE_VERSION + 1
        with pytest.raises(SchemaMismatchError):
            TransformerState.from_dict(payload)

    @pytest.mark.fail_loud
    def test_declared_columns_must_match(self, state):
        payload = state.to_dict()
        payload["feature_columns"] = list(reversed(payload["feature_columns"]))
        with pytest.raises(SchemaMismatchError):
            TransformerState.from_dict(payload)
