import math
import os

import joblib
import numpy as np
import pandas as pd
import pytest
from sklearn.linear_model import LinearRegression

from src.bikeshare.errors import ArtifactCorruptError, ArtifactNotFoundError, ErrorKind
from src.bikeshare.features import apply_frame
from src.bikeshare.registry import (
    COMPARISON_COLUMNS,
    ModelRegistry,
    describe,
    list_candidates,
    load_artifact,
    load_artifact_once,
    read_comparison,
    select_best,
    slugify,
)
from src.bikeshare.schemas import ArtifactHandle


@pytest.fixture
def fitted(seoul_df, state):
    X = apply_frame(state, seoul_df)
    y = seoul_df["RENTED_BIKE_COUNT"]
    return LinearRegression().fit(X, y), X


@pytest.fixture
def registry(tmp_path):
    return ModelRegistry(tmp_path / "models")


@pytest.fixture
def saved(registry, fitted, state):
    model, _ = fitted
    return registry.save("Weather Only", model, state, {"rmse": 300.0, "rsq": 0.5, "mae": 220.0})


def _handle(name):
    return ArtifactHandle(name=name, path=f"/models/{slugify(name)}.joblib", kind="joblib")


class TestSaveLoad:

    def test_round_trip_keeps_model_and_state_together(self, registry, saved, fitted, state):
        model, X = fitted
        art = registry.load(saved)
        assert art.model_name == "Weather Only"
        assert art.state == state
        assert art.feature_columns == state.feature_columns
        assert art.metrics["rmse"] == 300.0
        np.testing.assert_allclose(art.predict(X.head(10)), model.predict(X.head(10)))

    def test_handle_points_at_candidate_file(self, registry, saved, state):
        assert saved.path.endswith("candidates/weather_only.joblib")
        assert saved.fingerprint == state.fingerprint()
        assert list_candidates(registry.root) == [registry.candidates_dir() / "weather_only.joblib"]

    def test_predict_reorders_columns(self, registry, saved, fitted):
        model, X = fitted
        shuffled = X.head(5)[list(reversed(X.columns))]
        np.testing.assert_allclose(registry.load(saved).predict(shuffled), model.predict(X.head(5)))

    def test_no_tmp_files_left(self, registry, saved):
        assert not list(registry.root.rglob("*.tmp"))

    def test_object_without_predict_rejected(self, registry, state):
        with pytest.raises(TypeError):
            registry.save("junk", object(), state, {})

    def test_describe(self, registry, saved):
        info = describe(registry.load(saved))
        assert info["model_name"] == "Weather Only"
        assert info["rmse"] == 300.0
        assert describe(None) == {"model_name": None}


@pytest.mark.fail_loud
class TestLoadFailures:
    """A bundle that does not hang together is refused, never half-loaded."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ArtifactNotFoundError) as exc:
            load_artifact(tmp_path / "nope.joblib")
        assert exc.value.kind is ErrorKind.ARTIFACT_NOT_FOUND

    def test_garbage_bytes(self, tmp_path):
        path = tmp_path / "bad.joblib"
        path.write_bytes(b"definitely not a pickle")
        with pytest.raises(ArtifactCorruptError):
            load_artifact(path)

    def test_not_a_bundle(self, tmp_path):
        path = tmp_path / "list.joblib"
        joblib.dump([1, 2, 3], path)
        with pytest.raises(ArtifactCorruptError):
            load_artifact(path)

    def test_missing_keys(self, saved):
        payload = joblib.load(saved.path)
        del payload["transformer_state"]
        joblib.dump(payload, saved.path)
        with pytest.raises(ArtifactCorruptError) as exc:
            load_artifact(saved.path)
        assert exc.value.details["missing"] == ["transformer_state"]

    def test_fingerprint_tamper(self, saved):
        payload = joblib.load(saved.path)
        payload["state_fingerprint"] = "0" * 16
        joblib.dump(payload, saved.path)
        with pytest.raises(ArtifactCorruptError, match="fingerprint"):
            load_artifact(saved.path)

    def test_state_levels_drift(self, saved):
        payload = joblib.load(saved.path)
        payload["transformer_state"]["categoricals"][0]["levels"].append("Monsoon")
        joblib.dump(payload, saved.path)
        with pytest.raises(ArtifactCorruptError):
            load_artifact(saved.path)

    def test_model_fit_on_other_columns(self, registry, seoul_df, state):
        X = apply_frame(state, seoul_df).iloc[:, :-1]
        model = LinearRegression().fit(X, seoul_df["RENTED_BIKE_COUNT"])
        handle = registry.save("Short", model, state, {"rmse": 1.0})
        with pytest.raises(ArtifactCorruptError, match="different columns"):
            load_artifact(handle.path)

    def test_wrong_format_version(self, saved):
        payload = joblib.load(saved.path)
        payload["format_version"] = 99
        joblib.dump(payload, saved.path)
        with pytest.raises(ArtifactCorruptError):
            load_artifact(saved.path)


class TestSelection:

    def test_lowest_rmse_wins(self):
        cands = [
            (_handle("a"), {"rmse": 300.0}),
            (_handle("b"), {"rmse": 250.0}),
            (_handle("c"), {"rmse": 400.0}),
        ]
        assert select_best(cands).name == "b"

    def test_rsq_ranks_descending(self):
        cands = [(_handle("a"), {"rsq": 0.4}), (_handle("b"), {"rsq": 0.8})]
        assert select_best(cands, metric="rsq").name == "b"

    def test_nan_and_missing_rank_last(self):
        cands = [
            (_handle("nan"), {"rmse": math.nan}),
            (_handle("none"), {}),
            (_handle("ok"), {"rmse": 999.0}),
        ]
        assert select_best(cands).name == "ok"

    @pytest.mark.fail_loud
    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            select_best([])


class TestComparisonAndPromotion:

    def test_comparison_sorted_by_rmse(self, registry):
        rows = [
            {"model": "B", "rmse": 310.0, "rsq": 0.5, "mae": 200.0},
            {"model": "A", "rmse": 250.0, "rsq": 0.6, "mae": 180.0},
            {"model": "C", "rmse": float("nan"), "rsq": float("nan"), "mae": float("nan")},
        ]
        handle = registry.write_comparison(rows)
        df = read_comparison(handle.path)
        assert list(df.columns[: len(COMPARISON_COLUMNS)]) == list(COMPARISON_COLUMNS)
        assert df["model"].tolist() == ["A", "B", "C"]
        assert registry.read_comparison()["model"].tolist() == ["A", "B", "C"]

    @pytest.mark.fail_loud
    def test_missing_comparison(self, registry):
        with pytest.raises(ArtifactNotFoundError):
            registry.read_comparison()

    @pytest.mark.fail_loud
    def test_comparison_without_rmse(self, tmp_path):
        path = tmp_path / "cmp.csv"
        pd.DataFrame({"model": ["x"]}).to_csv(path, index=False)
        with pytest.raises(ArtifactCorruptError):
            read_comparison(path)

    def test_promote_publishes_best(self, registry, saved, state):
        best = registry.promote(saved)
        assert best.path == str(registry.best_path())
        assert best.fingerprint == state.fingerprint()
        assert load_artifact(best.path).model_name == "Weather Only"

    @pytest.mark.fail_loud
    def test_promote_refuses_corrupt_candidate(self, registry, saved):
        with open(saved.path, "wb") as f:
            f.write(b"broken")
        with pytest.raises(ArtifactCorruptError):
            registry.promote(saved)
        assert not registry.best_path().exists()


class TestLoadOnce:

    def test_same_object_until_file_changes(self, registry, saved, fitted, state):
        first = load_artifact_once(saved.path)
        assert load_artifact_once(saved.path) is first

        model, _ = fitted
        registry.save("Weather Only", model, state, {"rmse": 1.0})
        st = os.stat(saved.path)
        os.utime(saved.path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))
        reloaded = load_artifact_once(saved.path)
        assert reloaded is not first
        assert reloaded.metrics["rmse"] == 1.0

    @pytest.mark.fail_loud
    def test_missing(self, tmp_path):
        with pytest.raises(ArtifactNotFoundError):
            load_artifact_once(tmp_path / "missing.joblib")
