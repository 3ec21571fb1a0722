import pandas as pd
import pytest

from src.bikeshare.config import BikeshareConfig
from src.bikeshare.features import add_hour_category, fit
from src.bikeshare.io_utils import atomic_write_csv

from .synthetic import (
    make_bike_systems_raw,
    make_seoul_raw,
    make_seoul_standardized,
    make_weather_raw,
    make_world_cities_raw,
)


@pytest.fixture
def config(tmp_path) -> BikeshareConfig:
    """Small, fast config rooted in tmp_path."""
    return BikeshareConfig(
        data_dir=str(tmp_path / "data"),
        models_dir=str(tmp_path / "models"),
        reports_dir=str(tmp_path / "reports"),
        logs_dir=str(tmp_path / "logs"),
        rf_n_estimators=10,
        rf_max_features=(3,),
        rf_min_samples_split=(5,),
        cv_folds=2,
        fallback_noise_sd=0.0,
    )


@pytest.fixture
def seoul_df() -> pd.DataFrame:
    return add_hour_category(make_seoul_standardized())


@pytest.fixture
def state(seoul_df):
    return fit(seoul_df)


@pytest.fixture
def raw_files(config):
    """All four raw datasets written where the collector would put them."""
    atomic_write_csv(make_seoul_raw(), config.raw_path("seoul_bike_sharing"))
    atomic_write_csv(make_weather_raw(), config.raw_path("cities_weather_forecast"))
    atomic_write_csv(make_world_cities_raw(), config.raw_path("worldcities"))
    atomic_write_csv(make_bike_systems_raw(), config.raw_path("bike_sharing_systems"))
    return config
