"""
Dataset contracts.

Stages hand each other ArtifactHandle objects instead of assuming files are
present. The consumer calls `handle.load()`, which checks the file exists and
carries the declared columns before any data is used.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

import pandas as pd

from .errors import ArtifactNotFoundError, SchemaMismatchError

# Raw (collector output). Column names as they read after
# standardize_column_names(), since the source headers carry units and
# non-ASCII symbols.
RAW_BIKE_SYSTEMS = ("COUNTRY", "REGION", "CITY", "NAME", "SYSTEM", "OPERATOR", "BICYCLES", "LAUNCHED")
RAW_WEATHER_FORECAST = (
    "CITY", "COUNTRY", "LAT", "LON", "DATETIME", "TEMPERATURE", "HUMIDITY",
    "WIND_SPEED", "VISIBILITY",
)
RAW_WORLD_CITIES = ("CITY", "COUNTRY", "LAT", "LNG", "POPULATION")
RAW_SEOUL_BIKES = (
    "DATE", "RENTED_BIKE_COUNT", "HOUR", "TEMPERATURE_C", "HUMIDITY",
    "WIND_SPEED_M_S", "VISIBILITY_10M", "DEW_POINT_TEMPERATURE_C",
    "SOLAR_RADIATION_MJ_M2", "RAINFALL_MM", "SNOWFALL_CM", "SEASONS",
    "HOLIDAY", "FUNCTIONING_DAY",
)

# Clean (wrangler output); only the columns consumers rely on
CLEAN_BIKE_SYSTEMS = ("COUNTRY", "CITY", "SYSTEM", "BICYCLES", "TOTAL_BIKES")
CLEAN_WEATHER_FORECAST = ("CITY", "COUNTRY", "DATETIME", "TEMPERATURE", "HUMIDITY", "WIND_SPEED", "VISIBILITY")
CLEAN_WORLD_CITIES = ("CITY", "COUNTRY", "LAT", "LNG")
CLEAN_SEOUL_BIKES = (
    "DATE", "RENTED_BIKE_COUNT", "HOUR", "TEMPERATURE_C", "HUMIDITY",
    "WIND_SPEED_M_S", "VISIBILITY_10M", "DEW_POINT_TEMPERATURE_C",
    "SOLAR_RADIATION_MJ_M2", "RAINFALL_MM", "SNOWFALL_CM", "SEASONS",
    "HOLIDAY", "FUNCTIONING_DAY", "HOUR_CATEGORY",
)

DATASETS: Mapping[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "bike_sharing_systems": (RAW_BIKE_SYSTEMS, CLEAN_BIKE_SYSTEMS),
    "cities_weather_forecast": (RAW_WEATHER_FORECAST, CLEAN_WEATHER_FORECAST),
    "worldcities": (RAW_WORLD_CITIES, CLEAN_WORLD_CITIES),
    "seoul_bike_sharing": (RAW_SEOUL_BIKES, CLEAN_SEOUL_BIKES),
}

# Clean file stem differs from the raw stem for world cities
CLEAN_NAMES = {
    "bike_sharing_systems": "bike_sharing_systems",
    "cities_weather_forecast": "cities_weather_forecast",
    "worldcities": "world_cities",
    "seoul_bike_sharing": "seoul_bike_sharing",
}


def missing_columns(df: pd.DataFrame, schema: Tuple[str, ...]) -> list[str]:
    return [c for c in schema if c not in df.columns]


def validate_columns(df: pd.DataFrame, schema: Tuple[str, ...], name: str = "dataset") -> None:
    missing = missing_columns(df, schema)
    if missing:
        raise SchemaMismatchError(
            f"{name} is missing required columns: {missing}",
            {"missing": missing, "columns": list(df.columns)},
        )


@dataclass(frozen=True)
class ArtifactHandle:
    """Typed pointer to a published artifact."""

    name: str
    path: str
    schema: Tuple[str, ...] = ()
    kind: str = "csv"
    fingerprint: Optional[str] = None

    def exists(self) -> bool:
        return Path(self.path).exists()

    def load(self, validate: bool = True) -> pd.DataFrame:
        """
        Read the artifact, checking existence and (optionally) the schema.

        Raw handles are loaded with validate=False and checked after column
        standardisation.
        """
        if self.kind != "csv":
            raise ValueError(f"load() only supports csv artifacts, got kind={self.kind}")
        if not self.exists():
            raise ArtifactNotFoundError(f"Artifact '{self.name}' not found at {self.path}")
        df = pd.read_csv(self.path)
        if validate:
            validate_columns(df, self.schema, name=self.name)
        return df


def raw_handle(config, name: str) -> ArtifactHandle:
    raw_schema, _ = DATASETS[name]
    return ArtifactHandle(name=f"raw_{name}", path=str(config.raw_path(name)), schema=raw_schema)


def clean_handle(config, name: str) -> ArtifactHandle:
    _, clean_schema = DATASETS[name]
    stem = CLEAN_NAMES[name]
    return ArtifactHandle(name=f"clean_{stem}", path=str(config.clean_path(stem)), schema=clean_schema)
