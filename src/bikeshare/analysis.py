"""
SQL analysis stage: summary queries over the clean tables in an in-memory
SQLite database. Results go to reports/sql_analysis.json.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from typing import Any, Dict, Optional

import pandas as pd

from .config import BikeshareConfig
from .errors import BikeshareError
from .io_utils import atomic_write_json
from .schemas import ArtifactHandle, clean_handle

logger = logging.getLogger(__name__)

TABLES = {
    "SEOUL_BIKE_SHARING": "seoul_bike_sharing",
    "CITIES_WEATHER_FORECAST": "cities_weather_forecast",
    "WORLD_CITIES": "worldcities",
    "BIKE_SHARING_SYSTEMS": "bike_sharing_systems",
}

QUERIES: Dict[str, str] = {
    "record_count": """
        SELECT COUNT(*) AS total_records
        FROM SEOUL_BIKE_SHARING
    """,
    "operating_hours": """
        SELECT COUNT(*) AS non_zero_hours
        FROM SEOUL_BIKE_SHARING
        WHERE RENTED_BIKE_COUNT > 0
    """,
    "seoul_next_forecast": """
        SELECT CITY, DATETIME, TEMPERATURE, HUMIDITY, WIND_SPEED
        FROM CITIES_WEATHER_FORECAST
        WHERE CITY = 'Seoul'
        ORDER BY DATETIME
        LIMIT 1
    """,
    "seasons": """
        SELECT DISTINCT SEASONS
        FROM SEOUL_BIKE_SHARING
        ORDER BY SEASONS
    """,
    # DATE is dd/mm/yyyy; compare as yyyy-mm-dd
    "date_range": """
        SELECT MIN(ISO_DATE) AS first_date, MAX(ISO_DATE) AS last_date
        FROM (
            SELECT substr(DATE, 7, 4) || '-' || substr(DATE, 4, 2) || '-' || substr(DATE, 1, 2) AS ISO_DATE
            FROM SEOUL_BIKE_SHARING
        )
    """,
    "peak_rental": """
        SELECT DATE, HOUR, RENTED_BIKE_COUNT
        FROM SEOUL_BIKE_SHARING
        WHERE RENTED_BIKE_COUNT = (SELECT MAX(RENTED_BIKE_COUNT) FROM SEOUL_BIKE_SHARING)
    """,
    "hourly_popularity_by_season": """
        SELECT SEASONS, HOUR,
               ROUND(AVG(TEMPERATURE_C), 2) AS avg_temperature,
               ROUND(AVG(RENTED_BIKE_COUNT), 2) AS avg_bike_count
        FROM SEOUL_BIKE_SHARING
        GROUP BY SEASONS, HOUR
        ORDER BY avg_bike_count DESC
        LIMIT 10
    """,
    "rental_seasonality": """
        SELECT SEASONS,
               ROUND(AVG(RENTED_BIKE_COUNT), 2) AS avg_count,
               MIN(RENTED_BIKE_COUNT) AS min_count,
               MAX(RENTED_BIKE_COUNT) AS max_count,
               ROUND(SQRT(AVG(RENTED_BIKE_COUNT * RENTED_BIKE_COUNT)
                          - AVG(RENTED_BIKE_COUNT) * AVG(RENTED_BIKE_COUNT)), 2) AS std_dev
        FROM SEOUL_BIKE_SHARING
        GROUP BY SEASONS
        ORDER BY avg_count DESC
    """,
    "weather_seasonality": """
        SELECT SEASONS,
               ROUND(AVG(TEMPERATURE_C), 2) AS avg_temperature,
               ROUND(AVG(HUMIDITY), 2) AS avg_humidity,
               ROUND(AVG(WIND_SPEED_M_S), 2) AS avg_wind_speed,
               ROUND(AVG(VISIBILITY_10M), 2) AS avg_visibility,
               ROUND(AVG(DEW_POINT_TEMPERATURE_C), 2) AS avg_dew_point,
               ROUND(AVG(SOLAR_RADIATION_MJ_M2), 2) AS avg_solar_radiation,
               ROUND(AVG(RAINFALL_MM), 2) AS avg_precipitation,
               ROUND(AVG(SNOWFALL_CM), 2) AS avg_snowfall,
               ROUND(AVG(RENTED_BIKE_COUNT), 2) AS avg_bike_count
        FROM SEOUL_BIKE_SHARING
        GROUP BY SEASONS
        ORDER BY avg_bike_count DESC
    """,
    "seoul_city_info": """
        SELECT w.CITY AS city, w.COUNTRY AS country, w.LAT AS lat, w.LNG AS lng,
               w.POPULATION AS population, b.TOTAL_BIKES AS total_bikes
        FROM WORLD_CITIES w
        LEFT JOIN BIKE_SHARING_SYSTEMS b
            ON UPPER(w.CITY) = UPPER(b.CITY) AND UPPER(w.COUNTRY) = UPPER(b.COUNTRY)
        WHERE UPPER(w.CITY) = 'SEOUL'
    """,
    "similar_fleet_size": """
        SELECT b.CITY AS city, b.COUNTRY AS country, w.LAT AS lat, w.LNG AS lng,
               w.POPULATION AS population, b.TOTAL_BIKES AS total_bikes
        FROM BIKE_SHARING_SYSTEMS b
        LEFT JOIN WORLD_CITIES w
            ON UPPER(b.CITY) = UPPER(w.CITY) AND UPPER(b.COUNTRY) = UPPER(w.COUNTRY)
        WHERE b.TOTAL_BIKES BETWEEN 15000 AND 20000
        ORDER BY b.TOTAL_BIKES DESC
    """,
}


def _sqrt(value):
    if value is None or value < 0:
        return None
    return math.sqrt(value)


def build_database(frames: Dict[str, pd.DataFrame]) -> sqlite3.Connection:
    con = sqlite3.connect(":memory:")
    con.create_function("SQRT", 1, _sqrt)
    for table, df in frames.items():
        df.to_sql(table, con, index=False)
        logger.info("[sql] loaded %s (%d rows)", table, len(df))
    return con


def run_queries(con: sqlite3.Connection) -> Dict[str, Any]:
    """Run every query; a query over a missing table is recorded as an error."""
    results: Dict[str, Any] = {}
    for name, sql in QUERIES.items():
        try:
            df = pd.read_sql_query(sql, con)
        except (sqlite3.Error, pd.errors.DatabaseError) as e:
            logger.warning("[sql] %s failed: %s", name, e)
            results[name] = {"error": str(e)}
            continue
        results[name] = df.to_dict("records")
        logger.info("[sql] %s: %d row(s)", name, len(df))
    return results


def load_tables(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, pd.DataFrame]:
    artifacts = artifacts or {}
    frames = {}
    for table, name in TABLES.items():
        handle = clean_handle(config, name)
        handle = artifacts.get(handle.name, handle)
        try:
            frames[table] = handle.load()
        except BikeshareError as e:
            logger.warning("[sql] %s unavailable: %s", table, e.message)
    if "SEOUL_BIKE_SHARING" not in frames:
        raise ValueError("SQL analysis needs the clean Seoul bike-sharing table")
    return frames


def run_analysis(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, ArtifactHandle]:
    """Stage handler."""
    con = build_database(load_tables(config, artifacts))
    try:
        results = run_queries(con)
    finally:
        con.close()

    path = config.sql_report_path()
    atomic_write_json(results, path)
    n_failed = sum(1 for r in results.values() if isinstance(r, dict) and "error" in r)
    logger.info("[sql] wrote report: %s (%d queries, %d failed)", path, len(results), n_failed)
    return {"sql_analysis": ArtifactHandle(name="sql_analysis", path=str(path), kind="json")}

