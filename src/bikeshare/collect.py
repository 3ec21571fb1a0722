"""
Collection stage: pull raw datasets into data/raw/.

Sources:
- OpenWeather 5-day / 3-hour forecast for each target city (needs OPENWEATHER_API_KEY)
- Wikipedia list of bicycle-sharing systems
- a fixed world-cities reference table
- the Seoul bike-sharing history CSV

Each dataset is written atomically and skipped when it already exists unless
config.overwrite is set. Individual source failures are logged and skipped;
the stage only fails when no Seoul training data is available afterwards.
"""

from __future__ import annotations

import io
import logging
import time
from typing import Dict, Optional

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import BikeshareConfig, load_openweather_api_key
from .errors import ArtifactNotFoundError
from .io_utils import atomic_write_csv, ensure_dir
from .schemas import ArtifactHandle, DATASETS, raw_handle

logger = logging.getLogger(__name__)

BIKE_SYSTEM_COLUMNS = ["Country", "Region", "City", "Name", "System", "Operator", "Bicycles", "Launched"]

WORLD_CITIES = pd.DataFrame(
    {
        "city": ["Seoul", "New York", "Paris", "London", "Tokyo", "Beijing", "Shanghai", "Barcelona",
                 "Berlin", "Amsterdam", "Madrid", "Rome", "Vienna", "Zurich", "Copenhagen"],
        "country": ["South Korea", "United States", "France", "United Kingdom", "Japan", "China", "China",
                    "Spain", "Germany", "Netherlands", "Spain", "Italy", "Austria", "Switzerland", "Denmark"],
        "lat": [37.5665, 40.7128, 48.8566, 51.5074, 35.6762, 39.9042, 31.2304, 41.3851,
                52.5200, 52.3676, 40.4168, 41.9028, 48.2082, 47.3769, 55.6761],
        "lng": [126.9780, -74.0060, 2.3522, -0.1278, 139.6503, 116.4074, 121.4737, 2.1734,
                13.4050, 4.9041, -3.7038, 12.4964, 16.3738, 8.5417, 12.5683],
        "population": [9776000, 8336000, 2161000, 8982000, 13929000, 21540000, 24256800, 1620000,
                       3645000, 873000, 3223000, 2873000, 1897000, 415000, 632000],
    }
)


def _create_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(total=3, backoff_factor=0.5, status_forcelist=[429, 500, 502, 503, 504])
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.mount("http://", HTTPAdapter(max_retries=retries))
    return session


def fetch_city_forecast(
    session: requests.Session,
    city: str,
    api_key: str,
    config: BikeshareConfig,
) -> pd.DataFrame:
    """One city's 5-day / 3-hour forecast as a flat frame (metric units)."""
    params = {"q": city, "appid": api_key, "units": "metric"}
    resp = session.get(config.openweather_base_url, params=params, timeout=config.request_timeout)
    resp.raise_for_status()
    payload = resp.json()

    city_info = payload.get("city", {})
    coord = city_info.get("coord", {})
    rows = []
    for item in payload.get("list", []):
        main = item.get("main", {})
        wind = item.get("wind", {})
        weather = (item.get("weather") or [{}])[0]
        rows.append(
            {
                "city": city_info.get("name", city),
                "country": city_info.get("country"),
                "lat": coord.get("lat"),
                "lon": coord.get("lon"),
                "datetime": pd.to_datetime(item.get("dt"), unit="s", utc=True).tz_localize(None),
                "temperature": main.get("temp"),
                "feels_like": main.get("feels_like"),
                "humidity": main.get("humidity"),
                "pressure": main.get("pressure"),
                "wind_speed": wind.get("speed"),
                "wind_deg": wind.get("deg"),
                "clouds": item.get("clouds", {}).get("all"),
                "visibility": item.get("visibility"),
                "weather_main": weather.get("main"),
                "weather_description": weather.get("description"),
            }
        )
    return pd.DataFrame(rows)


def collect_weather_forecast(config: BikeshareConfig, session: Optional[requests.Session] = None) -> Optional[str]:
    path = config.raw_path("cities_weather_forecast")
    if path.exists() and not config.overwrite:
        logger.info("[collect] weather exists, skipping: %s", path)
        return str(path)

    api_key = load_openweather_api_key()
    if not api_key:
        logger.warning("[collect] OPENWEATHER_API_KEY not set; skipping weather forecast")
        return None

    session = session or _create_session()
    frames = []
    for city in config.target_cities:
        try:
            df_city = fetch_city_forecast(session, city, api_key, config)
        except (requests.RequestException, ValueError) as e:
            logger.warning("[collect] weather for %s failed: %s", city, e)
            continue
        logger.info("[collect] weather %s: %d rows", city, len(df_city))
        frames.append(df_city)
        time.sleep(config.request_pause_seconds)

    if not frames:
        logger.warning("[collect] no weather data collected")
        return None

    df = pd.concat(frames, ignore_index=True)
    atomic_write_csv(df, path)
    logger.info("[collect] wrote raw: %s (%d rows, %d cities)", path, len(df), df["city"].nunique())
    return str(path)


def pick_bike_systems_table(tables) -> Optional[pd.DataFrame]:
    """First table with more than 5 columns and 10 rows, trimmed to 8 named columns."""
    for table in tables:
        if table.shape[1] > 5 and table.shape[0] > 10:
            out = table.iloc[:, : len(BIKE_SYSTEM_COLUMNS)].copy()
            out.columns = BIKE_SYSTEM_COLUMNS[: out.shape[1]]
            return out
    return None


def collect_bike_systems(config: BikeshareConfig, session: Optional[requests.Session] = None) -> Optional[str]:
    path = config.raw_path("bike_sharing_systems")
    if path.exists() and not config.overwrite:
        logger.info("[collect] bike systems exist, skipping: %s", path)
        return str(path)

    session = session or _create_session()
    try:
        resp = session.get(config.wiki_url, timeout=config.request_timeout,
                           headers={"User-Agent": "bikeshare-pipeline/0.1"})
        resp.raise_for_status()
        tables = pd.read_html(io.StringIO(resp.text))
    except (requests.RequestException, ValueError, ImportError) as e:
        logger.warning("[collect] scraping %s failed: %s", config.wiki_url, e)
        return None

    df = pick_bike_systems_table(tables)
    if df is None:
        logger.warning("[collect] no suitable bike-sharing table among %d tables", len(tables))
        return None

    atomic_write_csv(df, path)
    logger.info("[collect] wrote raw: %s (%d rows)", path, len(df))
    return str(path)


def collect_world_cities(config: BikeshareConfig) -> str:
    path = config.raw_path("worldcities")
    if path.exists() and not config.overwrite:
        logger.info("[collect] world cities exist, skipping: %s", path)
        return str(path)
    atomic_write_csv(WORLD_CITIES, path)
    logger.info("[collect] wrote raw: %s (%d rows)", path, len(WORLD_CITIES))
    return str(path)


def collect_seoul_bikes(config: BikeshareConfig, session: Optional[requests.Session] = None) -> Optional[str]:
    path = config.raw_path("seoul_bike_sharing")
    if path.exists() and not config.overwrite:
        logger.info("[collect] seoul bikes exist, skipping: %s", path)
        return str(path)

    session = session or _create_session()
    try:
        resp = session.get(config.seoul_bike_url, timeout=config.request_timeout)
        resp.raise_for_status()
        df = pd.read_csv(io.BytesIO(resp.content), encoding="latin1")
    except (requests.RequestException, ValueError) as e:
        logger.warning("[collect] seoul bike download failed: %s", e)
        return None

    atomic_write_csv(df, path)
    logger.info("[collect] wrote raw: %s (%d rows)", path, len(df))
    return str(path)


def run_collection(config: BikeshareConfig, artifacts: Optional[Dict[str, ArtifactHandle]] = None) -> Dict[str, ArtifactHandle]:
    """
    Stage handler. Returns handles for every raw dataset present on disk.
    """
    ensure_dir(config.raw_dir())
    session = _create_session()

    collect_bike_systems(config, session)
    collect_weather_forecast(config, session)
    collect_world_cities(config)
    collect_seoul_bikes(config, session)

    handles = {}
    for name in DATASETS:
        handle = raw_handle(config, name)
        if handle.exists():
            handles[handle.name] = handle
        else:
            logger.warning("[collect] %s not available", handle.name)

    if "raw_seoul_bike_sharing" not in handles:
        raise ArtifactNotFoundError(
            "No Seoul bike-sharing data available; cannot train",
            {"path": str(config.raw_path("seoul_bike_sharing"))},
        )
    logger.info("[collect] %d/%d raw datasets available", len(handles), len(DATASETS))
    return handles
