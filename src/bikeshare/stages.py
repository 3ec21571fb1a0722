"""
Default stage list: collect -> wrangle -> analyze -> visualize -> model.

collect, wrangle and model are critical; analyze and visualize only report.
"""

from __future__ import annotations

from typing import List

from .config import BikeshareConfig
from .pipeline import PipelineStage


def default_stages(config: BikeshareConfig) -> List[PipelineStage]:
    return [
        PipelineStage(
            stage_id="collect",
            handler="src.bikeshare.collect:run_collection",
            description="Data collection (weather API, Wikipedia, reference tables)",
            timeout_seconds=config.collect_timeout,
            critical=True,
            outputs=(str(config.raw_dir()),),
        ),
        PipelineStage(
            stage_id="wrangle",
            handler="src.bikeshare.wrangle:run_wrangling",
            description="Data wrangling and transformer fit",
            timeout_seconds=config.wrangle_timeout,
            critical=True,
            outputs=(str(config.clean_dir()),),
        ),
        PipelineStage(
            stage_id="analyze",
            handler="src.bikeshare.analysis:run_analysis",
            description="SQL analysis",
            timeout_seconds=config.analysis_timeout,
            critical=False,
            outputs=(str(config.reports_path()),),
        ),
        PipelineStage(
            stage_id="visualize",
            handler="src.bikeshare.visualize:run_visualization",
            description="EDA visualizations",
            timeout_seconds=config.visualize_timeout,
            critical=False,
            outputs=(str(config.figures_dir()),),
        ),
        PipelineStage(
            stage_id="model",
            handler="src.bikeshare.modeling:run_modeling",
            description="Regression modeling and best-model promotion",
            timeout_seconds=config.model_timeout,
            critical=True,
            outputs=(str(config.models_path()),),
        ),
    ]
