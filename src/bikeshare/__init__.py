"""
Bike-sharing demand pipeline (Seoul history + live city weather forecasts).

Modules:
- config: pipeline configuration and paths
- errors: typed error kinds shared across the pipeline and serving path
- schemas: dataset column contracts + ArtifactHandle
- features: feature transformer (fit once, frozen state, apply)
- registry: model + transformer-state bundles, comparison table, best-model promotion
- pipeline: staged orchestrator with timeouts and failure routing
- stages: default collect -> wrangle -> analyze -> visualize -> model stage list
- collect / wrangle / analysis / visualize / modeling: stage handlers
- serving: prediction server and memoised query layer for the dashboard
- cli: Typer entry point
"""
