from __future__ import annotations

import logging
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import BikeshareConfig
from .errors import BikeshareError
from .pipeline import run_pipeline
from .registry import describe, list_candidates, load_artifact_once
from .run_log import recent_runs
from .serving import PredictionService
from .stages import default_stages

logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(message)s")
app = typer.Typer(add_completion=False, help="Bike-sharing demand pipeline")
console = Console()


def _strip_ipykernel_args(argv: list[str]) -> list[str]:
    """Jupyter/ipykernel injects `-f <connection_file>` into sys.argv."""
    out = [argv[0]]
    i = 1
    while i < len(argv):
        a = argv[i]
        if a in ("-f", "--f"):
            i += 2
            continue
        if a.startswith("--f="):
            i += 1
            continue
        out.append(a)
        i += 1
    return out


def _config(**overrides) -> BikeshareConfig:
    return BikeshareConfig.from_env(**{k: v for k, v in overrides.items() if v is not None})


@app.command()
def run(
    continue_on_error: bool = typer.Option(False, help="Keep going after a critical stage fails"),
    overwrite: bool = typer.Option(False, help="Recompute artifacts that already exist"),
    data_dir: Optional[str] = None,
    models_dir: Optional[str] = None,
    n_jobs: Optional[int] = None,
):
    """Run collect -> wrangle -> analyze -> visualize -> model."""
    cfg = _config(overwrite=overwrite, data_dir=data_dir, models_dir=models_dir, n_jobs=n_jobs)
    result = run_pipeline(default_stages(cfg), cfg, continue_on_error=continue_on_error)

    table = Table(title=f"Pipeline run {result.run_id}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Seconds", justify="right")
    table.add_column("Message", style="dim")
    for o in result.outcomes:
        status = f"[green]{o.status.value}[/green]" if o.ok else f"[red]{o.status.value}[/red]"
        table.add_row(o.stage_id, status, f"{o.duration_sec:.1f}", o.message)
    for stage_id in result.skipped_steps:
        table.add_row(stage_id, "[yellow]skipped[/yellow]", "-", "")
    console.print(table)
    console.print(f"success={result.success} failed={result.failed_steps} total={result.total_seconds:.1f}s")

    if not result.success:
        raise typer.Exit(code=1)


@app.command()
def predict(
    country: List[str] = typer.Option([], help="Restrict to these countries (repeatable)"),
    data_dir: Optional[str] = None,
    models_dir: Optional[str] = None,
):
    """Peak demand per city from the latest forecast."""
    cfg = _config(data_dir=data_dir, models_dir=models_dir)
    df = PredictionService(cfg).peak_demand(country or None)

    table = Table(title="Predicted peak demand")
    for col in ("entity", "country", "peak_demand", "prediction_source", "data_source"):
        table.add_column(col, style="cyan" if col == "entity" else None)
    for row in df.itertuples(index=False):
        table.add_row(row.entity, row.country, str(row.peak_demand), row.prediction_source, row.data_source)
    console.print(table)


@app.command()
def models(models_dir: Optional[str] = None):
    """Model comparison table and the promoted artifact."""
    cfg = _config(models_dir=models_dir)
    service = PredictionService(cfg)
    df = service.model_comparison()

    table = Table(title="Model comparison (by RMSE)")
    for col in ("model", "rmse", "rsq", "mae"):
        table.add_column(col, style="cyan" if col == "model" else "green")
    for row in df.itertuples(index=False):
        table.add_row(str(row.model), f"{row.rmse:.2f}", f"{row.rsq:.3f}", f"{row.mae:.2f}")
    console.print(table)
    console.print(f"{len(list_candidates(cfg.models_path()))} candidate artifact(s) in {cfg.candidates_dir()}")

    try:
        info = describe(load_artifact_once(cfg.best_model_path()))
    except BikeshareError as e:
        console.print(f"[yellow]No usable best model ({e.kind.value}): {e.message}[/yellow]")
        return
    console.print(f"best: {info['model_name']} ({info['n_features']} features) from {info['path']}")


@app.command()
def runs(limit: int = 10, logs_dir: Optional[str] = None):
    """Recent pipeline runs from the run history database."""
    cfg = _config(logs_dir=logs_dir)
    rows = recent_runs(str(cfg.run_db_path()), limit=limit)

    table = Table(title="Recent pipeline runs")
    for col in ("run_id", "ts_utc", "success", "failed_steps", "seconds"):
        table.add_column(col)
    for r in rows:
        table.add_row(
            r["run_id"],
            r["ts_utc"],
            "[green]yes[/green]" if r["success"] else "[red]no[/red]",
            ", ".join(r["failed_steps"]) or "-",
            f"{r['total_seconds'] or 0:.1f}",
        )
    console.print(table)


if __name__ == "__main__":
    sys.argv = _strip_ipykernel_args(sys.argv)
    app()
