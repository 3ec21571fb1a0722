from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

import joblib
import pandas as pd

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _tmp_path(path: Path) -> Path:
    return path.with_suffix(path.suffix + TMP_SUFFIX)


def atomic_write_csv(df: pd.DataFrame, path: Path) -> None:
    """
    Atomic CSV write: write to temp in same directory, then replace.
    """
    path = Path(path)
    ensure_dir(path.parent)
    tmp = _tmp_path(path)
    df.to_csv(tmp, index=False)
    os.replace(tmp, path)


def atomic_write_json(payload: Dict[str, Any], path: Path) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    tmp = _tmp_path(path)
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, default=str)
    os.replace(tmp, path)


def atomic_write_joblib(payload: Any, path: Path) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    tmp = _tmp_path(path)
    joblib.dump(payload, tmp)
    os.replace(tmp, path)


def discard_partial_writes(directory: Path) -> list[Path]:
    """
    Remove unpublished temp files left behind by an interrupted writer.
    """
    directory = Path(directory)
    if not directory.exists():
        return []

    removed = []
    for tmp in directory.rglob(f"*{TMP_SUFFIX}"):
        try:
            tmp.unlink()
            removed.append(tmp)
        except FileNotFoundError:
            continue
    if removed:
        logger.warning("[io] discarded %d partial write(s) under %s", len(removed), directory)
    return removed
